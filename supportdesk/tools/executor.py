from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel

from ..core.config import ToolRuntimeSettings
from ..core.errors import (
    BusinessRuleError,
    ConflictError,
    InternalError,
    SupportDeskError,
    ToolTimeoutError,
    ValidationError,
)
from ..core.logging import get_logger
from ..core.metrics import observe_tool_invocation
from ..schemas.models import ToolInvocation
from .base import SupportTool, ToolContext
from .idempotency import IdempotencyStore
from .registry import ToolRegistry

logger = get_logger(name=__name__)


@dataclass(slots=True)
class ToolResult:
    tool: str
    params: dict[str, Any]
    output: dict[str, Any]
    invocation_id: str
    deduplicated: bool = False
    duration_ms: float = 0.0


class AuditTrail:
    """Append-only audit records for one turn, committed with the turn."""

    def __init__(self, *, conversation_id: str, message_id: str) -> None:
        self.conversation_id = conversation_id
        self.message_id = message_id
        self._records: list[ToolInvocation] = []

    def append(self, record: ToolInvocation) -> ToolInvocation:
        self._records.append(record)
        return record

    @property
    def records(self) -> list[ToolInvocation]:
        return list(self._records)

    @property
    def invocation_ids(self) -> list[str]:
        return [record.id for record in self._records]

    def __len__(self) -> int:
        return len(self._records)


class ToolExecutor:
    """Runs validate -> execute -> record for every tool call.

    Exactly one audit record is appended per attempt before the result is
    returned or the typed error is raised.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        idempotency: IdempotencyStore,
        settings: ToolRuntimeSettings | None = None,
    ) -> None:
        self._registry = registry
        self._idempotency = idempotency
        self._settings = settings or ToolRuntimeSettings()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def invoke(
        self,
        name: str,
        params: Mapping[str, Any],
        *,
        context: ToolContext,
        trail: AuditTrail,
        idempotency_key: str | None = None,
    ) -> ToolResult:
        started = time.perf_counter()
        raw_params = dict(params)
        tool = self._registry.get(name)
        if tool is None:
            error = ValidationError(f"Unknown tool '{name}'")
            self._record_failure(trail, name, raw_params, error, started, idempotency_key)
            raise error

        try:
            validated = tool.validate(raw_params)
        except ValidationError as exc:
            self._record_failure(trail, tool.name, raw_params, exc, started, idempotency_key)
            raise

        if tool.mutating and idempotency_key:
            async with self._idempotency.claim(idempotency_key):
                existing = await self._idempotency.lookup(idempotency_key)
                if existing is not None:
                    if existing.tool != tool.name:
                        error = ConflictError(idempotency_key, existing=existing)
                        logger.warning(
                            "idempotency_key_reused_across_tools",
                            key=idempotency_key,
                            stored_tool=existing.tool,
                            tool=tool.name,
                        )
                        self._record_failure(trail, tool.name, validated, error, started, idempotency_key)
                        raise error
                    return self._record_success(
                        trail,
                        tool,
                        validated,
                        dict(existing.result),
                        started,
                        idempotency_key,
                        deduplicated=True,
                    )
                output = await self._execute(tool, validated, context, trail, started, idempotency_key)
                stored = await self._idempotency.remember(idempotency_key, tool=tool.name, result=output)
                return self._record_success(trail, tool, validated, dict(stored.result), started, idempotency_key)

        output = await self._execute(tool, validated, context, trail, started, idempotency_key)
        return self._record_success(trail, tool, validated, output, started, idempotency_key)

    async def _execute(
        self,
        tool: SupportTool,
        params: dict[str, Any],
        context: ToolContext,
        trail: AuditTrail,
        started: float,
        idempotency_key: str | None,
    ) -> dict[str, Any]:
        timeout = self._effective_timeout(tool)
        try:
            result = await asyncio.wait_for(tool.execute(params, context), timeout=timeout)
        except asyncio.TimeoutError as exc:
            error = ToolTimeoutError(tool.name, timeout)
            self._record_failure(trail, tool.name, params, error, started, idempotency_key)
            raise error from exc
        except (ValidationError, BusinessRuleError) as exc:
            self._record_failure(trail, tool.name, params, exc, started, idempotency_key)
            raise
        except asyncio.CancelledError:
            self._record_failure(
                trail,
                tool.name,
                params,
                InternalError("Tool execution was aborted"),
                started,
                idempotency_key,
            )
            raise
        except Exception as exc:
            error = InternalError(f"Tool '{tool.name}' failed", details={"tool": tool.name})
            logger.exception(
                "tool_invocation_crashed",
                tool=tool.name,
                correlation_id=error.correlation_id,
                error=str(exc),
            )
            self._record_failure(trail, tool.name, params, error, started, idempotency_key)
            raise error from exc
        return self._normalize_result(result)

    def _record_success(
        self,
        trail: AuditTrail,
        tool: SupportTool,
        params: dict[str, Any],
        output: dict[str, Any],
        started: float,
        idempotency_key: str | None,
        *,
        deduplicated: bool = False,
    ) -> ToolResult:
        duration = time.perf_counter() - started
        record = trail.append(
            ToolInvocation(
                conversation_id=trail.conversation_id,
                message_id=trail.message_id,
                tool=tool.name,
                params=params,
                output=output,
                status="success",
                deduplicated=deduplicated,
                idempotency_key=idempotency_key if tool.mutating else None,
                duration_ms=round(duration * 1000, 3),
            )
        )
        observe_tool_invocation(tool.name, "deduplicated" if deduplicated else "success", duration)
        logger.info(
            "tool_invocation_succeeded",
            tool=tool.name,
            invocation_id=record.id,
            deduplicated=deduplicated,
            duration_ms=record.duration_ms,
        )
        return ToolResult(
            tool=tool.name,
            params=params,
            output=output,
            invocation_id=record.id,
            deduplicated=deduplicated,
            duration_ms=record.duration_ms,
        )

    def _record_failure(
        self,
        trail: AuditTrail,
        tool_name: str,
        params: dict[str, Any],
        error: SupportDeskError,
        started: float,
        idempotency_key: str | None,
    ) -> ToolInvocation:
        duration = time.perf_counter() - started
        record = trail.append(
            ToolInvocation(
                conversation_id=trail.conversation_id,
                message_id=trail.message_id,
                tool=tool_name,
                params=params,
                error=error.message,
                error_kind=error.kind,
                status="error",
                idempotency_key=idempotency_key,
                duration_ms=round(duration * 1000, 3),
            )
        )
        observe_tool_invocation(tool_name, error.kind, duration)
        logger.warning(
            "tool_invocation_failed",
            tool=tool_name,
            invocation_id=record.id,
            error_kind=error.kind,
            error=error.message,
        )
        return record

    def _effective_timeout(self, tool: SupportTool) -> float:
        if tool.default_timeout is not None:
            return max(0.01, float(tool.default_timeout))
        return max(0.01, float(self._settings.invocation_timeout_seconds))

    def _normalize_result(self, result: Any) -> dict[str, Any]:
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        if isinstance(result, Mapping):
            return dict(result)
        return {"result": result}


__all__ = ["AuditTrail", "ToolExecutor", "ToolResult"]
