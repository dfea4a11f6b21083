from __future__ import annotations

from contextlib import aclosing
from typing import AsyncIterator, Mapping

from ..core.config import Settings, get_settings
from ..core.errors import BusinessRuleError, ToolPolicyViolationError, ToolTimeoutError, ValidationError
from ..core.logging import get_logger
from ..schemas.events import PartialEvent, ToolCallEvent, TurnEvent
from ..schemas.models import AgentType
from ..services.llm import LanguageModel
from ..tools.base import ToolContext
from ..tools.executor import AuditTrail, ToolExecutor
from .emitter import CancellationToken
from .specialists import BaseSpecialist, SpecialistRequest, ToolOutcome, build_specialists

logger = get_logger(name=__name__)


class SpecialistDispatcher:
    """Runs the routed specialist: tool calls first, then the streamed reply."""

    def __init__(
        self,
        *,
        executor: ToolExecutor,
        llm: LanguageModel,
        specialists: Mapping[AgentType, BaseSpecialist] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._executor = executor
        self._llm = llm
        self._settings = settings or get_settings()
        self._specialists = dict(specialists) if specialists is not None else build_specialists()
        missing = [agent.value for agent in AgentType if agent not in self._specialists]
        if missing:
            raise ValueError(f"No specialist registered for: {', '.join(missing)}")
        for specialist in self._specialists.values():
            unknown = [tool for tool in specialist.tools if executor.registry.get(tool) is None]
            if unknown:
                raise ValueError(f"Specialist '{specialist.name}' is bound to unknown tools: {', '.join(unknown)}")

    def specialist_for(self, agent: AgentType) -> BaseSpecialist:
        return self._specialists[agent]

    async def dispatch(
        self,
        request: SpecialistRequest,
        *,
        context: ToolContext,
        trail: AuditTrail,
        token: CancellationToken,
    ) -> AsyncIterator[TurnEvent]:
        specialist = self.specialist_for(request.decision.agent)
        outcomes: list[ToolOutcome] = []
        max_calls = self._settings.session.max_tool_calls

        while True:
            token.raise_if_cancelled()
            call = specialist.plan_next(request, outcomes)
            if call is None:
                break
            if len(outcomes) >= max_calls:
                logger.warning(
                    "tool_call_budget_exhausted",
                    agent=specialist.agent.value,
                    max_tool_calls=max_calls,
                    next_tool=call.tool,
                )
                break
            tool_name = self._executor.registry.resolve(call.tool) or call.tool
            if tool_name not in specialist.tools:
                raise ToolPolicyViolationError(specialist.agent.value, call.tool)

            yield ToolCallEvent(tool=tool_name, params=dict(call.params))
            try:
                result = await self._executor.invoke(
                    tool_name,
                    call.params,
                    context=context,
                    trail=trail,
                    idempotency_key=call.idempotency_key,
                )
            except (ValidationError, BusinessRuleError, ToolTimeoutError) as exc:
                outcomes.append(ToolOutcome(call=call, error=exc))
            else:
                outcomes.append(ToolOutcome(call=call, result=result))
            token.raise_if_cancelled()

        composed = specialist.compose(
            request,
            outcomes,
            llm=self._llm,
            chunk_timeout=self._settings.llm.chunk_timeout_seconds,
        )
        async with aclosing(composed) as chunks:
            async for chunk in chunks:
                yield PartialEvent(text=chunk)
                token.raise_if_cancelled()


__all__ = ["SpecialistDispatcher"]
