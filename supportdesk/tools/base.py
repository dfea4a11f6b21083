from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel

from ..core.config import ToolRuntimeSettings
from ..core.validation import SchemaValidator, schema_validator
from ..services.repository import Repository


@dataclass(slots=True)
class ToolContext:
    """Per-turn data handed to every tool execution."""

    repository: Repository
    settings: ToolRuntimeSettings
    conversation_id: str
    user_id: str
    message_id: str


@dataclass(slots=True)
class ToolCall:
    tool: str
    params: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None


class SupportTool:
    """Base class for tools.

    ``validate`` is pure: schema checks plus any tool-specific shape checks.
    ``execute`` enforces business rules and touches the repository. The
    executor never calls ``execute`` unless ``validate`` succeeded.
    """

    name: ClassVar[str] = "unnamed"
    description: ClassVar[str] = ""
    input_schema: ClassVar[Mapping[str, Any]] = {"type": "object", "properties": {}, "additionalProperties": False}
    mutating: ClassVar[bool] = False
    aliases: ClassVar[tuple[str, ...]] = ()
    default_timeout: ClassVar[float | None] = None

    def __init__(self, *, validator: SchemaValidator | None = None) -> None:
        self._validator = validator or schema_validator

    def validate(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return self._validator.validate_payload(self.name, params, self.input_schema)

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:  # pragma: no cover
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": dict(self.input_schema),
            "mutating": self.mutating,
        }


def dump_model(value: BaseModel) -> dict[str, Any]:
    return value.model_dump(mode="json")


__all__ = ["SupportTool", "ToolCall", "ToolContext", "dump_model"]
