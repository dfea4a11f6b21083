from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .models import AgentType


class _TurnEventBase(BaseModel):
    sequence: int = Field(default=-1, description="Assigned by the emitter; -1 until emitted.")
    turn_id: str | None = None
    conversation_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal(self) -> bool:
        return False

    def payload(self) -> dict[str, Any]:
        """Event-specific fields without the envelope."""
        return self.model_dump(
            mode="json",
            exclude={"sequence", "turn_id", "conversation_id", "created_at", "type"},
        )


class TypingEvent(_TurnEventBase):
    type: Literal["typing"] = "typing"


class RoutingEvent(_TurnEventBase):
    type: Literal["routing"] = "routing"
    agent: AgentType
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ToolCallEvent(_TurnEventBase):
    type: Literal["tool_call"] = "tool_call"
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)


class PartialEvent(_TurnEventBase):
    type: Literal["partial"] = "partial"
    text: str


class FinalEvent(_TurnEventBase):
    type: Literal["final"] = "final"
    message_id: str

    @property
    def terminal(self) -> bool:
        return True


class ErrorEvent(_TurnEventBase):
    type: Literal["error"] = "error"
    message: str

    @property
    def terminal(self) -> bool:
        return True


TurnEvent = Annotated[
    Union[TypingEvent, RoutingEvent, ToolCallEvent, PartialEvent, FinalEvent, ErrorEvent],
    Field(discriminator="type"),
]

turn_event_adapter: TypeAdapter[TurnEvent] = TypeAdapter(TurnEvent)

__all__ = [
    "ErrorEvent",
    "FinalEvent",
    "PartialEvent",
    "RoutingEvent",
    "ToolCallEvent",
    "TurnEvent",
    "TypingEvent",
    "turn_event_adapter",
]
