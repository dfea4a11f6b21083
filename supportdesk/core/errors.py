from __future__ import annotations

import uuid
from typing import Any

__all__ = [
    "SupportDeskError",
    "ValidationError",
    "BusinessRuleError",
    "TimeoutExceededError",
    "ToolTimeoutError",
    "LanguageModelTimeoutError",
    "ConflictError",
    "InternalError",
    "ToolPolicyViolationError",
    "TurnCancelledError",
    "new_correlation_id",
]


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


class SupportDeskError(Exception):
    """Base class for every typed failure raised by the orchestration core."""

    kind: str = "internal"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ValidationError(SupportDeskError):
    """Structured input or output does not match its declared shape."""

    kind = "validation"

    def __init__(
        self,
        message: str,
        *,
        errors: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.errors = list(errors or [message])


class BusinessRuleError(SupportDeskError):
    """A tool precondition does not hold. Never retried automatically."""

    kind = "business_rule"


class TimeoutExceededError(SupportDeskError):
    """An external capability exceeded its time bound."""

    kind = "timeout"


class ToolTimeoutError(TimeoutExceededError):
    def __init__(self, tool: str, timeout: float) -> None:
        super().__init__(f"Tool '{tool}' did not finish within {timeout:.1f}s", details={"tool": tool})
        self.tool = tool
        self.timeout = timeout


class LanguageModelTimeoutError(TimeoutExceededError):
    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"Language model {operation} did not respond within {timeout:.1f}s",
            details={"operation": operation},
        )
        self.operation = operation
        self.timeout = timeout


class ConflictError(SupportDeskError):
    """An idempotency key is already bound to a stored result."""

    kind = "conflict"

    def __init__(self, key: str, *, existing: Any | None = None) -> None:
        super().__init__(f"Idempotency key '{key}' has already been used")
        self.key = key
        self.existing = existing


class InternalError(SupportDeskError):
    """Unanticipated failure. The message shown to callers never includes the cause."""

    kind = "internal"

    def __init__(
        self,
        message: str = "Internal error",
        *,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.correlation_id = correlation_id or new_correlation_id()

    @property
    def public_message(self) -> str:
        return f"Something went wrong while handling your request (reference {self.correlation_id})."


class ToolPolicyViolationError(InternalError):
    """A specialist asked for a tool outside of its bound subset."""

    def __init__(self, agent: str, tool: str) -> None:
        super().__init__(f"Specialist '{agent}' is not allowed to call '{tool}'")
        self.agent = agent
        self.tool = tool


class TurnCancelledError(SupportDeskError):
    """The caller went away; the turn stops at the next safe boundary."""

    kind = "cancelled"
