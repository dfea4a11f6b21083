from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CHARS_PER_TOKEN = 4
DEFAULT_MESSAGE_OVERHEAD = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def new_message_id() -> str:
    return _new_id("msg")


def estimate_tokens(
    text: str | None,
    *,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    overhead: int = DEFAULT_MESSAGE_OVERHEAD,
) -> int:
    """Cheap deterministic token approximation based on character count."""
    length = len(text or "")
    return math.ceil(length / max(1, chars_per_token)) + max(0, overhead)


class AgentType(str, Enum):
    SUPPORT = "support"
    ORDER = "order"
    BILLING = "billing"
    UNRESOLVED = "unresolved"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class ExtractedEntities(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str | None = None
    invoice_id: str | None = None
    amount: float | None = Field(default=None, ge=0.0)

    def merged_with(self, other: "ExtractedEntities") -> "ExtractedEntities":
        """Fill fields that are missing here from ``other``."""
        return ExtractedEntities(
            order_id=self.order_id or other.order_id,
            invoice_id=self.invoice_id or other.invoice_id,
            amount=self.amount if self.amount is not None else other.amount,
        )


RoutingMode = Literal["model", "retry", "keyword_fallback", "default"]


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent: AgentType
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    mode: RoutingMode = "model"


class Message(BaseModel):
    id: str = Field(default_factory=new_message_id)
    conversation_id: str
    role: MessageRole
    content: str
    agent: AgentType | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    archived: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("conv"))
    user_id: str = Field(min_length=1)
    summary: str | None = None
    token_estimate: int = Field(default=0, ge=0)
    compaction_count: int = Field(default=0, ge=0)
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def active_messages(self) -> list[Message]:
        return [message for message in self.messages if not message.archived]

    def append(
        self,
        message: Message,
        *,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        overhead: int = DEFAULT_MESSAGE_OVERHEAD,
    ) -> None:
        if message.conversation_id != self.id:
            raise ValueError(f"Message {message.id} belongs to conversation {message.conversation_id}")
        self.messages.append(message)
        self.refresh_token_estimate(chars_per_token=chars_per_token, overhead=overhead)

    def refresh_token_estimate(
        self,
        *,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        overhead: int = DEFAULT_MESSAGE_OVERHEAD,
    ) -> int:
        total = sum(
            estimate_tokens(message.content, chars_per_token=chars_per_token, overhead=overhead)
            for message in self.active_messages
        )
        if self.summary:
            total += estimate_tokens(self.summary, chars_per_token=chars_per_token, overhead=overhead)
        self.token_estimate = total
        self.updated_at = _utcnow()
        return total


class ToolInvocation(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("tool"))
    conversation_id: str
    message_id: str
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    status: Literal["success", "error"]
    deduplicated: bool = False
    idempotency_key: str | None = None
    duration_ms: float = Field(default=0.0, ge=0.0)
    created_at: datetime = Field(default_factory=_utcnow)


class IdempotencyRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str = Field(min_length=1)
    tool: str
    result: dict[str, Any]
    created_at: datetime = Field(default_factory=_utcnow)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class Order(BaseModel):
    id: str
    user_id: str
    status: OrderStatus
    items: list[dict[str, Any]] = Field(default_factory=list)
    total: float = Field(default=0.0, ge=0.0)
    tracking_number: str | None = None
    carrier: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return not ORDER_TRANSITIONS[self.status]

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in ORDER_TRANSITIONS[self.status]


class InvoiceStatus(str, Enum):
    ISSUED = "issued"
    PAID = "paid"
    REFUNDED = "refunded"
    VOID = "void"


class Invoice(BaseModel):
    id: str
    user_id: str
    order_id: str | None = None
    amount: float = Field(ge=0.0)
    currency: str = "USD"
    status: InvoiceStatus
    refunded_total: float = Field(default=0.0, ge=0.0)

    @property
    def refundable_balance(self) -> float:
        return round(max(self.amount - self.refunded_total, 0.0), 2)


class RefundStatus(str, Enum):
    COMPLETED = "completed"
    PENDING_APPROVAL = "pending_approval"


class Refund(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("rf"))
    invoice_id: str
    amount: float = Field(gt=0.0)
    reason: str | None = None
    status: RefundStatus
    requires_approval: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


__all__ = [
    "AgentType",
    "Conversation",
    "ExtractedEntities",
    "IdempotencyRecord",
    "Invoice",
    "InvoiceStatus",
    "Message",
    "MessageRole",
    "ORDER_TRANSITIONS",
    "Order",
    "OrderStatus",
    "Refund",
    "RefundStatus",
    "RoutingDecision",
    "RoutingMode",
    "ToolInvocation",
    "estimate_tokens",
]
