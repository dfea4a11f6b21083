from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Protocol, Sequence, runtime_checkable

from ..core.config import ContextSettings
from ..core.errors import BusinessRuleError, ConflictError
from ..core.logging import get_logger
from ..schemas.models import (
    Conversation,
    IdempotencyRecord,
    Invoice,
    InvoiceStatus,
    Message,
    Order,
    OrderStatus,
    Refund,
    RefundStatus,
    ToolInvocation,
)

logger = get_logger(name=__name__)


@runtime_checkable
class Repository(Protocol):
    """Durable store for conversations, audit records and the support domain."""

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    async def get_or_create_conversation(self, conversation_id: str | None, *, user_id: str) -> Conversation:
        ...

    async def commit_turn(
        self,
        conversation_id: str,
        *,
        messages: Sequence[Message],
        invocations: Sequence[ToolInvocation],
    ) -> Conversation:
        ...

    async def apply_compaction(
        self,
        conversation_id: str,
        *,
        summary: str,
        archived_message_ids: Sequence[str],
    ) -> Conversation:
        ...

    async def list_messages(self, conversation_id: str, *, include_archived: bool = False) -> list[Message]:
        ...

    async def list_tool_invocations(self, conversation_id: str | None = None) -> list[ToolInvocation]:
        ...

    async def get_idempotency_record(self, key: str) -> IdempotencyRecord | None:
        ...

    async def save_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        ...

    async def get_order(self, order_id: str) -> Order | None:
        ...

    async def list_orders(self, user_id: str, *, limit: int = 5) -> list[Order]:
        ...

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        ...

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        ...

    async def list_invoices(self, user_id: str, *, limit: int = 5) -> list[Invoice]:
        ...

    async def create_refund(self, refund: Refund) -> Refund:
        ...


class InMemoryRepository:
    """Process-local repository.

    Writes go through a single lock and replace stored objects with updated
    copies, so a turn commit either lands completely or not at all. Reads hand
    out deep copies; callers never alias stored state.
    """

    def __init__(self, *, context: ContextSettings | None = None) -> None:
        self._context = context or ContextSettings()
        self._lock = asyncio.Lock()
        self._conversations: dict[str, Conversation] = {}
        self._invocations: list[ToolInvocation] = []
        self._idempotency: dict[str, IdempotencyRecord] = {}
        self._orders: dict[str, Order] = {}
        self._invoices: dict[str, Invoice] = {}
        self._refunds: dict[str, Refund] = {}

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["InMemoryRepository"]:
        yield self

    def seed(
        self,
        *,
        orders: Iterable[Order] = (),
        invoices: Iterable[Invoice] = (),
    ) -> None:
        for order in orders:
            self._orders[order.id] = order.model_copy(deep=True)
        for invoice in invoices:
            self._invoices[invoice.id] = invoice.model_copy(deep=True)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with self._lock:
            stored = self._conversations.get(conversation_id)
            return stored.model_copy(deep=True) if stored is not None else None

    async def get_or_create_conversation(self, conversation_id: str | None, *, user_id: str) -> Conversation:
        async with self._lock:
            if conversation_id and conversation_id in self._conversations:
                stored = self._conversations[conversation_id]
                if stored.user_id != user_id:
                    raise BusinessRuleError(f"Conversation {conversation_id} belongs to another user")
                return stored.model_copy(deep=True)
            conversation = Conversation(user_id=user_id)
            if conversation_id:
                conversation.id = conversation_id
            self._conversations[conversation.id] = conversation
            logger.info("conversation_created", conversation_id=conversation.id, user_id=user_id)
            return conversation.model_copy(deep=True)

    async def commit_turn(
        self,
        conversation_id: str,
        *,
        messages: Sequence[Message],
        invocations: Sequence[ToolInvocation],
    ) -> Conversation:
        async with self._lock:
            stored = self._require_conversation(conversation_id)
            updated = stored.model_copy(deep=True)
            for message in messages:
                updated.append(
                    message.model_copy(deep=True),
                    chars_per_token=self._context.chars_per_token,
                    overhead=self._context.message_overhead_tokens,
                )
            records = [record.model_copy(deep=True) for record in invocations]
            self._conversations[conversation_id] = updated
            self._invocations.extend(records)
            return updated.model_copy(deep=True)

    async def apply_compaction(
        self,
        conversation_id: str,
        *,
        summary: str,
        archived_message_ids: Sequence[str],
    ) -> Conversation:
        async with self._lock:
            stored = self._require_conversation(conversation_id)
            updated = stored.model_copy(deep=True)
            targets = set(archived_message_ids)
            for message in updated.messages:
                if message.id in targets:
                    message.archived = True
            updated.summary = summary
            updated.compaction_count += 1
            updated.refresh_token_estimate(
                chars_per_token=self._context.chars_per_token,
                overhead=self._context.message_overhead_tokens,
            )
            self._conversations[conversation_id] = updated
            return updated.model_copy(deep=True)

    async def list_messages(self, conversation_id: str, *, include_archived: bool = False) -> list[Message]:
        async with self._lock:
            stored = self._conversations.get(conversation_id)
            if stored is None:
                return []
            source = stored.messages if include_archived else stored.active_messages
            return [message.model_copy(deep=True) for message in source]

    async def list_tool_invocations(self, conversation_id: str | None = None) -> list[ToolInvocation]:
        async with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._invocations
                if conversation_id is None or record.conversation_id == conversation_id
            ]

    async def get_idempotency_record(self, key: str) -> IdempotencyRecord | None:
        async with self._lock:
            return self._idempotency.get(key)

    async def save_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        async with self._lock:
            existing = self._idempotency.get(record.key)
            if existing is not None:
                raise ConflictError(record.key, existing=existing)
            self._idempotency[record.key] = record
            return record

    async def get_order(self, order_id: str) -> Order | None:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order is not None else None

    async def list_orders(self, user_id: str, *, limit: int = 5) -> list[Order]:
        async with self._lock:
            orders = [order for order in self._orders.values() if order.user_id == user_id]
        orders.sort(key=lambda order: order.updated_at, reverse=True)
        return [order.model_copy(deep=True) for order in orders[: max(0, limit)]]

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise BusinessRuleError(f"Order {order_id} was not found")
            if not order.can_transition_to(status):
                raise BusinessRuleError(
                    f"Order {order_id} cannot move from {order.status.value} to {status.value}"
                )
            updated = order.model_copy(update={"status": status, "updated_at": datetime.now(timezone.utc)})
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        async with self._lock:
            invoice = self._invoices.get(invoice_id)
            return invoice.model_copy(deep=True) if invoice is not None else None

    async def list_invoices(self, user_id: str, *, limit: int = 5) -> list[Invoice]:
        async with self._lock:
            invoices = [invoice for invoice in self._invoices.values() if invoice.user_id == user_id]
        return [invoice.model_copy(deep=True) for invoice in invoices[: max(0, limit)]]

    async def create_refund(self, refund: Refund) -> Refund:
        async with self._lock:
            invoice = self._invoices.get(refund.invoice_id)
            if invoice is None:
                raise BusinessRuleError(f"Invoice {refund.invoice_id} was not found")
            if invoice.status is not InvoiceStatus.PAID:
                raise BusinessRuleError(f"Invoice {invoice.id} is {invoice.status.value}, not paid")
            if refund.amount > invoice.refundable_balance:
                raise BusinessRuleError(
                    f"Refund of {refund.amount:.2f} exceeds the refundable balance of {invoice.refundable_balance:.2f}"
                )
            # Refunds held for approval still reserve their share of the balance.
            refunded_total = round(invoice.refunded_total + refund.amount, 2)
            status = invoice.status
            if refund.status is RefundStatus.COMPLETED and refunded_total >= invoice.amount:
                status = InvoiceStatus.REFUNDED
            self._invoices[invoice.id] = invoice.model_copy(
                update={"refunded_total": refunded_total, "status": status}
            )
            stored = refund.model_copy(deep=True)
            self._refunds[stored.id] = stored
            return stored.model_copy(deep=True)

    async def list_refunds(self, invoice_id: str) -> list[Refund]:
        async with self._lock:
            return [
                refund.model_copy(deep=True)
                for refund in self._refunds.values()
                if refund.invoice_id == invoice_id
            ]

    def _require_conversation(self, conversation_id: str) -> Conversation:
        stored = self._conversations.get(conversation_id)
        if stored is None:
            raise KeyError(f"Unknown conversation {conversation_id}")
        return stored


__all__ = ["InMemoryRepository", "Repository"]
