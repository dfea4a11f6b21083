from __future__ import annotations

import asyncio
import json
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, ClassVar, Protocol, Sequence

from ..core.errors import LanguageModelTimeoutError, SupportDeskError
from ..core.logging import get_logger
from ..schemas.models import AgentType, Message, RoutingDecision
from ..services.llm import LanguageModel, LanguageModelUnavailableError
from ..tools.base import ToolCall
from ..tools.executor import ToolResult

logger = get_logger(name=__name__)

DELAY_MESSAGE = (
    "This is taking longer than expected on our side. I've logged your request; "
    "please check back in a moment or ask me again shortly."
)

CLARIFYING_QUESTION = (
    "I want to make sure I get you to the right place. Is your question about an order "
    "(status, delivery, cancellation), a bill or refund, or something about your account? "
    "If you have an order number (like ORD-12345) or invoice number (like INV-1001), please include it."
)


@dataclass(slots=True)
class SpecialistRequest:
    conversation_id: str
    user_id: str
    message_id: str
    user_message: str
    decision: RoutingDecision
    window: list[Message] = field(default_factory=list)
    idempotency_key: str | None = None

    def idempotency_key_for(self, tool: str) -> str:
        base = self.idempotency_key or self.message_id
        return f"{base}:{tool}"


@dataclass(slots=True)
class ToolOutcome:
    call: ToolCall
    result: ToolResult | None = None
    error: SupportDeskError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    @property
    def output(self) -> dict[str, Any]:
        return self.result.output if self.result is not None else {}

    def describe(self) -> str:
        params = ", ".join(f"{key}={value}" for key, value in self.call.params.items())
        if self.ok:
            return f"{self.call.tool}({params}) -> {json.dumps(self.output, sort_keys=True, default=str)}"
        message = self.error.message if self.error is not None else "no result"
        return f"{self.call.tool}({params}) -> ERROR[{self.error_kind}]: {message}"


class Specialist(Protocol):
    agent: ClassVar[AgentType]
    name: str
    description: str
    system_prompt: str
    tools: tuple[str, ...]

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        ...

    def compose(
        self,
        request: SpecialistRequest,
        outcomes: Sequence[ToolOutcome],
        *,
        llm: LanguageModel,
        chunk_timeout: float,
    ) -> AsyncIterator[str]:
        ...


def _contains_any(text: str, words: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in words)


# "Has ORD-1 been cancelled yet?", "Did my refund go through?"
_STATUS_QUESTION = re.compile(
    r"^\s*(?:has|have|had|did|does|do|is|was|were|are|will)\b.*\?\s*$"
    r"|\b(?:status of|go through|gone through|went through|yet)\b",
    re.IGNORECASE | re.DOTALL,
)


def _asks_for(text: str, phrases: Sequence[str]) -> bool:
    """True when ``text`` requests the action named by ``phrases`` rather than asking about it."""
    if _STATUS_QUESTION.search(text):
        return False
    pattern = r"\b(?:" + "|".join(re.escape(phrase) for phrase in phrases) + r")\b"
    return re.search(pattern, text, re.IGNORECASE) is not None


def _find(outcomes: Sequence[ToolOutcome], tool: str) -> ToolOutcome | None:
    for outcome in reversed(outcomes):
        if outcome.call.tool == tool:
            return outcome
    return None


def _money(amount: Any, currency: str = "USD") -> str:
    try:
        return f"{float(amount):.2f} {currency}"
    except (TypeError, ValueError):
        return f"{amount} {currency}"


@dataclass
class BaseSpecialist:
    """Shared composition: stream the model's reply, fall back to a template."""

    agent: ClassVar[AgentType]
    name: str = "base_specialist"
    description: str = ""
    system_prompt: str = ""
    tools: tuple[str, ...] = ()

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        return None

    def fallback_response(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> str:
        return "Thanks for reaching out. Could you tell me a little more about what you need?"

    async def compose(
        self,
        request: SpecialistRequest,
        outcomes: Sequence[ToolOutcome],
        *,
        llm: LanguageModel,
        chunk_timeout: float,
    ) -> AsyncIterator[str]:
        if any(outcome.error_kind == "timeout" for outcome in outcomes):
            yield DELAY_MESSAGE
            return

        prompt = self.build_prompt(request, outcomes)
        produced = False
        async with aclosing(llm.generate(prompt, request.window, system_prompt=self.system_prompt)) as stream:
            iterator = stream.__aiter__()
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=chunk_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    if produced:
                        raise LanguageModelTimeoutError("generation", chunk_timeout) from exc
                    logger.warning("specialist_generation_degraded", agent=self.agent.value, reason="timeout")
                    yield self.fallback_response(request, outcomes)
                    return
                except LanguageModelUnavailableError as exc:
                    if produced:
                        raise
                    logger.warning(
                        "specialist_generation_degraded",
                        agent=self.agent.value,
                        reason="unavailable",
                        error=str(exc),
                    )
                    yield self.fallback_response(request, outcomes)
                    return
                if not chunk:
                    continue
                produced = True
                yield chunk
        if not produced:
            yield self.fallback_response(request, outcomes)

    def build_prompt(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> str:
        entities = request.decision.entities.model_dump(exclude_none=True)
        lines = [f"Customer message: {request.user_message}"]
        if entities:
            lines.append(f"Extracted references: {json.dumps(entities, sort_keys=True)}")
        if outcomes:
            lines.append("Tool results:")
            lines.extend(f"- {outcome.describe()}" for outcome in outcomes)
        else:
            lines.append("No tools were called for this message.")
        lines.append(
            "Reply to the customer in a friendly, concise way. Use only facts from the tool results; "
            "if a tool reported an error, explain it plainly and suggest a next step."
        )
        return "\n".join(lines)


@dataclass
class OrderSpecialist(BaseSpecialist):
    agent: ClassVar[AgentType] = AgentType.ORDER
    name: str = "order_specialist"
    description: str = "Order status, shipment tracking and order changes."
    system_prompt: str = (
        "You are the order specialist of a customer-support team. You explain order status, shipping and "
        "tracking, and confirm or decline order changes based strictly on the tool results you are given. "
        "Always mention the order's current status and, when available, its tracking number."
    )
    tools: tuple[str, ...] = ("getOrderDetails", "listOrders", "updateOrderStatus")
    cancel_words: tuple[str, ...] = ("cancel", "call off", "don't want it", "do not want it")

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        order_id = request.decision.entities.order_id
        if order_id is None:
            if _find(outcomes, "listOrders") is None:
                return ToolCall("listOrders", {"user_id": request.user_id, "limit": 5})
            return None

        details = _find(outcomes, "getOrderDetails")
        if details is None:
            return ToolCall("getOrderDetails", {"order_id": order_id})
        if (
            details.ok
            and _asks_for(request.user_message, self.cancel_words)
            and _find(outcomes, "updateOrderStatus") is None
        ):
            return ToolCall(
                "updateOrderStatus",
                {"order_id": order_id, "status": "cancelled"},
                idempotency_key=request.idempotency_key_for("updateOrderStatus"),
            )
        return None

    def fallback_response(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> str:
        update = _find(outcomes, "updateOrderStatus")
        if update is not None:
            if update.ok:
                order = update.output.get("order", {})
                return f"Done: order {order.get('id')} has been cancelled. You'll receive a confirmation shortly."
            return f"I couldn't change that order: {update.error.message if update.error else 'unknown error'}."

        details = _find(outcomes, "getOrderDetails")
        if details is not None:
            if not details.ok:
                return (
                    f"I couldn't look up that order: {details.error.message if details.error else 'unknown error'}. "
                    "Please double-check the order number."
                )
            order = details.output
            text = f"Order {order.get('id')} is currently {order.get('status')}."
            if order.get("tracking_number"):
                carrier = f" ({order['carrier']})" if order.get("carrier") else ""
                text += f" Tracking number: {order['tracking_number']}{carrier}."
            return text

        listing = _find(outcomes, "listOrders")
        if listing is not None and listing.ok:
            orders = listing.output.get("orders", [])
            if not orders:
                return "I couldn't find any orders on your account. Do you have an order number?"
            summary = "; ".join(f"{order['id']} ({order['status']})" for order in orders)
            return f"Here are your recent orders: {summary}. Which one can I help with?"
        return "Could you share your order number (for example ORD-12345) so I can look it up?"


@dataclass
class BillingSpecialist(BaseSpecialist):
    agent: ClassVar[AgentType] = AgentType.BILLING
    name: str = "billing_specialist"
    description: str = "Invoices, payments and refunds."
    system_prompt: str = (
        "You are the billing specialist of a customer-support team. You explain invoices and payments and "
        "report refund outcomes exactly as the tool results state them, including when a refund needs approval."
    )
    tools: tuple[str, ...] = ("getInvoice", "listInvoices", "processRefund")
    refund_words: tuple[str, ...] = ("refund", "money back", "reimburse")

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        entities = request.decision.entities
        if entities.invoice_id is None:
            if _find(outcomes, "listInvoices") is None:
                return ToolCall("listInvoices", {"user_id": request.user_id, "limit": 5})
            return None

        invoice = _find(outcomes, "getInvoice")
        if invoice is None:
            return ToolCall("getInvoice", {"invoice_id": entities.invoice_id})
        if (
            invoice.ok
            and entities.amount is not None
            and _asks_for(request.user_message, self.refund_words)
            and _find(outcomes, "processRefund") is None
        ):
            return ToolCall(
                "processRefund",
                {
                    "invoice_id": entities.invoice_id,
                    "amount": entities.amount,
                    "reason": request.user_message[:500],
                },
                idempotency_key=request.idempotency_key_for("processRefund"),
            )
        return None

    def fallback_response(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> str:
        refund = _find(outcomes, "processRefund")
        if refund is not None:
            if not refund.ok:
                return f"I couldn't process that refund: {refund.error.message if refund.error else 'unknown error'}."
            details = refund.output.get("refund", {})
            amount = _money(details.get("amount"), refund.output.get("currency", "USD"))
            if details.get("requires_approval"):
                return (
                    f"Your refund of {amount} on invoice {details.get('invoice_id')} has been submitted and "
                    "needs approval from our billing team. We'll let you know once it's approved."
                )
            return f"Your refund of {amount} on invoice {details.get('invoice_id')} has been processed."

        invoice = _find(outcomes, "getInvoice")
        if invoice is not None:
            if not invoice.ok:
                return f"I couldn't find that invoice: {invoice.error.message if invoice.error else 'unknown error'}."
            data = invoice.output
            text = (
                f"Invoice {data.get('id')} for {_money(data.get('amount'), data.get('currency', 'USD'))} "
                f"is {data.get('status')}."
            )
            if _contains_any(request.user_message, self.refund_words) and request.decision.entities.amount is None:
                text += " How much would you like refunded?"
            return text

        listing = _find(outcomes, "listInvoices")
        if listing is not None and listing.ok:
            invoices = listing.output.get("invoices", [])
            if not invoices:
                return "I couldn't find any invoices on your account."
            summary = "; ".join(
                f"{item['id']} ({_money(item['amount'], item.get('currency', 'USD'))}, {item['status']})"
                for item in invoices
            )
            return f"Here are your invoices: {summary}. Which one can I help with?"
        return "Could you share the invoice number (for example INV-1001)?"


@dataclass
class SupportSpecialist(BaseSpecialist):
    agent: ClassVar[AgentType] = AgentType.SUPPORT
    name: str = "support_specialist"
    description: str = "Accounts, product questions and general help."
    system_prompt: str = (
        "You are the general support specialist of a customer-support team. Help with account and product "
        "questions. If the customer needs order or billing help, ask for the order or invoice number."
    )
    tools: tuple[str, ...] = ("getConversationHistory",)
    history_words: tuple[str, ...] = (
        "earlier",
        "before",
        "previous",
        "history",
        "last time",
        "what did i",
        "remind me",
    )

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        if _contains_any(request.user_message, self.history_words) and not outcomes:
            return ToolCall(
                "getConversationHistory",
                {"conversation_id": request.conversation_id, "limit": 10, "include_archived": True},
            )
        return None

    def fallback_response(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> str:
        history = _find(outcomes, "getConversationHistory")
        if history is not None and history.ok:
            earlier = [item for item in history.output.get("messages", []) if item.get("role") == "user"]
            if earlier:
                return f"Earlier you asked: \"{earlier[-1]['content']}\". What else can I help you with?"
            return "This is the start of our conversation. How can I help?"
        return (
            "Thanks for reaching out. I can help with your account, orders and billing. "
            "Could you tell me a bit more about what you need?"
        )


@dataclass
class UnresolvedSpecialist(BaseSpecialist):
    agent: ClassVar[AgentType] = AgentType.UNRESOLVED
    name: str = "clarifier"
    description: str = "Asks a clarifying question when the intent is unclear."
    tools: tuple[str, ...] = ()

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        return None

    def fallback_response(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> str:
        return CLARIFYING_QUESTION

    async def compose(
        self,
        request: SpecialistRequest,
        outcomes: Sequence[ToolOutcome],
        *,
        llm: LanguageModel,
        chunk_timeout: float,
    ) -> AsyncIterator[str]:
        yield CLARIFYING_QUESTION


def _specialist_for(agent: AgentType) -> BaseSpecialist:
    if agent is AgentType.ORDER:
        return OrderSpecialist()
    if agent is AgentType.BILLING:
        return BillingSpecialist()
    if agent is AgentType.SUPPORT:
        return SupportSpecialist()
    if agent is AgentType.UNRESOLVED:
        return UnresolvedSpecialist()
    raise AssertionError(f"No specialist defined for {agent!r}")


def build_specialists() -> dict[AgentType, BaseSpecialist]:
    """One specialist per ``AgentType`` member; a member without one fails here."""
    return {agent: _specialist_for(agent) for agent in AgentType}


__all__ = [
    "BaseSpecialist",
    "BillingSpecialist",
    "CLARIFYING_QUESTION",
    "DELAY_MESSAGE",
    "OrderSpecialist",
    "Specialist",
    "SpecialistRequest",
    "SupportSpecialist",
    "ToolOutcome",
    "UnresolvedSpecialist",
    "build_specialists",
]
