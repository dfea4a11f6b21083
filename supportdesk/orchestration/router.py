from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Literal, Mapping, Sequence

from pydantic import BaseModel, Field

from ..core.config import RouterSettings
from ..core.errors import ValidationError
from ..core.logging import get_logger
from ..core.metrics import observe_routing_decision
from ..core.validation import SchemaValidator, schema_validator
from ..schemas.models import AgentType, ExtractedEntities, Message, RoutingDecision
from ..services.llm import LanguageModel, LanguageModelUnavailableError, render_transcript

logger = get_logger(name=__name__)

_ORDER_ID = re.compile(r"\bORD-?(\d{3,})\b", re.IGNORECASE)
_INVOICE_ID = re.compile(r"\bINV-?(\d{3,})\b", re.IGNORECASE)
_NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?"
_AMOUNT = re.compile(
    rf"(?:\$|USD\s?)\s?({_NUMBER})|({_NUMBER})\s?(?:dollars|usd)\b",
    re.IGNORECASE,
)


class ClassificationEntities(BaseModel):
    order_id: str | None = None
    invoice_id: str | None = None
    amount: float | None = Field(default=None, ge=0.0)


class ClassificationReply(BaseModel):
    """Structure the classifier model must return."""

    agent: Literal["support", "order", "billing", "unresolved"]
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    entities: ClassificationEntities = Field(default_factory=ClassificationEntities)


CLASSIFIER_SYSTEM_PROMPT = """You route customer-support messages to a specialist.

Specialists:
- "order": order status, shipping, delivery, tracking, changing or cancelling an order.
- "billing": invoices, charges, payments, refunds.
- "support": accounts, passwords, product questions, general help.
- "unresolved": the request is unclear or fits none of the above.

Reply with a single JSON object and nothing else:
{"agent": "order" | "billing" | "support" | "unresolved",
 "confidence": <number between 0 and 1>,
 "reasoning": "<one sentence>",
 "entities": {"order_id": "ORD-..." or null, "invoice_id": "INV-..." or null, "amount": <number> or null}}"""

RETRY_REMINDER = (
    "Your previous reply could not be parsed ({errors}). Respond again with ONLY a JSON object with the keys "
    '"agent" (one of "order", "billing", "support", "unresolved"), "confidence" (number 0-1), '
    '"reasoning" (string) and "entities" (object with "order_id", "invoice_id", "amount", each possibly null).'
)

KEYWORD_RULES: Mapping[AgentType, tuple[str, ...]] = {
    AgentType.ORDER: (
        "order",
        "orders",
        "shipping",
        "shipped",
        "shipment",
        "delivery",
        "deliver",
        "delivered",
        "tracking",
        "track",
        "package",
        "parcel",
        "cancel",
        "arrive",
    ),
    AgentType.BILLING: (
        "invoice",
        "invoices",
        "bill",
        "billing",
        "billed",
        "refund",
        "charge",
        "charged",
        "payment",
        "paid",
        "receipt",
        "money back",
    ),
    AgentType.SUPPORT: (
        "help",
        "password",
        "account",
        "login",
        "log in",
        "sign in",
        "reset",
        "support",
        "problem",
        "issue",
        "broken",
        "error",
        "how do i",
        "how can i",
    ),
}

# Ties between keyword scores resolve in this order.
_KEYWORD_PRIORITY: tuple[AgentType, ...] = (AgentType.ORDER, AgentType.BILLING, AgentType.SUPPORT)


def extract_entities(text: str) -> ExtractedEntities:
    """Best-effort regex extraction of order/invoice references and an amount."""
    order_match = _ORDER_ID.search(text)
    invoice_match = _INVOICE_ID.search(text)
    amount: float | None = None
    amount_match = _AMOUNT.search(text)
    if amount_match:
        raw = amount_match.group(1) or amount_match.group(2)
        try:
            amount = float(raw.replace(",", ""))
        except ValueError:
            amount = None
    return ExtractedEntities(
        order_id=f"ORD-{order_match.group(1)}" if order_match else None,
        invoice_id=f"INV-{invoice_match.group(1)}" if invoice_match else None,
        amount=amount,
    )


def _normalize_reference(value: str | None, prefix: str) -> str | None:
    if not value:
        return None
    match = re.search(r"(\d{3,})", value)
    if match is None:
        return None
    return f"{prefix}-{match.group(1)}"


class KeywordClassifier:
    """Deterministic rule-table classifier used when the model is unavailable."""

    def __init__(self, rules: Mapping[AgentType, Sequence[str]] | None = None) -> None:
        self._rules = {agent: tuple(words) for agent, words in (rules or KEYWORD_RULES).items()}

    def scores(self, text: str) -> dict[AgentType, int]:
        lowered = f" {text.lower()} "
        scores: dict[AgentType, int] = {}
        for agent, keywords in self._rules.items():
            hits = 0
            for keyword in keywords:
                if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                    hits += 1
            scores[agent] = hits
        entities = extract_entities(text)
        if entities.order_id:
            scores[AgentType.ORDER] = scores.get(AgentType.ORDER, 0) + 2
        if entities.invoice_id:
            scores[AgentType.BILLING] = scores.get(AgentType.BILLING, 0) + 2
        return scores

    def classify(self, text: str) -> tuple[AgentType, dict[AgentType, int]]:
        scores = self.scores(text)
        best = max(scores.values(), default=0)
        if best <= 0:
            return AgentType.UNRESOLVED, scores
        for agent in _KEYWORD_PRIORITY:
            if scores.get(agent, 0) == best:
                return agent, scores
        return AgentType.UNRESOLVED, scores


class IntentRouter:
    """Classifies a user message into a specialist with a confidence score."""

    def __init__(
        self,
        *,
        llm: LanguageModel,
        settings: RouterSettings | None = None,
        validator: SchemaValidator | None = None,
        keyword_classifier: KeywordClassifier | None = None,
    ) -> None:
        self._llm = llm
        self._settings = settings or RouterSettings()
        self._validator = validator or schema_validator
        self._keywords = keyword_classifier or KeywordClassifier()

    async def classify(self, message: str, recent_context: Sequence[Message] = ()) -> RoutingDecision:
        prompt = self._build_prompt(message, recent_context)
        try:
            decision = await self._classify_with_model(message, prompt)
        except asyncio.TimeoutError:
            logger.warning("router_keyword_fallback", reason="timeout", timeout=self._settings.timeout_seconds)
            decision = self._keyword_decision(message, reason="classification timed out")
        except LanguageModelUnavailableError as exc:
            logger.warning("router_keyword_fallback", reason="unavailable", error=str(exc))
            decision = self._keyword_decision(message, reason="language model unavailable")

        decision = self._apply_threshold(decision)
        observe_routing_decision(decision.agent.value, decision.mode)
        logger.info(
            "routing_decision",
            agent=decision.agent.value,
            confidence=decision.confidence,
            mode=decision.mode,
        )
        return decision

    async def _classify_with_model(self, message: str, prompt: str) -> RoutingDecision:
        raw = await self._call_model(prompt)
        try:
            reply = self._validator.parse_model(ClassificationReply, raw)
            mode = "model"
        except ValidationError as first_error:
            logger.info("router_reply_invalid", attempt=1, errors=first_error.errors)
            retry_prompt = f"{prompt}\n\n{RETRY_REMINDER.format(errors='; '.join(first_error.errors[:3]))}"
            raw = await self._call_model(retry_prompt)
            try:
                reply = self._validator.parse_model(ClassificationReply, raw)
                mode = "retry"
            except ValidationError as second_error:
                logger.warning("router_reply_invalid", attempt=2, errors=second_error.errors)
                return self._default_decision(message)
        return self._decision_from_reply(reply, message, mode=mode)

    async def _call_model(self, prompt: str) -> str | Mapping[str, Any]:
        return await asyncio.wait_for(
            self._llm.classify(prompt, system_prompt=CLASSIFIER_SYSTEM_PROMPT),
            timeout=self._settings.timeout_seconds,
        )

    def _decision_from_reply(self, reply: ClassificationReply, message: str, *, mode: str) -> RoutingDecision:
        reported = ExtractedEntities(
            order_id=_normalize_reference(reply.entities.order_id, "ORD"),
            invoice_id=_normalize_reference(reply.entities.invoice_id, "INV"),
            amount=reply.entities.amount,
        )
        return RoutingDecision(
            agent=AgentType(reply.agent),
            confidence=reply.confidence,
            reasoning=reply.reasoning.strip(),
            entities=reported.merged_with(extract_entities(message)),
            mode=mode,  # type: ignore[arg-type]
        )

    def _keyword_decision(self, message: str, *, reason: str) -> RoutingDecision:
        agent, scores = self._keywords.classify(message)
        matched = {key.value: value for key, value in scores.items() if value}
        if agent is AgentType.UNRESOLVED:
            confidence = 0.0
            summary = "no keyword rule matched"
        else:
            confidence = self._settings.fallback_confidence
            summary = f"keyword scores {json.dumps(matched, sort_keys=True)}"
        return RoutingDecision(
            agent=agent,
            confidence=confidence,
            reasoning=f"Degraded mode ({reason}): {summary}.",
            entities=extract_entities(message),
            mode="keyword_fallback",
        )

    def _default_decision(self, message: str) -> RoutingDecision:
        agent = AgentType(self._settings.default_agent)
        return RoutingDecision(
            agent=agent,
            confidence=max(self._settings.confidence_threshold, self._settings.fallback_confidence),
            reasoning=f"Classifier replies were malformed twice; routed to the default {agent.value} specialist.",
            entities=extract_entities(message),
            mode="default",
        )

    def _apply_threshold(self, decision: RoutingDecision) -> RoutingDecision:
        if decision.mode == "default" or decision.agent is AgentType.UNRESOLVED:
            return decision
        if decision.confidence >= self._settings.confidence_threshold:
            return decision
        return decision.model_copy(
            update={
                "agent": AgentType.UNRESOLVED,
                "reasoning": (
                    f"{decision.reasoning} (confidence {decision.confidence:.2f} below "
                    f"{self._settings.confidence_threshold:.2f}; asking for clarification)"
                ).strip(),
            }
        )

    def _build_prompt(self, message: str, recent_context: Sequence[Message]) -> str:
        sections: list[str] = []
        if recent_context:
            sections.append(f"Recent conversation:\n{render_transcript(recent_context)}")
        sections.append(f"New customer message:\n{message}")
        sections.append("Classify the new customer message.")
        return "\n\n".join(sections)


__all__ = [
    "CLASSIFIER_SYSTEM_PROMPT",
    "ClassificationReply",
    "IntentRouter",
    "KEYWORD_RULES",
    "KeywordClassifier",
    "extract_entities",
]
