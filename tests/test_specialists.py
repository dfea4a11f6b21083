from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence

import pytest

from supportdesk.core.errors import ToolPolicyViolationError, TurnCancelledError
from supportdesk.orchestration.dispatch import SpecialistDispatcher
from supportdesk.orchestration.emitter import CancellationToken
from supportdesk.orchestration.router import extract_entities
from supportdesk.orchestration.specialists import (
    CLARIFYING_QUESTION,
    DELAY_MESSAGE,
    SpecialistRequest,
    SupportSpecialist,
    ToolOutcome,
    build_specialists,
)
from supportdesk.schemas.events import PartialEvent, ToolCallEvent
from supportdesk.schemas.models import AgentType, ExtractedEntities, RoutingDecision
from supportdesk.services.llm import LanguageModelUnavailableError
from supportdesk.tools import AuditTrail, IdempotencyStore, ToolExecutor, build_tool_registry
from supportdesk.tools.base import ToolCall

from tests.helpers.stubs import (
    DEMO_USER_ID,
    ScriptedLanguageModel,
    SlowTool,
    build_repository,
    build_settings,
    build_tool_context,
)


def _decision(agent: AgentType, **entities) -> RoutingDecision:
    return RoutingDecision(agent=agent, confidence=0.9, reasoning="test", entities=ExtractedEntities(**entities))


class _Harness:
    def __init__(self, *, llm=None, settings=None, specialists=None, extra_tools=()) -> None:
        self.settings = settings or build_settings()
        self.repository = build_repository(self.settings)
        self.registry = build_tool_registry()
        for tool in extra_tools:
            self.registry.register(tool)
        self.llm = llm or ScriptedLanguageModel()
        self.executor = ToolExecutor(
            self.registry,
            idempotency=IdempotencyStore(self.repository),
            settings=self.settings.tools,
        )
        self.dispatcher = SpecialistDispatcher(
            executor=self.executor,
            llm=self.llm,
            specialists=specialists,
            settings=self.settings,
        )
        self.trail = AuditTrail(conversation_id="conv-test", message_id="msg-test")
        self.token = CancellationToken()
        self.events: list = []

    async def run(self, decision: RoutingDecision, message: str, *, idempotency_key: str | None = None) -> list:
        request = SpecialistRequest(
            conversation_id="conv-test",
            user_id=DEMO_USER_ID,
            message_id="msg-test",
            user_message=message,
            decision=decision,
            idempotency_key=idempotency_key,
        )
        context = build_tool_context(self.repository, settings=self.settings.tools)
        async for event in self.dispatcher.dispatch(request, context=context, trail=self.trail, token=self.token):
            self.events.append(event)
        return self.events

    @property
    def tool_calls(self) -> list[str]:
        return [event.tool for event in self.events if isinstance(event, ToolCallEvent)]

    @property
    def text(self) -> str:
        return "".join(event.text for event in self.events if isinstance(event, PartialEvent))


def test_every_agent_type_has_a_specialist() -> None:
    specialists = build_specialists()

    assert set(specialists) == set(AgentType)
    assert specialists[AgentType.UNRESOLVED].tools == ()


def test_dispatcher_rejects_incomplete_specialist_mapping() -> None:
    specialists = build_specialists()
    del specialists[AgentType.BILLING]

    with pytest.raises(ValueError):
        _Harness(specialists=specialists)


@pytest.mark.asyncio
async def test_order_lookup_reports_status_and_tracking() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.ORDER, order_id="ORD-12345"), "Where is my order ORD-12345?")

    assert harness.tool_calls == ["getOrderDetails"]
    assert harness.events[0].params == {"order_id": "ORD-12345"}
    assert "shipped" in harness.text
    assert "1Z999AA10123456784" in harness.text


@pytest.mark.asyncio
async def test_order_without_id_lists_recent_orders() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.ORDER), "what's happening with my orders")

    assert harness.tool_calls == ["listOrders"]
    assert "ORD-12347" in harness.text


@pytest.mark.asyncio
async def test_cancel_request_uses_turn_scoped_idempotency_key() -> None:
    harness = _Harness()

    await harness.run(
        _decision(AgentType.ORDER, order_id="ORD-12347"),
        "Please cancel ORD-12347",
        idempotency_key="client-key",
    )

    assert harness.tool_calls == ["getOrderDetails", "updateOrderStatus"]
    update = harness.trail.records[1]
    assert update.status == "success"
    assert update.idempotency_key == "client-key:updateOrderStatus"
    assert "cancelled" in harness.text


@pytest.mark.asyncio
async def test_cancelling_a_delivered_order_is_explained_not_raised() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.ORDER, order_id="ORD-12346"), "cancel ORD-12346 please")

    assert harness.tool_calls == ["getOrderDetails", "updateOrderStatus"]
    assert harness.trail.records[1].error_kind == "business_rule"
    assert "can no longer be changed" in harness.text


@pytest.mark.asyncio
async def test_refund_streams_model_reply() -> None:
    llm = ScriptedLanguageModel(replies=[["Your refund ", "of $20.00 ", "is done."]])
    harness = _Harness(llm=llm)

    await harness.run(_decision(AgentType.BILLING, invoice_id="INV-1001", amount=20.0), "Refund $20 on INV-1001")

    assert harness.tool_calls == ["getInvoice", "processRefund"]
    assert [event.text for event in harness.events if isinstance(event, PartialEvent)] == [
        "Your refund ",
        "of $20.00 ",
        "is done.",
    ]
    assert "processRefund(" in llm.generate_prompts[0]


@pytest.mark.asyncio
async def test_refund_above_invoice_amount_is_explained() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.BILLING, invoice_id="INV-1001", amount=200.0), "refund $200 for INV-1001")

    assert harness.trail.records[-1].error_kind == "business_rule"
    assert "exceeds the invoice amount" in harness.text
    assert await harness.repository.get_idempotency_record("msg-test:processRefund") is None


@pytest.mark.asyncio
async def test_unresolved_asks_one_clarifying_question() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.UNRESOLVED), "hmm")

    assert harness.tool_calls == []
    assert [event.text for event in harness.events] == [CLARIFYING_QUESTION]
    assert len(harness.trail) == 0


@pytest.mark.asyncio
async def test_tool_budget_caps_calls_per_turn() -> None:
    harness = _Harness(settings=build_settings(session={"max_tool_calls": 1}))

    await harness.run(_decision(AgentType.ORDER, order_id="ORD-12347"), "cancel ORD-12347")

    assert harness.tool_calls == ["getOrderDetails"]
    order = await harness.repository.get_order("ORD-12347")
    assert order is not None and order.status.value == "pending"


@dataclass
class _RogueSupport(SupportSpecialist):
    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        if outcomes:
            return None
        return ToolCall("processRefund", {"invoice_id": "INV-1001", "amount": 10})


@pytest.mark.asyncio
async def test_tool_outside_specialist_binding_is_a_policy_violation() -> None:
    specialists = {**build_specialists(), AgentType.SUPPORT: _RogueSupport()}
    harness = _Harness(specialists=specialists)

    with pytest.raises(ToolPolicyViolationError):
        await harness.run(_decision(AgentType.SUPPORT), "help")

    assert len(harness.trail) == 0
    assert await harness.repository.list_refunds("INV-1001") == []


@dataclass
class _SlowSupport(SupportSpecialist):
    tools: tuple[str, ...] = ("slowLookup",)

    def plan_next(self, request: SpecialistRequest, outcomes: Sequence[ToolOutcome]) -> ToolCall | None:
        if len(outcomes) >= 2:
            return None
        return ToolCall("slowLookup", {})


@pytest.mark.asyncio
async def test_tool_timeout_produces_delay_message() -> None:
    harness = _Harness(
        settings=build_settings(tools={"invocation_timeout_seconds": 0.05}, session={"max_tool_calls": 1}),
        specialists={**build_specialists(), AgentType.SUPPORT: _SlowSupport()},
        extra_tools=[SlowTool(delay=1.0)],
    )

    await harness.run(_decision(AgentType.SUPPORT), "anything")

    assert harness.tool_calls == ["slowLookup"]
    assert harness.text == DELAY_MESSAGE


@pytest.mark.asyncio
async def test_cancellation_stops_before_the_next_tool_call() -> None:
    slow = SlowTool(delay=0.1)
    harness = _Harness(
        specialists={**build_specialists(), AgentType.SUPPORT: _SlowSupport()},
        extra_tools=[slow],
    )

    task = asyncio.create_task(harness.run(_decision(AgentType.SUPPORT), "anything"))
    await slow.started.wait()
    harness.token.cancel()

    with pytest.raises(TurnCancelledError):
        await task
    assert harness.tool_calls == ["slowLookup"]
    assert len(harness.trail) == 1
    assert not any(isinstance(event, PartialEvent) for event in harness.events)


@pytest.mark.asyncio
async def test_generation_timeout_before_first_chunk_uses_template() -> None:
    llm = ScriptedLanguageModel(replies=[["too late"]], chunk_delay=0.5)
    harness = _Harness(llm=llm, settings=build_settings(llm={"chunk_timeout_seconds": 0.05}))

    await harness.run(_decision(AgentType.ORDER, order_id="ORD-12345"), "where is ORD-12345")

    assert "too late" not in harness.text
    assert "1Z999AA10123456784" in harness.text


@pytest.mark.asyncio
async def test_generation_failure_after_partial_text_propagates() -> None:
    llm = ScriptedLanguageModel(replies=[["Your order ", LanguageModelUnavailableError("connection reset")]])
    harness = _Harness(llm=llm)

    with pytest.raises(LanguageModelUnavailableError):
        await harness.run(_decision(AgentType.ORDER, order_id="ORD-12345"), "where is ORD-12345")

    assert harness.text == "Your order "


@pytest.mark.asyncio
async def test_history_lookup_for_references_to_earlier_messages() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.SUPPORT), "What did I ask you earlier?")

    assert harness.tool_calls == ["getConversationHistory"]
    assert harness.events[0].params["conversation_id"] == "conv-test"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message",
    [
        "Has order ORD-12347 been cancelled yet?",
        "Why was ORD-12347 cancelled?",
        "Is there a cancellation fee for ORD-12347?",
        "What's the status of my cancel request for ORD-12347",
    ],
)
async def test_questions_about_cancellation_do_not_cancel(message: str) -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.ORDER, order_id="ORD-12347"), message)

    assert harness.tool_calls == ["getOrderDetails"]
    order = await harness.repository.get_order("ORD-12347")
    assert order is not None and order.status.value == "pending"


@pytest.mark.asyncio
async def test_polite_cancel_question_still_cancels() -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.ORDER, order_id="ORD-12347"), "Can you cancel ORD-12347 for me?")

    assert harness.tool_calls == ["getOrderDetails", "updateOrderStatus"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message",
    [
        "Did my $40 refund on INV-1001 go through?",
        "Has the $40 refund for INV-1001 been processed?",
        "I was refunded $40 on INV-1001, thanks",
    ],
)
async def test_questions_about_refunds_do_not_refund(message: str) -> None:
    harness = _Harness()

    await harness.run(_decision(AgentType.BILLING, invoice_id="INV-1001", amount=40.0), message)

    assert harness.tool_calls == ["getInvoice"]
    assert await harness.repository.list_refunds("INV-1001") == []


@pytest.mark.asyncio
async def test_grouped_amount_is_not_read_as_a_small_refund() -> None:
    harness = _Harness()
    entities = extract_entities("Please refund $1,250.00 on INV-1003")

    await harness.run(_decision(AgentType.BILLING, **entities.model_dump()), "Please refund $1,250.00 on INV-1003")

    assert harness.events[1].params["amount"] == pytest.approx(1250.0)
    refund = harness.trail.records[-1]
    assert (refund.tool, refund.error_kind) == ("processRefund", "business_rule")
    assert "exceeds the invoice amount" in harness.text
