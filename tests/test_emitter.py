from __future__ import annotations

import asyncio

import pytest

from supportdesk.core.errors import TurnCancelledError
from supportdesk.orchestration.emitter import CancellationToken, ConversationLocks, EventEmitter, TurnStream
from supportdesk.schemas.events import ErrorEvent, FinalEvent, PartialEvent, TypingEvent, turn_event_adapter


@pytest.mark.asyncio
async def test_events_are_sequenced_and_stamped() -> None:
    emitter = EventEmitter(turn_id="turn-1", conversation_id="conv-1")
    emitter.emit(TypingEvent())
    emitter.emit(PartialEvent(text="Hel"))
    emitter.emit(PartialEvent(text="lo"))
    emitter.emit(FinalEvent(message_id="msg-1"))

    events = [event async for event in emitter.events()]

    assert [event.type for event in events] == ["typing", "partial", "partial", "final"]
    assert [event.sequence for event in events] == [0, 1, 2, 3]
    assert {event.turn_id for event in events} == {"turn-1"}
    assert {event.conversation_id for event in events} == {"conv-1"}


def test_nothing_can_follow_a_terminal_event() -> None:
    emitter = EventEmitter(turn_id="turn-1")
    emitter.emit(ErrorEvent(message="boom"))

    with pytest.raises(RuntimeError):
        emitter.emit(FinalEvent(message_id="msg-1"))
    with pytest.raises(RuntimeError):
        emitter.emit(PartialEvent(text="late"))

    assert emitter.terminal_event is not None
    assert emitter.terminal_event.type == "error"


def test_event_payload_round_trips_through_the_union() -> None:
    event = PartialEvent(text="chunk", sequence=3, turn_id="t", conversation_id="c")

    parsed = turn_event_adapter.validate_python(event.model_dump(mode="json"))

    assert isinstance(parsed, PartialEvent)
    assert parsed.payload() == {"text": "chunk"}


def test_cancellation_token() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("client_disconnected")
    token.cancel("second reason ignored")

    assert token.cancelled
    assert token.reason == "client_disconnected"
    with pytest.raises(TurnCancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_conversation_locks_serialize_in_arrival_order() -> None:
    locks = ConversationLocks()
    order: list[str] = []

    async def turn(name: str, delay: float) -> None:
        async with locks.hold("conv-1"):
            order.append(f"{name}-start")
            await asyncio.sleep(delay)
            order.append(f"{name}-end")

    first = asyncio.create_task(turn("a", 0.05))
    await asyncio.sleep(0)
    second = asyncio.create_task(turn("b", 0))
    await asyncio.gather(first, second)

    assert order == ["a-start", "a-end", "b-start", "b-end"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_different_conversations_do_not_block_each_other() -> None:
    locks = ConversationLocks()

    async with locks.hold("conv-1"):
        await asyncio.wait_for(_enter(locks, "conv-2"), timeout=0.5)
        assert locks.locked("conv-1")


async def _enter(locks: ConversationLocks, conversation_id: str) -> None:
    async with locks.hold(conversation_id):
        return None


@pytest.mark.asyncio
async def test_turn_stream_close_waits_for_cooperative_stop() -> None:
    emitter = EventEmitter(turn_id="turn-1")
    token = CancellationToken()
    stopped = asyncio.Event()

    async def session() -> None:
        emitter.emit(TypingEvent())
        await token.wait()
        stopped.set()
        emitter.emit(ErrorEvent(message="cancelled"))

    stream = TurnStream(
        turn_id="turn-1",
        emitter=emitter,
        token=token,
        task=asyncio.create_task(session()),
        grace_seconds=1.0,
    )
    await asyncio.sleep(0)
    await stream.aclose()

    assert stopped.is_set()
    assert stream.task.done() and not stream.task.cancelled()


@pytest.mark.asyncio
async def test_turn_stream_close_cancels_after_grace_period() -> None:
    emitter = EventEmitter(turn_id="turn-1")
    token = CancellationToken()

    async def stubborn() -> None:
        await asyncio.sleep(10)

    stream = TurnStream(
        turn_id="turn-1",
        emitter=emitter,
        token=token,
        task=asyncio.create_task(stubborn()),
        grace_seconds=0.05,
    )
    await stream.aclose()

    assert token.cancelled
    assert stream.task.cancelled()
    assert emitter.closed
    assert [event async for event in emitter.events()] == []
