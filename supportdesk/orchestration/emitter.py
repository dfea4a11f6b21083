from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from ..core.errors import TurnCancelledError
from ..core.logging import get_logger
from ..schemas.events import TurnEvent

logger = get_logger(name=__name__)


class CancellationToken:
    """Cooperative cancellation flag checked at the session's safe boundaries."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "client_disconnected") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(f"Turn cancelled ({self.reason})")

    async def wait(self) -> None:
        await self._event.wait()


class EventEmitter:
    """Delivers one turn's events in order, ending with exactly one terminal event."""

    def __init__(self, *, turn_id: str, conversation_id: str | None = None) -> None:
        self.turn_id = turn_id
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue[TurnEvent | None] = asyncio.Queue()
        self._sequence = 0
        self._terminal: TurnEvent | None = None
        self._closed = False

    @property
    def terminated(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> TurnEvent | None:
        return self._terminal

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def emitted(self) -> int:
        return self._sequence

    def bind_conversation(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id

    def emit(self, event: TurnEvent) -> TurnEvent:
        if self._terminal is not None:
            raise RuntimeError(
                f"Turn {self.turn_id} already ended with '{self._terminal.type}'; cannot emit '{event.type}'"
            )
        if self._closed:
            raise RuntimeError(f"Event stream for turn {self.turn_id} is closed")
        stamped = event.model_copy(
            update={
                "sequence": self._sequence,
                "turn_id": self.turn_id,
                "conversation_id": self.conversation_id,
            }
        )
        self._sequence += 1
        self._queue.put_nowait(stamped)
        if stamped.terminal:
            self._terminal = stamped
            self._close()
        return stamped

    def close(self) -> None:
        """End the stream without a terminal event (the caller went away)."""
        if not self._closed:
            self._close()

    def _close(self) -> None:
        self._closed = True
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[TurnEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


@dataclass
class TurnStream:
    """Consumer side of a running turn.

    Iterating yields the turn's events until the terminal one. ``aclose``
    cancels the turn cooperatively, then forcibly after ``grace_seconds``.
    """

    turn_id: str
    emitter: EventEmitter
    token: CancellationToken
    task: asyncio.Task[None]
    grace_seconds: float = 5.0
    _closed: bool = field(default=False, init=False)

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        return self.emitter.events()

    async def collect(self) -> list[TurnEvent]:
        return [event async for event in self]

    async def wait(self) -> None:
        await asyncio.shield(self.task)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.task.done():
            return
        self.token.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self.task), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("turn_cancel_forced", turn_id=self.turn_id, grace_seconds=self.grace_seconds)
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        finally:
            self.emitter.close()


class ConversationLocks:
    """Per-conversation locks; idle entries are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] == 0:
                self._users.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)

    def locked(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["CancellationToken", "ConversationLocks", "EventEmitter", "TurnStream"]
