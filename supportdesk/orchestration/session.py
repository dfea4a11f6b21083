from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum

from ..core.config import Settings, get_settings
from ..core.errors import (
    InternalError,
    SupportDeskError,
    TurnCancelledError,
    new_correlation_id,
)
from ..core.logging import bind_turn_context, get_logger
from ..core.metrics import observe_turn
from ..schemas.events import ErrorEvent, FinalEvent, PartialEvent, RoutingEvent, ToolCallEvent, TypingEvent
from ..schemas.models import Conversation, Message, MessageRole, RoutingDecision, new_message_id
from ..services.repository import Repository
from ..tools.base import ToolContext
from ..tools.executor import AuditTrail
from .context import ContextManager
from .dispatch import SpecialistDispatcher
from .emitter import CancellationToken, ConversationLocks, EventEmitter
from .router import IntentRouter
from .specialists import SpecialistRequest

logger = get_logger(name=__name__)

CANCELLED_MESSAGE = "The request was cancelled before it completed."


def _new_turn_id() -> str:
    return f"turn_{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class TurnRequest:
    user_id: str
    content: str
    conversation_id: str | None = None
    idempotency_key: str | None = None
    turn_id: str = field(default_factory=_new_turn_id)


class TurnState(str, Enum):
    STARTED = "started"
    CLASSIFYING = "classifying"
    DISPATCHING = "dispatching"
    EXECUTING_TOOLS = "executing_tools"
    COMPOSING = "composing"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.STARTED: frozenset({TurnState.CLASSIFYING}),
    TurnState.CLASSIFYING: frozenset({TurnState.DISPATCHING}),
    TurnState.DISPATCHING: frozenset({TurnState.EXECUTING_TOOLS, TurnState.COMPOSING}),
    TurnState.EXECUTING_TOOLS: frozenset({TurnState.EXECUTING_TOOLS, TurnState.COMPOSING}),
    TurnState.COMPOSING: frozenset({TurnState.PERSISTING}),
    TurnState.PERSISTING: frozenset({TurnState.COMPLETED}),
    TurnState.COMPLETED: frozenset(),
    TurnState.FAILED: frozenset(),
}


class IllegalTransitionError(InternalError):
    def __init__(self, current: TurnState, target: TurnState) -> None:
        super().__init__(f"Illegal turn transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: TurnState, target: TurnState) -> bool:
    if target is TurnState.FAILED:
        return current not in (TurnState.COMPLETED, TurnState.FAILED)
    return target in _TRANSITIONS[current]


class OrchestrationSession:
    """Drives a single turn from the user message to a terminal event.

    The session is the only place where an error becomes an ``error`` event.
    Everything below it raises typed errors.
    """

    def __init__(
        self,
        *,
        repository: Repository,
        router: IntentRouter,
        context_manager: ContextManager,
        dispatcher: SpecialistDispatcher,
        locks: ConversationLocks,
        settings: Settings | None = None,
    ) -> None:
        self._repository = repository
        self._router = router
        self._context = context_manager
        self._dispatcher = dispatcher
        self._locks = locks
        self._settings = settings or get_settings()
        self._state = TurnState.STARTED
        self._history: list[TurnState] = [TurnState.STARTED]
        self._user_message: Message | None = None
        self._trail: AuditTrail | None = None
        self._decision: RoutingDecision | None = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> list[TurnState]:
        return list(self._history)

    @property
    def decision(self) -> RoutingDecision | None:
        return self._decision

    def transition(self, target: TurnState) -> None:
        if not can_transition(self._state, target):
            raise IllegalTransitionError(self._state, target)
        self._state = target
        self._history.append(target)

    async def run(self, request: TurnRequest, emitter: EventEmitter, token: CancellationToken) -> None:
        started = time.perf_counter()
        bind_turn_context(turn_id=request.turn_id, user_id=request.user_id)
        emitter.emit(TypingEvent())
        logger.info("turn_started", conversation_id=request.conversation_id)

        try:
            conversation = await self._repository.get_or_create_conversation(
                request.conversation_id,
                user_id=request.user_id,
            )
        except Exception as exc:
            await self._fail(exc, emitter, started=started)
            return

        emitter.bind_conversation(conversation.id)
        bind_turn_context(conversation_id=conversation.id)

        acquired = False
        try:
            async with self._locks.hold(conversation.id):
                acquired = True
                try:
                    updated = await self._run_locked(request, conversation.id, emitter, token, started=started)
                except asyncio.CancelledError:
                    await asyncio.shield(self._abort(emitter, conversation.id, started=started))
                    raise
                except Exception as exc:
                    await self._fail(exc, emitter, started=started, conversation_id=conversation.id)
                    return

                try:
                    await self._context.maybe_compact(updated)
                except Exception:
                    logger.exception("compaction_failed", conversation_id=conversation.id)
        except asyncio.CancelledError:
            # cancelled while queued behind another turn on this conversation
            if not acquired:
                await asyncio.shield(self._abort(emitter, conversation.id, started=started))
            raise

    async def _run_locked(
        self,
        request: TurnRequest,
        conversation_id: str,
        emitter: EventEmitter,
        token: CancellationToken,
        *,
        started: float,
    ) -> Conversation:
        token.raise_if_cancelled()
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise InternalError(f"Conversation {conversation_id} disappeared during the turn")

        agent_message_id = new_message_id()
        self._user_message = Message(
            conversation_id=conversation_id,
            role=MessageRole.USER,
            content=request.content,
        )
        self._trail = AuditTrail(conversation_id=conversation_id, message_id=agent_message_id)

        self.transition(TurnState.CLASSIFYING)
        recent = self._context.recent_context(conversation, self._settings.router.context_messages)
        decision = await self._router.classify(request.content, recent)
        self._decision = decision
        emitter.emit(
            RoutingEvent(
                agent=decision.agent,
                confidence=decision.confidence,
                reasoning=decision.reasoning,
            )
        )
        token.raise_if_cancelled()

        self.transition(TurnState.DISPATCHING)
        specialist_request = SpecialistRequest(
            conversation_id=conversation_id,
            user_id=request.user_id,
            message_id=agent_message_id,
            user_message=request.content,
            decision=decision,
            window=self._context.window_for(conversation),
            idempotency_key=request.idempotency_key,
        )
        tool_context = ToolContext(
            repository=self._repository,
            settings=self._settings.tools,
            conversation_id=conversation_id,
            user_id=request.user_id,
            message_id=agent_message_id,
        )
        parts: list[str] = []
        events = self._dispatcher.dispatch(
            specialist_request,
            context=tool_context,
            trail=self._trail,
            token=token,
        )
        async with aclosing(events) as stream:
            async for event in stream:
                if isinstance(event, ToolCallEvent):
                    self.transition(TurnState.EXECUTING_TOOLS)
                elif isinstance(event, PartialEvent):
                    if self._state is not TurnState.COMPOSING:
                        self.transition(TurnState.COMPOSING)
                    parts.append(event.text)
                emitter.emit(event)
        if self._state is not TurnState.COMPOSING:
            self.transition(TurnState.COMPOSING)
        token.raise_if_cancelled()

        self.transition(TurnState.PERSISTING)
        content = "".join(parts).strip()
        agent_message = Message(
            id=agent_message_id,
            conversation_id=conversation_id,
            role=MessageRole.AGENT,
            content=content,
            agent=decision.agent,
            metadata={
                "routing": decision.model_dump(mode="json"),
                "tool_invocations": self._trail.invocation_ids,
                "token_estimate": self._context.estimate(content),
                "reasoning": decision.reasoning,
                "turn_id": request.turn_id,
            },
        )
        updated = await self._repository.commit_turn(
            conversation_id,
            messages=[self._user_message, agent_message],
            invocations=self._trail.records,
        )

        self.transition(TurnState.COMPLETED)
        emitter.emit(FinalEvent(message_id=agent_message_id))
        duration = time.perf_counter() - started
        observe_turn("completed", duration)
        logger.info(
            "turn_completed",
            agent=decision.agent.value,
            routing_mode=decision.mode,
            tool_calls=len(self._trail),
            message_id=agent_message_id,
            duration_ms=round(duration * 1000, 3),
        )
        return updated

    async def _fail(
        self,
        exc: Exception,
        emitter: EventEmitter,
        *,
        started: float,
        conversation_id: str | None = None,
    ) -> None:
        if can_transition(self._state, TurnState.FAILED):
            self.transition(TurnState.FAILED)
        cancelled = isinstance(exc, TurnCancelledError)
        correlation_id = exc.correlation_id if isinstance(exc, InternalError) else new_correlation_id()

        if cancelled:
            logger.info("turn_cancelled", correlation_id=correlation_id, reason=str(exc))
        elif isinstance(exc, SupportDeskError) and not isinstance(exc, InternalError):
            logger.warning(
                "turn_failed",
                correlation_id=correlation_id,
                error_kind=exc.kind,
                error=exc.message,
            )
        else:
            logger.error("turn_failed", correlation_id=correlation_id, error=str(exc), exc_info=exc)

        if conversation_id is not None:
            await self._commit_failure(conversation_id, correlation_id)

        if not emitter.terminated and not emitter.closed:
            message = (
                CANCELLED_MESSAGE
                if cancelled
                else f"Something went wrong while handling your request (reference {correlation_id})."
            )
            emitter.emit(ErrorEvent(message=message))
        observe_turn("cancelled" if cancelled else "failed", time.perf_counter() - started)

    async def _abort(self, emitter: EventEmitter, conversation_id: str, *, started: float) -> None:
        if can_transition(self._state, TurnState.FAILED):
            self.transition(TurnState.FAILED)
        correlation_id = new_correlation_id()
        logger.warning("turn_aborted", correlation_id=correlation_id)
        await self._commit_failure(conversation_id, correlation_id)
        if not emitter.terminated and not emitter.closed:
            emitter.emit(ErrorEvent(message=CANCELLED_MESSAGE))
        observe_turn("cancelled", time.perf_counter() - started)

    async def _commit_failure(self, conversation_id: str, correlation_id: str) -> None:
        if self._user_message is None:
            return
        records = self._trail.records if self._trail is not None else []
        user_message = self._user_message.model_copy(
            update={"metadata": {**self._user_message.metadata, "failed_turn": correlation_id}}
        )
        try:
            await self._repository.commit_turn(conversation_id, messages=[user_message], invocations=records)
        except Exception:
            logger.exception("turn_failure_commit_failed", correlation_id=correlation_id)


__all__ = [
    "CANCELLED_MESSAGE",
    "IllegalTransitionError",
    "OrchestrationSession",
    "TurnRequest",
    "TurnState",
    "can_transition",
]
