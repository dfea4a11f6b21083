from __future__ import annotations

import asyncio
from typing import Mapping

from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..schemas.events import TurnEvent
from ..schemas.models import AgentType
from ..services.fixtures import seed_demo_data
from ..services.llm import LanguageModel, OllamaLanguageModel
from ..services.repository import InMemoryRepository, Repository
from ..tools import IdempotencyStore, ToolExecutor, ToolRegistry, build_tool_registry
from .context import ContextManager
from .dispatch import SpecialistDispatcher
from .emitter import CancellationToken, ConversationLocks, EventEmitter, TurnStream
from .router import IntentRouter
from .session import OrchestrationSession, TurnRequest
from .specialists import BaseSpecialist

logger = get_logger(name=__name__)


class Orchestrator:
    """Owns the lifetime-scoped collaborators and starts one session per turn."""

    def __init__(
        self,
        *,
        repository: Repository,
        llm: LanguageModel,
        settings: Settings | None = None,
        registry: ToolRegistry | None = None,
        specialists: Mapping[AgentType, BaseSpecialist] | None = None,
        idempotency: IdempotencyStore | None = None,
        locks: ConversationLocks | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository
        self.llm = llm
        self.registry = registry or build_tool_registry()
        self.idempotency = idempotency or IdempotencyStore(repository)
        self.locks = locks or ConversationLocks()
        self.executor = ToolExecutor(self.registry, idempotency=self.idempotency, settings=self.settings.tools)
        self.router = IntentRouter(llm=llm, settings=self.settings.router)
        self.context_manager = ContextManager(
            repository=repository,
            llm=llm,
            settings=self.settings.context,
            summarize_timeout=self.settings.llm.summarize_timeout_seconds,
        )
        self.dispatcher = SpecialistDispatcher(
            executor=self.executor,
            llm=llm,
            specialists=specialists,
            settings=self.settings,
        )
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: Repository | None = None,
        llm: LanguageModel | None = None,
    ) -> "Orchestrator":
        if repository is None:
            memory = InMemoryRepository(context=settings.context)
            if settings.seed_demo_data:
                seed_demo_data(memory)
            repository = memory
        if llm is None:
            llm = OllamaLanguageModel.from_settings(settings)
        return cls(repository=repository, llm=llm, settings=settings)

    def new_session(self) -> OrchestrationSession:
        return OrchestrationSession(
            repository=self.repository,
            router=self.router,
            context_manager=self.context_manager,
            dispatcher=self.dispatcher,
            locks=self.locks,
            settings=self.settings,
        )

    def start_turn(self, request: TurnRequest) -> TurnStream:
        emitter = EventEmitter(turn_id=request.turn_id, conversation_id=request.conversation_id)
        token = CancellationToken()
        session = self.new_session()
        task = asyncio.create_task(session.run(request, emitter, token), name=f"turn:{request.turn_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return TurnStream(
            turn_id=request.turn_id,
            emitter=emitter,
            token=token,
            task=task,
            grace_seconds=self.settings.session.cancel_grace_seconds,
        )

    async def run_turn(self, request: TurnRequest) -> list[TurnEvent]:
        """Run a turn to completion and return every event it produced."""
        stream = self.start_turn(request)
        try:
            events = await stream.collect()
            await stream.wait()
            return events
        finally:
            await stream.aclose()

    @property
    def active_turns(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        logger.info("orchestrator_shutdown", pending_turns=len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["Orchestrator"]
