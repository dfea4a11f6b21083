from __future__ import annotations

import asyncio

from ..core.config import ContextSettings
from ..core.logging import get_logger
from ..core.metrics import observe_compaction
from ..schemas.models import Conversation, Message, MessageRole, estimate_tokens
from ..services.llm import LanguageModel, LanguageModelUnavailableError
from ..services.repository import Repository

logger = get_logger(name=__name__)

SUMMARY_PREFIX = "Summary of the earlier conversation: "


class ContextManager:
    """Keeps a conversation's working context bounded.

    The window is the most recent ``window_size`` active messages, preceded by
    the running summary when one exists. Compaction folds everything older
    than the window into that summary and archives the folded messages.
    """

    def __init__(
        self,
        *,
        repository: Repository,
        llm: LanguageModel,
        settings: ContextSettings | None = None,
        summarize_timeout: float = 15.0,
    ) -> None:
        self._repository = repository
        self._llm = llm
        self._settings = settings or ContextSettings()
        self._summarize_timeout = summarize_timeout

    @property
    def settings(self) -> ContextSettings:
        return self._settings

    def estimate(self, text: str | None) -> int:
        return estimate_tokens(
            text,
            chars_per_token=self._settings.chars_per_token,
            overhead=self._settings.message_overhead_tokens,
        )

    def window_for(self, conversation: Conversation) -> list[Message]:
        window = conversation.active_messages[-self._settings.window_size :]
        if conversation.summary:
            window.insert(
                0,
                Message(
                    conversation_id=conversation.id,
                    role=MessageRole.SYSTEM,
                    content=f"{SUMMARY_PREFIX}{conversation.summary}",
                    metadata={"synthetic": True},
                ),
            )
        return window

    def recent_context(self, conversation: Conversation, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        return self.window_for(conversation)[-limit:]

    def needs_compaction(self, conversation: Conversation) -> bool:
        active = conversation.active_messages
        if len(active) > self._settings.max_messages:
            return True
        return conversation.token_estimate > self._settings.max_tokens

    async def maybe_compact(self, conversation: Conversation) -> Conversation:
        if not self.needs_compaction(conversation):
            return conversation
        active = conversation.active_messages
        superseded = active[: -self._settings.window_size] if len(active) > self._settings.window_size else []
        if not superseded:
            return conversation

        try:
            summary = await asyncio.wait_for(
                self._llm.summarize(superseded, previous_summary=conversation.summary),
                timeout=self._summarize_timeout,
            )
        except asyncio.TimeoutError:
            observe_compaction("timeout")
            logger.warning(
                "compaction_deferred",
                conversation_id=conversation.id,
                reason="timeout",
                timeout=self._summarize_timeout,
            )
            return conversation
        except LanguageModelUnavailableError as exc:
            observe_compaction("unavailable")
            logger.warning(
                "compaction_deferred",
                conversation_id=conversation.id,
                reason="unavailable",
                error=str(exc),
            )
            return conversation

        summary = (summary or "").strip()
        if not summary:
            observe_compaction("empty")
            logger.warning("compaction_deferred", conversation_id=conversation.id, reason="empty_summary")
            return conversation

        updated = await self._repository.apply_compaction(
            conversation.id,
            summary=summary,
            archived_message_ids=[message.id for message in superseded],
        )
        observe_compaction("success")
        logger.info(
            "conversation_compacted",
            conversation_id=conversation.id,
            archived=len(superseded),
            token_estimate=updated.token_estimate,
            compaction_count=updated.compaction_count,
        )
        return updated


__all__ = ["ContextManager", "SUMMARY_PREFIX"]
