from __future__ import annotations

import pytest

from supportdesk.core.config import ContextSettings
from supportdesk.orchestration.context import SUMMARY_PREFIX, ContextManager
from supportdesk.schemas.models import MessageRole, estimate_tokens

from tests.helpers.stubs import ScriptedLanguageModel, build_repository, seed_conversation


def _manager(repository, llm, **overrides) -> ContextManager:
    settings = ContextSettings(**{"window_size": 4, "max_messages": 6, **overrides})
    return ContextManager(repository=repository, llm=llm, settings=settings, summarize_timeout=0.2)


def test_estimate_tokens_is_deterministic() -> None:
    assert estimate_tokens("abcdefgh", chars_per_token=4, overhead=4) == 6
    assert estimate_tokens("abcdefghi", chars_per_token=4, overhead=4) == 7
    assert estimate_tokens("", chars_per_token=4, overhead=4) == 4


@pytest.mark.asyncio
async def test_small_conversation_is_left_alone() -> None:
    repository = build_repository()
    llm = ScriptedLanguageModel(summaries=["unused"])
    conversation_id = await seed_conversation(repository, turns=2)
    conversation = await repository.get_conversation(conversation_id)

    result = await _manager(repository, llm).maybe_compact(conversation)

    assert result.summary is None
    assert llm.summarize_calls == []


@pytest.mark.asyncio
async def test_compaction_archives_messages_outside_the_window() -> None:
    repository = build_repository()
    llm = ScriptedLanguageModel(summaries=["Customer asked about several things."])
    conversation_id = await seed_conversation(repository, turns=5)
    conversation = await repository.get_conversation(conversation_id)
    before = conversation.token_estimate

    result = await _manager(repository, llm).maybe_compact(conversation)

    assert result.summary == "Customer asked about several things."
    assert result.compaction_count == 1
    assert len(result.active_messages) == 4
    assert len(result.messages) == 10
    assert sum(1 for message in result.messages if message.archived) == 6
    assert result.token_estimate < before
    summarized, previous = llm.summarize_calls[0]
    assert [message.content for message in summarized][:2] == ["message 0", "reply 0"]
    assert previous is None


@pytest.mark.asyncio
async def test_compacting_twice_without_new_messages_changes_nothing() -> None:
    repository = build_repository()
    llm = ScriptedLanguageModel(summaries=["first summary", "second summary"])
    manager = _manager(repository, llm)
    conversation_id = await seed_conversation(repository, turns=5)

    first = await manager.maybe_compact(await repository.get_conversation(conversation_id))
    second = await manager.maybe_compact(first)

    assert second.summary == "first summary"
    assert second.compaction_count == 1
    assert [message.archived for message in second.messages] == [message.archived for message in first.messages]
    assert len(llm.summarize_calls) == 1


@pytest.mark.asyncio
async def test_token_budget_triggers_compaction() -> None:
    repository = build_repository()
    llm = ScriptedLanguageModel(summaries=["long discussion"])
    conversation_id = await seed_conversation(repository, turns=3, content="x" * 400)
    conversation = await repository.get_conversation(conversation_id)
    manager = _manager(repository, llm, max_messages=100, max_tokens=200)

    assert manager.needs_compaction(conversation)
    result = await manager.maybe_compact(conversation)

    assert result.summary == "long discussion"
    assert len(result.active_messages) == 4


@pytest.mark.asyncio
async def test_failed_summary_defers_compaction() -> None:
    repository = build_repository()
    conversation_id = await seed_conversation(repository, turns=5)
    conversation = await repository.get_conversation(conversation_id)

    unavailable = await _manager(repository, ScriptedLanguageModel()).maybe_compact(conversation)
    slow = await _manager(repository, ScriptedLanguageModel(summaries=["late"], summarize_delay=1.0)).maybe_compact(
        conversation
    )
    empty = await _manager(repository, ScriptedLanguageModel(summaries=["   "])).maybe_compact(conversation)

    for result in (unavailable, slow, empty):
        assert result.summary is None
        assert not any(message.archived for message in result.messages)
    stored = await repository.get_conversation(conversation_id)
    assert stored.compaction_count == 0


@pytest.mark.asyncio
async def test_window_starts_with_summary_after_compaction() -> None:
    repository = build_repository()
    llm = ScriptedLanguageModel(summaries=["earlier: order question"])
    manager = _manager(repository, llm)
    conversation_id = await seed_conversation(repository, turns=5)
    compacted = await manager.maybe_compact(await repository.get_conversation(conversation_id))

    window = manager.window_for(compacted)

    assert window[0].role is MessageRole.SYSTEM
    assert window[0].content == f"{SUMMARY_PREFIX}earlier: order question"
    assert [message.content for message in window[1:]] == ["message 3", "reply 3", "message 4", "reply 4"]
    assert manager.recent_context(compacted, 2)[-1].content == "reply 4"
    assert manager.recent_context(compacted, 0) == []
