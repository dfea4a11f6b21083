from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from supportdesk.core.config import (
    ContextSettings,
    LLMSettings,
    RouterSettings,
    SessionSettings,
    Settings,
    ToolRuntimeSettings,
)
from supportdesk.schemas.models import Message, MessageRole
from supportdesk.services.fixtures import DEMO_USER_ID, seed_demo_data
from supportdesk.services.llm import LanguageModelUnavailableError
from supportdesk.services.repository import InMemoryRepository
from supportdesk.tools.base import SupportTool, ToolContext


def classification(
    agent: str,
    confidence: float,
    reasoning: str = "scripted",
    **entities: Any,
) -> str:
    return json.dumps(
        {
            "agent": agent,
            "confidence": confidence,
            "reasoning": reasoning,
            "entities": entities,
        }
    )


class ScriptedLanguageModel:
    """LanguageModel stand-in that replays scripted replies.

    An empty script behaves like an unreachable model. Exceptions in a
    script are raised at the matching call (or chunk).
    """

    def __init__(
        self,
        *,
        classifications: Iterable[Any] = (),
        replies: Iterable[Any] = (),
        summaries: Iterable[Any] = (),
        classify_delay: float = 0.0,
        chunk_delay: float = 0.0,
        summarize_delay: float = 0.0,
    ) -> None:
        self.classifications: deque[Any] = deque(classifications)
        self.replies: deque[Any] = deque(replies)
        self.summaries: deque[Any] = deque(summaries)
        self.classify_delay = classify_delay
        self.chunk_delay = chunk_delay
        self.summarize_delay = summarize_delay
        self.classify_prompts: list[str] = []
        self.generate_prompts: list[str] = []
        self.summarize_calls: list[tuple[list[Message], str | None]] = []

    async def classify(self, prompt: str, *, system_prompt: str | None = None) -> str | Mapping[str, Any]:
        self.classify_prompts.append(prompt)
        if self.classify_delay:
            await asyncio.sleep(self.classify_delay)
        if not self.classifications:
            raise LanguageModelUnavailableError("no scripted classification")
        reply = self.classifications.popleft()
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def generate(
        self,
        prompt: str,
        context: Sequence[Message],
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[str]:
        self.generate_prompts.append(prompt)
        if not self.replies:
            raise LanguageModelUnavailableError("no scripted reply")
        script = self.replies.popleft()
        if isinstance(script, BaseException):
            raise script
        for chunk in script:
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def summarize(self, messages: Sequence[Message], *, previous_summary: str | None = None) -> str:
        self.summarize_calls.append((list(messages), previous_summary))
        if self.summarize_delay:
            await asyncio.sleep(self.summarize_delay)
        if not self.summaries:
            raise LanguageModelUnavailableError("no scripted summary")
        summary = self.summaries.popleft()
        if isinstance(summary, BaseException):
            raise summary
        return summary


class EchoTool(SupportTool):
    name = "echo"
    description = "Returns its input."
    input_schema = {
        "type": "object",
        "properties": {"text": {"type": "string", "maxLength": 20}},
        "required": ["text"],
        "additionalProperties": False,
    }

    def __init__(self) -> None:
        super().__init__()
        self.executions = 0

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        self.executions += 1
        return {"text": params["text"]}


class CountingMutationTool(SupportTool):
    name = "recordCharge"
    description = "Mutating tool that counts how often it actually runs."
    mutating = True
    input_schema = {
        "type": "object",
        "properties": {"amount": {"type": "number", "exclusiveMinimum": 0}},
        "required": ["amount"],
        "additionalProperties": False,
    }

    def __init__(self) -> None:
        super().__init__()
        self.executions = 0

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        self.executions += 1
        await asyncio.sleep(0)
        return {"charge": self.executions, "amount": params["amount"]}


class SlowTool(SupportTool):
    name = "slowLookup"
    description = "Sleeps longer than any sensible timeout."
    input_schema = {"type": "object", "properties": {}, "additionalProperties": False}

    def __init__(self, delay: float = 5.0) -> None:
        super().__init__()
        self.delay = delay
        self.started = asyncio.Event()

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        self.started.set()
        await asyncio.sleep(self.delay)
        return {"ok": True}


class CrashingTool(SupportTool):
    name = "crashingLookup"
    description = "Fails with an unexpected exception."
    input_schema = {"type": "object", "properties": {}, "additionalProperties": False}

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        raise RuntimeError("database exploded: secret connection string")


def build_settings(
    *,
    router: Mapping[str, Any] | None = None,
    tools: Mapping[str, Any] | None = None,
    context: Mapping[str, Any] | None = None,
    session: Mapping[str, Any] | None = None,
    llm: Mapping[str, Any] | None = None,
) -> Settings:
    return Settings(
        environment="test",
        seed_demo_data=True,
        router=RouterSettings(**dict(router or {})),
        tools=ToolRuntimeSettings(**dict(tools or {})),
        context=ContextSettings(**dict(context or {})),
        session=SessionSettings(**dict({"cancel_grace_seconds": 1.0}, **dict(session or {}))),
        llm=LLMSettings(**dict({"chunk_timeout_seconds": 1.0, "summarize_timeout_seconds": 1.0}, **dict(llm or {}))),
    )


def build_repository(settings: Settings | None = None) -> InMemoryRepository:
    repository = InMemoryRepository(context=(settings or build_settings()).context)
    return seed_demo_data(repository)


def build_tool_context(
    repository: InMemoryRepository,
    *,
    conversation_id: str = "conv-test",
    user_id: str = DEMO_USER_ID,
    message_id: str = "msg-test",
    settings: ToolRuntimeSettings | None = None,
) -> ToolContext:
    return ToolContext(
        repository=repository,
        settings=settings or ToolRuntimeSettings(),
        conversation_id=conversation_id,
        user_id=user_id,
        message_id=message_id,
    )


async def seed_conversation(
    repository: InMemoryRepository,
    *,
    turns: int,
    user_id: str = DEMO_USER_ID,
    conversation_id: str | None = None,
    content: str = "message",
) -> str:
    conversation = await repository.get_or_create_conversation(conversation_id, user_id=user_id)
    messages: list[Message] = []
    for index in range(turns):
        messages.append(
            Message(conversation_id=conversation.id, role=MessageRole.USER, content=f"{content} {index}")
        )
        messages.append(
            Message(conversation_id=conversation.id, role=MessageRole.AGENT, content=f"reply {index}")
        )
    await repository.commit_turn(conversation.id, messages=messages, invocations=[])
    return conversation.id


__all__ = [
    "CountingMutationTool",
    "CrashingTool",
    "DEMO_USER_ID",
    "EchoTool",
    "ScriptedLanguageModel",
    "SlowTool",
    "build_repository",
    "build_settings",
    "build_tool_context",
    "classification",
    "seed_conversation",
]
