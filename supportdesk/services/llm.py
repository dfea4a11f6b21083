from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, ClassVar, Mapping, Protocol, Sequence, runtime_checkable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.models import Message, MessageRole

logger = get_logger(name=__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You compress customer-support conversations. Write a short factual summary of the exchange below: "
    "who the customer is, which orders, invoices or refunds were discussed, what was resolved and what is "
    "still open. Do not invent details. Plain prose, at most 120 words."
)


class LanguageModelUnavailableError(RuntimeError):
    """Raised when the model backend cannot be reached or fails outright."""


@runtime_checkable
class LanguageModel(Protocol):
    """Opaque language-model capability. Callers bound every call with a timeout."""

    async def classify(self, prompt: str, *, system_prompt: str | None = None) -> str | Mapping[str, Any]:
        ...

    def generate(
        self,
        prompt: str,
        context: Sequence[Message],
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[str]:
        ...

    async def summarize(self, messages: Sequence[Message], *, previous_summary: str | None = None) -> str:
        ...


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def to_chat_messages(
    context: Sequence[Message],
    *,
    prompt: str | None = None,
    system_prompt: str | None = None,
) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    for message in context:
        if message.role is MessageRole.USER:
            messages.append(HumanMessage(content=message.content))
        elif message.role is MessageRole.AGENT:
            messages.append(AIMessage(content=message.content))
        else:
            messages.append(SystemMessage(content=message.content))
    if prompt:
        messages.append(HumanMessage(content=prompt))
    return messages


def render_transcript(messages: Sequence[Message]) -> str:
    return "\n".join(f"{message.role.value.upper()}: {message.content}" for message in messages)


@dataclass
class OllamaLanguageModel:
    """LangChain-backed client for a local Ollama model."""

    settings: Settings
    _client: Any
    model: str
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "OllamaLanguageModel":
        model_name = model or settings.llm.model
        if client is None:
            cache_key = f"{settings.llm.host}:{settings.llm.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                base_url = _build_base_url(settings.llm.host, settings.llm.port)
                cached = ChatOllama(model=model_name, base_url=base_url, temperature=settings.llm.temperature)
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name)

    async def classify(self, prompt: str, *, system_prompt: str | None = None) -> str:
        messages = to_chat_messages((), prompt=prompt, system_prompt=system_prompt)
        client = self._client
        if hasattr(client, "bind"):
            client = client.bind(format="json", temperature=self.settings.llm.classify_temperature)
        try:
            result = await client.ainvoke(messages)
        except Exception as exc:
            logger.warning("llm_classify_failed", model=self.model, error=str(exc))
            raise LanguageModelUnavailableError(str(exc)) from exc
        return _extract_content(result)

    async def generate(
        self,
        prompt: str,
        context: Sequence[Message],
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[str]:
        messages = to_chat_messages(context, prompt=prompt, system_prompt=system_prompt)
        try:
            async for chunk in self._client.astream(messages):
                text = _extract_content(chunk)
                if text:
                    yield text
        except Exception as exc:
            logger.warning("llm_generation_failed", model=self.model, error=str(exc))
            raise LanguageModelUnavailableError(str(exc)) from exc

    async def summarize(self, messages: Sequence[Message], *, previous_summary: str | None = None) -> str:
        sections: list[str] = []
        if previous_summary:
            sections.append(f"Summary so far:\n{previous_summary}")
        sections.append(f"Conversation:\n{render_transcript(messages)}")
        prompt = "\n\n".join(sections)
        try:
            result = await self._client.ainvoke(
                to_chat_messages((), prompt=prompt, system_prompt=SUMMARY_SYSTEM_PROMPT)
            )
        except Exception as exc:
            logger.warning("llm_summarize_failed", model=self.model, error=str(exc))
            raise LanguageModelUnavailableError(str(exc)) from exc
        return _extract_content(result).strip()


def _extract_content(result: Any) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        return "".join(
            str(item.get("text", "")) if isinstance(item, dict) else str(item)
            for item in content
        )
    return str(content)


__all__ = [
    "LanguageModel",
    "LanguageModelUnavailableError",
    "OllamaLanguageModel",
    "SUMMARY_SYSTEM_PROMPT",
    "render_transcript",
    "to_chat_messages",
]
