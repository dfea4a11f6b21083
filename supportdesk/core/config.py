from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3.2:3b", description="Model used for classification, replies and summaries.")
    temperature: float = Field(0.1, ge=0.0, le=1.0)
    classify_temperature: float = Field(0.0, ge=0.0, le=1.0)
    chunk_timeout_seconds: float = Field(
        10.0,
        gt=0.0,
        description="Maximum wait for each streamed generation increment.",
    )
    summarize_timeout_seconds: float = Field(15.0, gt=0.0)


class RouterSettings(BaseModel):
    timeout_seconds: float = Field(4.0, gt=0.0, description="Bound on a single classification request.")
    confidence_threshold: float = Field(
        0.4,
        ge=0.0,
        le=1.0,
        description="Decisions below this confidence are answered with a clarifying question.",
    )
    fallback_confidence: float = Field(
        0.5,
        ge=0.0,
        le=1.0,
        description="Fixed confidence reported by the keyword classifier in degraded mode.",
    )
    default_agent: Literal["support", "order", "billing"] = Field(
        "support",
        description="Specialist used when the model keeps returning malformed classifications.",
    )
    context_messages: int = Field(6, ge=0, description="Recent messages shown to the classifier.")


class ToolRuntimeSettings(BaseModel):
    invocation_timeout_seconds: float = Field(2.0, gt=0.0)
    refund_approval_threshold: float = Field(
        500.0,
        ge=0.0,
        description="Refunds above this amount are accepted but held for approval.",
    )
    max_string_length: int = Field(4096, ge=1)


class ContextSettings(BaseModel):
    window_size: int = Field(20, ge=1, description="Number of recent messages kept in the active window.")
    max_messages: int = Field(200, ge=1, description="Active message count that triggers compaction.")
    max_tokens: int = Field(7000, ge=1, description="Estimated token total that triggers compaction.")
    chars_per_token: int = Field(4, ge=1)
    message_overhead_tokens: int = Field(4, ge=0)


class SessionSettings(BaseModel):
    max_tool_calls: int = Field(4, ge=0, description="Upper bound on tool calls within one turn.")
    cancel_grace_seconds: float = Field(
        5.0,
        ge=0.0,
        description="Time a cancelled turn gets to reach its next safe boundary before it is aborted.",
    )


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")
    seed_demo_data: bool = Field(True, description="Load demo orders and invoices into the in-memory store.")

    llm: LLMSettings = Field(default_factory=LLMSettings)  # type: ignore[arg-type]
    router: RouterSettings = Field(default_factory=RouterSettings)  # type: ignore[arg-type]
    tools: ToolRuntimeSettings = Field(default_factory=ToolRuntimeSettings)  # type: ignore[arg-type]
    context: ContextSettings = Field(default_factory=ContextSettings)  # type: ignore[arg-type]
    session: SessionSettings = Field(default_factory=SessionSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    frontend_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Origins permitted to access the API via CORS.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="SUPPORTDESK_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
