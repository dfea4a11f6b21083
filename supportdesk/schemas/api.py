from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .models import Conversation, Message, ToolInvocation


class ChatRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    content: str = Field(..., min_length=1, max_length=8000)
    conversation_id: str | None = Field(default=None, max_length=128)
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Caller-supplied token applied to state-changing tool calls made during the turn.",
    )


class ConversationResponse(BaseModel):
    id: str
    user_id: str
    summary: str | None = None
    token_estimate: int
    compaction_count: int
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation, *, include_archived: bool = False) -> "ConversationResponse":
        messages = conversation.messages if include_archived else conversation.active_messages
        return cls(
            id=conversation.id,
            user_id=conversation.user_id,
            summary=conversation.summary,
            token_estimate=conversation.token_estimate,
            compaction_count=conversation.compaction_count,
            messages=list(messages),
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ToolInvocationListResponse(BaseModel):
    conversation_id: str
    invocations: list[ToolInvocation] = Field(default_factory=list)
