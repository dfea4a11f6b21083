from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from ..core.logging import get_logger
from ..dependencies import get_orchestrator, get_repository
from ..orchestration.orchestrator import Orchestrator
from ..orchestration.session import TurnRequest
from ..schemas.api import ChatRequest, ConversationResponse, ToolInvocationListResponse
from ..schemas.events import TurnEvent
from ..services.repository import Repository

logger = get_logger(name=__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _event_frame(event: TurnEvent) -> str:
    return _format_sse(event.type, event.model_dump(mode="json"))


@router.post("/chat", tags=["chat"])
async def chat(
    payload: ChatRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    turn = TurnRequest(
        user_id=payload.user_id,
        content=payload.content,
        conversation_id=payload.conversation_id,
        idempotency_key=payload.idempotency_key,
    )
    stream = orchestrator.start_turn(turn)
    logger.info("chat_turn_accepted", turn_id=turn.turn_id, conversation_id=turn.conversation_id)

    async def event_stream():
        completed = False
        try:
            async for event in stream:
                yield _event_frame(event)
            completed = True
        except asyncio.CancelledError:
            logger.info("chat_stream_disconnected", turn_id=turn.turn_id)
            raise
        finally:
            if not completed:
                stream.token.cancel()
                await asyncio.shield(stream.aclose())

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse, tags=["conversations"])
async def get_conversation(
    conversation_id: str,
    include_archived: bool = Query(False),
    repository: Repository = Depends(get_repository),
) -> ConversationResponse:
    conversation = await repository.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return ConversationResponse.from_conversation(conversation, include_archived=include_archived)


@router.get(
    "/conversations/{conversation_id}/tool-invocations",
    response_model=ToolInvocationListResponse,
    tags=["conversations"],
)
async def list_tool_invocations(
    conversation_id: str,
    repository: Repository = Depends(get_repository),
) -> ToolInvocationListResponse:
    conversation = await repository.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    invocations = await repository.list_tool_invocations(conversation_id)
    return ToolInvocationListResponse(conversation_id=conversation_id, invocations=invocations)
