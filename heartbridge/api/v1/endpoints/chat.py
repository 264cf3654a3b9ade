"""Chat endpoints: ask a question and read persisted history."""

import logging
from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from heartbridge.api.deps import get_caller_identity, get_chat_service
from heartbridge.knowledge.models import CamelModel
from heartbridge.services.chat import CallerIdentity, ChatErrorReply, ChatReply, ChatService

router = APIRouter()
logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """Request to ask the assistant a question."""

    # Loosely typed so bad input gets the chat-shaped 400 instead of a bare 422
    message: Any = None
    category: Any = None
    importance: Any = None


async def read_chat_request(request: Request) -> ChatRequest:
    """Parse the chat body leniently; an unreadable body is an empty request."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Chat request body is not valid JSON")
        payload = None
    if not isinstance(payload, dict):
        return ChatRequest()
    return ChatRequest.model_validate(payload)


class ChatTurnResponse(CamelModel):
    """One persisted exchange."""

    id: int
    session_id: str
    query: str
    response: str
    sources: list[dict[str, Any]]
    retrieved_count: int
    processing_time_ms: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatHistoryResponse(CamelModel):
    items: list[ChatTurnResponse]
    total: int


# -------------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------------


@router.post(
    "",
    response_model=ChatReply,
    responses={400: {"model": ChatErrorReply}, 500: {"model": ChatErrorReply}},
)
async def chat(
    request: Annotated[ChatRequest, Depends(read_chat_request)],
    service: Annotated[ChatService, Depends(get_chat_service)],
    identity: Annotated[CallerIdentity, Depends(get_caller_identity)],
) -> JSONResponse:
    """Answer a question from the knowledge base.

    Failures still return a conversational ``response`` alongside ``error``.
    """
    status_code, body = await service.handle(
        request.message,
        category=request.category,
        importance=request.importance,
        identity=identity,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


@router.get("/history", response_model=ChatHistoryResponse)
async def chat_history(
    service: Annotated[ChatService, Depends(get_chat_service)],
    identity: Annotated[CallerIdentity, Depends(get_caller_identity)],
    session_id: Optional[str] = Query(None, description="Restrict to one session"),
    limit: int = Query(50, ge=1, le=200),
) -> ChatHistoryResponse:
    """List the caller's persisted exchanges, newest first."""
    if not identity.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )

    turns = await service.history(identity.user_id, session_id=session_id, limit=limit)
    items = [ChatTurnResponse.model_validate(t) for t in turns]
    return ChatHistoryResponse(items=items, total=len(items))
