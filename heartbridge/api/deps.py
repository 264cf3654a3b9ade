"""Shared FastAPI dependencies.

Collaborators are built once in the application lifespan and read from
``app.state``; tests override these dependencies with fakes.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from heartbridge.knowledge.service import KnowledgeService
from heartbridge.services.chat import CallerIdentity, ChatService


def get_chat_service(request: Request) -> ChatService:
    service = getattr(request.app.state, "chat_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat service is not initialized",
        )
    return service


def get_knowledge_service(request: Request) -> KnowledgeService:
    service = getattr(request.app.state, "knowledge_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Knowledge service is not initialized",
        )
    return service


def get_caller_identity(
    x_user_id: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
) -> CallerIdentity:
    """Identity forwarded by the gateway; both headers are optional."""
    return CallerIdentity(
        user_id=(x_user_id or "").strip() or None,
        session_id=(x_session_id or "").strip() or None,
    )
