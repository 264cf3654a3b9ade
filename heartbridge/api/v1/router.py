"""API v1 router aggregating all endpoint routers.

Chat:
  /api/v1/chat (ask), /chat/history

Knowledge management:
  /api/v1/knowledge (list, create, patch, delete)
  /api/v1/knowledge/embeddings/pending, /knowledge/reindex
"""

from fastapi import APIRouter

from heartbridge.api.v1.endpoints import chat, knowledge

api_router = APIRouter()

# -------------------------------------------------------------------------
# Chat
# -------------------------------------------------------------------------
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])

# -------------------------------------------------------------------------
# Knowledge base management
# -------------------------------------------------------------------------
api_router.include_router(knowledge.router, prefix="/knowledge", tags=["knowledge"])
