"""Database models for HeartBridge."""

from heartbridge.models.chat import ChatTurn, RAGQueryLog
from heartbridge.models.knowledge import (
    EmbeddingStatus,
    Importance,
    KnowledgeTerm,
    KnowledgeUnit,
    StructuredRecord,
    TermKind,
)

__all__ = [
    # Knowledge
    "KnowledgeUnit",
    "KnowledgeTerm",
    "StructuredRecord",
    "Importance",
    "EmbeddingStatus",
    "TermKind",
    # Chat
    "ChatTurn",
    "RAGQueryLog",
]
