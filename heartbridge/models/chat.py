"""Chat history and query log models."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from heartbridge.core.database import Base
from heartbridge.models.base import utcnow


class ChatTurn(Base):
    """One persisted question/answer exchange.

    Only written when the caller identity is known. Rows are never updated.
    """

    __tablename__ = "chat_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    session_id: Mapped[str] = mapped_column(String(100), index=True)

    query: Mapped[str] = mapped_column(Text, nullable=False)
    response: Mapped[str] = mapped_column(Text, nullable=False)
    sources: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list)
    retrieved_count: Mapped[int] = mapped_column(Integer, default=0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<ChatTurn(id={self.id}, session_id={self.session_id})>"


class RAGQueryLog(Base):
    """Append-only telemetry row written after every generation attempt."""

    __tablename__ = "rag_query_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    retrieved_units_count: Mapped[int] = mapped_column(Integer, default=0)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<RAGQueryLog(id={self.id}, retrieved={self.retrieved_units_count})>"
