"""Knowledge base models."""

import uuid
from enum import Enum
from typing import Any, Optional

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from heartbridge.core.database import Base
from heartbridge.models.base import BaseModel


class Importance(str, Enum):
    """Ordinal importance; used as a search filter only."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EmbeddingStatus(str, Enum):
    """Embedding lifecycle of a knowledge unit."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TermKind(str, Enum):
    KEYWORD = "keyword"
    LABEL = "label"


def _new_id() -> str:
    return str(uuid.uuid4())


class KnowledgeUnit(BaseModel):
    """A retrievable fact or Q&A pair."""

    __tablename__ = "knowledge_units"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="general", index=True)
    importance: Mapped[str] = mapped_column(
        String(10),
        default=Importance.MEDIUM.value,
        index=True,
    )
    data_type: Mapped[str] = mapped_column(String(10), default="text")  # 'qa' or 'text'
    source_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    entities: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB(none_as_null=True),
        nullable=True,
    )

    # Null until the indexer stores a vector
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        JSONB(none_as_null=True),
        nullable=True,
    )
    embedding_status: Mapped[str] = mapped_column(
        String(20),
        default=EmbeddingStatus.PENDING.value,
        index=True,
    )
    embedding_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    terms: Mapped[list["KnowledgeTerm"]] = relationship(
        "KnowledgeTerm",
        back_populates="unit",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def keywords(self) -> list[str]:
        return [t.term for t in self.terms if t.kind == TermKind.KEYWORD.value]

    @property
    def labels(self) -> list[str]:
        return [t.term for t in self.terms if t.kind == TermKind.LABEL.value]

    def __repr__(self) -> str:
        return f"<KnowledgeUnit(id={self.id}, category={self.category})>"


class KnowledgeTerm(Base):
    """Keyword or label attached to a knowledge unit, stored lower-cased."""

    __tablename__ = "knowledge_terms"
    __table_args__ = (Index("ix_knowledge_terms_term", "term"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    unit_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_units.id", ondelete="CASCADE"),
        index=True,
    )
    term: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), default=TermKind.KEYWORD.value)

    unit: Mapped["KnowledgeUnit"] = relationship("KnowledgeUnit", back_populates="terms")

    def __repr__(self) -> str:
        return f"<KnowledgeTerm(unit_id={self.unit_id}, term={self.term})>"


class StructuredRecord(BaseModel):
    """Auxiliary record looked up by category and passed to generation as-is."""

    __tablename__ = "structured_data"

    id: Mapped[int] = mapped_column(primary_key=True)
    category: Mapped[str] = mapped_column(String(50), index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    def __repr__(self) -> str:
        return f"<StructuredRecord(id={self.id}, category={self.category})>"
