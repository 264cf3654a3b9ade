"""Data models for retrieval candidates and retrieval results."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RetrievalSource(str, Enum):
    """Which retrieval strategy produced a candidate."""

    VECTOR = "vector"
    KEYWORD = "keyword"


def normalize_filter(value: str | None) -> str | None:
    """Map ``"all"`` and blank filter values to ``None`` (no filter)."""
    if value is None:
        return None
    value = value.strip()
    if not value or value.lower() == "all":
        return None
    return value


class SearchFilters(BaseModel):
    """Optional category / importance filters for vector search."""

    category: str | None = None
    importance: str | None = None

    @field_validator("category", "importance", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> str | None:
        return normalize_filter(value)


class RetrievalCandidate(BaseModel):
    """A knowledge unit found by one or more retrieval strategies.

    ``score`` is cosine similarity for vector hits; after fusion it is the
    fused score, which may exceed 1.0 when both strategies agree.
    """

    unit_id: str = Field(..., description="Knowledge unit identifier")
    content: str = Field(..., description="Unit text content")
    category: str | None = None
    importance: str | None = None
    score: float = Field(0.0, ge=0.0, description="Similarity or fused score")
    provenance: list[RetrievalSource] = Field(default_factory=list)
    entities: dict[str, Any] | None = Field(
        default=None,
        description="Structured payload kept for display (e.g. original Q&A)",
    )


class StructuredContext(BaseModel):
    """Auxiliary record passed to generation without scoring."""

    id: int | str
    category: str
    payload: dict[str, Any] = Field(default_factory=dict)


class QueryUnderstanding(BaseModel):
    """Keywords and candidate categories extracted from a question."""

    keywords: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    degraded: bool = False

    @field_validator("keywords", "categories", mode="before")
    @classmethod
    def _coerce_terms(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("expected a list of strings")
        return [str(v) for v in value]

    def search_terms(self) -> list[str]:
        """Keywords de-duplicated in order, blanks dropped."""
        seen: set[str] = set()
        terms: list[str] = []
        for keyword in self.keywords:
            term = keyword.strip()
            if term and term not in seen:
                seen.add(term)
                terms.append(term)
        return terms


class RetrievalOutcome(BaseModel):
    """Result of the retrieval engine for one question."""

    candidates: list[RetrievalCandidate] = Field(
        default_factory=list,
        description="Gated candidates forwarded to generation, best first",
    )
    structured: list[StructuredContext] = Field(default_factory=list)
    considered: list[RetrievalCandidate] = Field(
        default_factory=list,
        description="All fused candidates before gating, best first",
    )
    understanding: QueryUnderstanding | None = None

    @property
    def grounded(self) -> bool:
        return bool(self.candidates)


class CamelModel(BaseModel):
    """Response model serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OperationSummary(CamelModel):
    """Outcome of a batch import or embedding run."""

    total: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)
    unit_ids: list[str] = Field(default_factory=list)
