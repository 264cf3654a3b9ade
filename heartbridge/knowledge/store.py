"""Knowledge store adapter: vector, keyword and structured-record search.

The engine only reads from the store. Embeddings are written by the indexer
in ``heartbridge.knowledge.service`` and may change between calls; units
without an embedding are simply invisible to vector search.
"""

import logging
from typing import TYPE_CHECKING, Any, Protocol, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heartbridge.knowledge.models import (
    RetrievalCandidate,
    RetrievalSource,
    SearchFilters,
    StructuredContext,
)
from heartbridge.models.knowledge import KnowledgeTerm, KnowledgeUnit, StructuredRecord

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class KnowledgeStore(Protocol):
    """Read interface the retrieval engine depends on."""

    async def vector_search(
        self,
        query_vector: "NDArray[np.float32]",
        threshold: float,
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> list[RetrievalCandidate]:
        """Units ranked by cosine similarity, ``>= threshold``, at most ``top_k``."""
        ...

    async def keyword_search(
        self,
        terms: Sequence[str],
        top_k: int,
    ) -> list[RetrievalCandidate]:
        """Units whose keyword/label set contains any of ``terms``."""
        ...

    async def structured_lookup(
        self,
        categories: Sequence[str],
        limit: int,
    ) -> list[StructuredContext]:
        """Auxiliary records tagged with any of ``categories``."""
        ...


def _to_candidate(
    unit: KnowledgeUnit,
    score: float,
    source: RetrievalSource,
) -> RetrievalCandidate:
    return RetrievalCandidate(
        unit_id=unit.id,
        content=unit.content,
        category=unit.category,
        importance=unit.importance,
        score=score,
        provenance=[source],
        entities=unit.entities,
    )


def cosine_top_k(
    query_vector: "NDArray[np.float32]",
    matrix: "NDArray[np.float32]",
    top_k: int,
) -> tuple["NDArray[np.float32]", "NDArray[np.int64]"]:
    """Rank rows of ``matrix`` by cosine similarity to ``query_vector``.

    Uses a FAISS inner-product index over L2-normalized vectors.

    Returns:
        ``(scores, indices)`` for the best ``min(top_k, len(matrix))`` rows.
    """
    import faiss

    # normalize_L2 works in place
    embeddings = np.array(matrix, dtype=np.float32, copy=True, order="C")
    query = np.array(query_vector, dtype=np.float32, copy=True).reshape(1, -1)

    faiss.normalize_L2(embeddings)
    faiss.normalize_L2(query)

    index = faiss.IndexFlatIP(embeddings.shape[1])
    index.add(embeddings)
    k = min(top_k, embeddings.shape[0])
    scores, indices = index.search(query, k)
    return scores[0], indices[0]


def normalize_term(term: str) -> str:
    return term.strip().lower()


class SQLKnowledgeStore:
    """Knowledge store backed by the SQL database.

    Each call opens its own session so concurrent searches never share one.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def vector_search(
        self,
        query_vector: "NDArray[np.float32]",
        threshold: float,
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> list[RetrievalCandidate]:
        filters = filters or SearchFilters()
        query = select(KnowledgeUnit).where(KnowledgeUnit.embedding.is_not(None))
        if filters.category:
            query = query.where(KnowledgeUnit.category == filters.category)
        if filters.importance:
            query = query.where(KnowledgeUnit.importance == filters.importance)

        async with self.session_factory() as session:
            result = await session.execute(query)
            units = list(result.scalars().all())

        dim = int(query_vector.shape[-1])
        usable: list[KnowledgeUnit] = []
        rows: list[list[float]] = []
        skipped = 0
        for unit in units:
            embedding = unit.embedding
            if not isinstance(embedding, list) or len(embedding) != dim:
                skipped += 1
                continue
            usable.append(unit)
            rows.append(embedding)

        if skipped:
            logger.warning(
                f"Vector search skipped {skipped} units with missing or "
                f"mismatched embeddings (expected {dim} dims)"
            )
        if not usable or top_k <= 0:
            return []

        scores, indices = cosine_top_k(
            query_vector,
            np.asarray(rows, dtype=np.float32),
            top_k,
        )

        results: list[RetrievalCandidate] = []
        for score, idx in zip(scores, indices):
            if idx < 0:  # FAISS returns -1 for missing results
                continue
            similarity = float(score)
            if similarity < threshold:
                continue
            results.append(
                _to_candidate(usable[idx], max(similarity, 0.0), RetrievalSource.VECTOR)
            )

        logger.debug(f"Vector search: {len(results)}/{len(usable)} units above {threshold}")
        return results

    async def keyword_search(
        self,
        terms: Sequence[str],
        top_k: int,
    ) -> list[RetrievalCandidate]:
        normalized = sorted({normalize_term(t) for t in terms if t and t.strip()})
        if not normalized or top_k <= 0:
            return []

        matching_ids = (
            select(KnowledgeTerm.unit_id)
            .where(KnowledgeTerm.term.in_(normalized))
            .distinct()
        )
        query = (
            select(KnowledgeUnit)
            .where(KnowledgeUnit.id.in_(matching_ids))
            .order_by(KnowledgeUnit.created_at, KnowledgeUnit.id)
            .limit(top_k)
        )

        async with self.session_factory() as session:
            result = await session.execute(query)
            units = list(result.scalars().all())

        return [_to_candidate(unit, 0.0, RetrievalSource.KEYWORD) for unit in units]

    async def structured_lookup(
        self,
        categories: Sequence[str],
        limit: int,
    ) -> list[StructuredContext]:
        wanted = [c.strip() for c in categories if c and c.strip()]
        if not wanted or limit <= 0:
            return []

        query = (
            select(StructuredRecord)
            .where(StructuredRecord.category.in_(wanted))
            .order_by(StructuredRecord.id)
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            records = list(result.scalars().all())

        return [_to_structured(record) for record in records]


def _to_structured(record: StructuredRecord) -> StructuredContext:
    payload: Any = record.payload
    if not isinstance(payload, dict):
        payload = {"value": payload}
    return StructuredContext(id=record.id, category=record.category, payload=payload)
