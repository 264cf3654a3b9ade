"""Multi-strategy knowledge retriever for RAG.

Runs vector search and keyword/structured search concurrently, fuses the
results and applies the confidence gate.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Protocol, TypeVar

import numpy as np

from heartbridge.core.config import RetrievalPolicy
from heartbridge.core.errors import RetrievalFailed
from heartbridge.knowledge.fusion import apply_confidence_gate, fuse_candidates
from heartbridge.knowledge.models import (
    QueryUnderstanding,
    RetrievalCandidate,
    RetrievalOutcome,
    SearchFilters,
    StructuredContext,
)
from heartbridge.knowledge.store import KnowledgeStore
from heartbridge.knowledge.understanding import fallback_understanding

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueryEmbedder(Protocol):
    async def embed(self, text: str) -> "NDArray[np.float32]":
        ...


class Understander(Protocol):
    async def understand(self, query: str) -> QueryUnderstanding:
        ...


class RetrievalEngine:
    """Retrieval fusion engine.

    Stateless between requests; one instance is shared by all requests.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: QueryEmbedder,
        understander: Understander,
        policy: RetrievalPolicy | None = None,
        timeout_seconds: float = 20.0,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.understander = understander
        self.policy = policy or RetrievalPolicy()
        self.timeout_seconds = timeout_seconds

    async def retrieve(
        self,
        query: str,
        category: str | None = None,
        importance: str | None = None,
    ) -> RetrievalOutcome:
        """Retrieve gated candidates and structured context for ``query``.

        Args:
            query: Trimmed, non-empty question text.
            category: Optional category filter; ``"all"`` means no filter.
            importance: Optional importance filter; ``"all"`` means no filter.

        Returns:
            RetrievalOutcome with 0..max_forwarded_candidates candidates.

        Raises:
            EmbeddingUnavailable: If the query cannot be embedded.
            RetrievalFailed: If vector search fails.
        """
        start = time.perf_counter()
        filters = SearchFilters(category=category, importance=importance)

        vector_task = asyncio.create_task(self._vector_branch(query, filters))
        lexical_task = asyncio.create_task(self._lexical_branch(query))
        try:
            vector_hits = await vector_task
            understanding, keyword_hits, structured = await lexical_task
        finally:
            pending = [t for t in (vector_task, lexical_task) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        ranked = fuse_candidates(vector_hits, keyword_hits, self.policy)
        gated = apply_confidence_gate(
            ranked,
            self.policy.confidence_gate,
            self.policy.max_forwarded_candidates,
        )

        logger.info(
            f"Retrieval: vector={len(vector_hits)} keyword={len(keyword_hits)} "
            f"structured={len(structured)} fused={len(ranked)} forwarded={len(gated)} "
            f"in {(time.perf_counter() - start) * 1000:.0f}ms"
        )

        return RetrievalOutcome(
            candidates=gated,
            structured=structured,
            considered=ranked,
            understanding=understanding,
        )

    async def _vector_branch(
        self,
        query: str,
        filters: SearchFilters,
    ) -> list[RetrievalCandidate]:
        # EmbeddingUnavailable propagates unchanged
        query_vector = await self.embedder.embed(query)

        try:
            return await self._bounded(
                self.store.vector_search(
                    query_vector,
                    threshold=self.policy.vector_match_threshold,
                    top_k=self.policy.vector_match_count,
                    filters=filters,
                )
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Vector search timed out after {self.timeout_seconds}s")
            raise RetrievalFailed("Knowledge search timed out") from e
        except Exception as e:
            logger.error(f"Vector search failed: {e}")
            raise RetrievalFailed(f"Vector search failed: {e}") from e

    async def _lexical_branch(
        self,
        query: str,
    ) -> tuple[QueryUnderstanding, list[RetrievalCandidate], list[StructuredContext]]:
        try:
            understanding = await self._bounded(self.understander.understand(query))
        except asyncio.TimeoutError:
            logger.warning("Query understanding timed out, using fallback")
            understanding = fallback_understanding(query)
        except Exception as e:
            logger.warning(f"Query understanding failed, using fallback: {e}")
            understanding = fallback_understanding(query)

        keyword_hits, structured = await asyncio.gather(
            self._keyword_search(understanding.search_terms()),
            self._structured_lookup(understanding.categories),
        )
        return understanding, keyword_hits, structured

    async def _keyword_search(self, terms: list[str]) -> list[RetrievalCandidate]:
        if not terms:
            return []
        try:
            return await self._bounded(
                self.store.keyword_search(terms, top_k=self.policy.keyword_match_count)
            )
        except asyncio.TimeoutError:
            logger.warning("Keyword search timed out; continuing without keyword results")
        except Exception as e:
            logger.warning(f"Keyword search failed; continuing without keyword results: {e}")
        return []

    async def _structured_lookup(self, categories: list[str]) -> list[StructuredContext]:
        if not categories:
            return []
        try:
            return await self._bounded(
                self.store.structured_lookup(
                    categories,
                    limit=self.policy.structured_lookup_limit,
                )
            )
        except asyncio.TimeoutError:
            logger.warning("Structured lookup timed out; continuing without structured data")
        except Exception as e:
            logger.warning(f"Structured lookup failed; continuing without structured data: {e}")
        return []

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
