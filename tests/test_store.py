"""Tests for the SQL knowledge store adapter."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from heartbridge.knowledge.models import RetrievalSource, SearchFilters
from heartbridge.knowledge.store import SQLKnowledgeStore, cosine_top_k
from heartbridge.models.knowledge import (
    EmbeddingStatus,
    KnowledgeTerm,
    KnowledgeUnit,
    StructuredRecord,
    TermKind,
)


def unit(
    unit_id: str,
    embedding: list[float] | None,
    category: str = "general",
    importance: str = "medium",
    keywords: tuple[str, ...] = (),
    labels: tuple[str, ...] = (),
) -> KnowledgeUnit:
    terms = [KnowledgeTerm(term=k, kind=TermKind.KEYWORD.value) for k in keywords]
    terms += [KnowledgeTerm(term=label, kind=TermKind.LABEL.value) for label in labels]
    return KnowledgeUnit(
        id=unit_id,
        content=f"content {unit_id}",
        category=category,
        importance=importance,
        embedding=embedding,
        embedding_status=(
            EmbeddingStatus.COMPLETED.value if embedding else EmbeddingStatus.PENDING.value
        ),
        terms=terms,
    )


@pytest.fixture
async def seeded_store(db_session, session_factory) -> SQLKnowledgeStore:
    db_session.add_all(
        [
            unit("same", [1.0, 0.0, 0.0], category="behavior", keywords=("tantrum",)),
            unit("close", [0.8, 0.6, 0.0], category="sensory", importance="high"),
            unit("far", [0.0, 0.0, 1.0], keywords=("sleep",), labels=("bedtime",)),
            unit("pending", None, keywords=("tantrum",)),
            unit("wrong-dim", [1.0, 0.0], category="behavior"),
        ]
    )
    db_session.add_all(
        [
            StructuredRecord(category="behavior", payload={"tip": "first"}),
            StructuredRecord(category="behavior", payload={"tip": "second"}),
            StructuredRecord(category="sensory", payload={"tip": "third"}),
        ]
    )
    await db_session.commit()
    return SQLKnowledgeStore(session_factory)


QUERY = np.array([1.0, 0.0, 0.0], dtype=np.float32)


class TestCosineTopK:
    def test_ranks_by_cosine(self):
        matrix = np.array([[0.0, 1.0], [2.0, 0.0], [1.0, 1.0]], dtype=np.float32)

        scores, indices = cosine_top_k(np.array([1.0, 0.0], dtype=np.float32), matrix, 2)

        assert list(indices) == [1, 2]
        assert scores[0] == pytest.approx(1.0, abs=1e-5)
        assert scores[1] == pytest.approx(0.7071, abs=1e-3)

    def test_does_not_modify_input(self):
        matrix = np.array([[3.0, 4.0]], dtype=np.float32)
        cosine_top_k(np.array([1.0, 0.0], dtype=np.float32), matrix, 1)

        assert matrix[0].tolist() == [3.0, 4.0]


class TestVectorSearch:
    async def test_threshold_and_order(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.vector_search(QUERY, threshold=0.3, top_k=8)

        assert [r.unit_id for r in results] == ["same", "close"]
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[1].score == pytest.approx(0.8, abs=1e-5)
        assert all(r.provenance == [RetrievalSource.VECTOR] for r in results)

    async def test_top_k(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.vector_search(QUERY, threshold=0.0, top_k=1)

        assert [r.unit_id for r in results] == ["same"]

    async def test_units_without_embedding_invisible(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.vector_search(QUERY, threshold=0.0, top_k=10)

        ids = {r.unit_id for r in results}
        assert "pending" not in ids
        assert "wrong-dim" not in ids

    async def test_category_filter(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.vector_search(
            QUERY, threshold=0.0, top_k=8, filters=SearchFilters(category="sensory")
        )

        assert [r.unit_id for r in results] == ["close"]

    async def test_importance_filter(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.vector_search(
            QUERY, threshold=0.0, top_k=8, filters=SearchFilters(importance="high")
        )

        assert [r.unit_id for r in results] == ["close"]

    async def test_all_filter_is_ignored(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.vector_search(
            QUERY, threshold=0.3, top_k=8, filters=SearchFilters(category="all", importance="all")
        )

        assert [r.unit_id for r in results] == ["same", "close"]

    async def test_empty_store(self, session_factory):
        store = SQLKnowledgeStore(session_factory)

        assert await store.vector_search(QUERY, threshold=0.3, top_k=8) == []


class TestKeywordSearch:
    async def test_matches_keywords_case_insensitively(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.keyword_search(["Tantrum"], top_k=10)

        assert sorted(r.unit_id for r in results) == ["pending", "same"]
        assert all(r.provenance == [RetrievalSource.KEYWORD] for r in results)

    async def test_matches_labels(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.keyword_search(["bedtime"], top_k=10)

        assert [r.unit_id for r in results] == ["far"]

    async def test_unit_returned_once_for_many_terms(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.keyword_search(["sleep", "bedtime"], top_k=10)

        assert [r.unit_id for r in results] == ["far"]

    async def test_limit(self, seeded_store: SQLKnowledgeStore):
        results = await seeded_store.keyword_search(["tantrum", "sleep"], top_k=2)

        assert len(results) == 2

    async def test_blank_terms(self, seeded_store: SQLKnowledgeStore):
        assert await seeded_store.keyword_search(["", "  "], top_k=10) == []

    async def test_oldest_match_first(self, db_session, session_factory):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for unit_id, days in (("newer", 2), ("oldest", 0), ("b-tie", 1), ("a-tie", 1)):
            row = unit(unit_id, None, keywords=("routine",))
            row.created_at = base + timedelta(days=days)
            db_session.add(row)
        await db_session.commit()

        results = await SQLKnowledgeStore(session_factory).keyword_search(["routine"], top_k=10)

        assert [r.unit_id for r in results] == ["oldest", "a-tie", "b-tie", "newer"]
        assert all(r.score == 0.0 for r in results)


class TestStructuredLookup:
    async def test_by_category(self, seeded_store: SQLKnowledgeStore):
        records = await seeded_store.structured_lookup(["behavior"], limit=5)

        assert [r.payload["tip"] for r in records] == ["first", "second"]
        assert all(r.category == "behavior" for r in records)

    async def test_limit(self, seeded_store: SQLKnowledgeStore):
        records = await seeded_store.structured_lookup(["behavior", "sensory"], limit=2)

        assert len(records) == 2

    async def test_no_categories(self, seeded_store: SQLKnowledgeStore):
        assert await seeded_store.structured_lookup([], limit=5) == []
