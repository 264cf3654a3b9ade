"""Knowledge unit management and embedding indexer.

Units are created with ``embedding = None`` in the ``pending`` state. The
indexer moves them through ``processing`` to ``completed`` or ``failed``
(keeping the error). Editing content, category, importance or terms
invalidates the stored vector so the unit is re-embedded.
"""

import logging
from typing import Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heartbridge.core.errors import EmbeddingUnavailable
from heartbridge.knowledge.embeddings import EmbeddingClient
from heartbridge.knowledge.loader import (
    KnowledgeItem,
    build_unit_content,
    normalize_category,
    normalize_importance,
    split_terms,
)
from heartbridge.knowledge.models import OperationSummary, normalize_filter
from heartbridge.knowledge.store import normalize_term
from heartbridge.models.knowledge import (
    EmbeddingStatus,
    KnowledgeTerm,
    KnowledgeUnit,
    TermKind,
)

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10
DEFAULT_PENDING_LIMIT = 50


class KnowledgeUnitPatch(BaseModel):
    """Partial update for a knowledge unit. ``None`` leaves a field as is."""

    content: Optional[str] = None
    category: Optional[str] = None
    importance: Optional[str] = None
    keywords: Optional[list[str]] = None
    labels: Optional[list[str]] = None
    source_name: Optional[str] = None


def _build_terms(keywords: Sequence[str], labels: Sequence[str]) -> list[KnowledgeTerm]:
    terms: list[KnowledgeTerm] = []
    seen: set[tuple[str, str]] = set()
    for kind, values in ((TermKind.KEYWORD, keywords), (TermKind.LABEL, labels)):
        for value in values:
            term = normalize_term(value)
            if not term or (term, kind.value) in seen:
                continue
            seen.add((term, kind.value))
            terms.append(KnowledgeTerm(term=term[:100], kind=kind.value))
    return terms


def _invalidate_embedding(unit: KnowledgeUnit) -> None:
    unit.embedding = None
    unit.embedding_status = EmbeddingStatus.PENDING.value
    unit.embedding_error = None


def _summary(total: int, success: int, errors: list[str], unit_ids: list[str]) -> OperationSummary:
    return OperationSummary(
        total=total,
        success_count=success,
        error_count=len(errors),
        errors=errors[:MAX_REPORTED_ERRORS],
        unit_ids=unit_ids,
    )


class KnowledgeService:
    """CRUD and embedding lifecycle for knowledge units."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedder: EmbeddingClient,
    ) -> None:
        self.session_factory = session_factory
        self.embedder = embedder

    # ---------------------------------------------------------------------
    # CRUD
    # ---------------------------------------------------------------------

    async def create_units(self, items: Sequence[KnowledgeItem]) -> OperationSummary:
        """Insert items as pending units.

        Items without usable content are reported and skipped; the rest are
        committed together.
        """
        errors: list[str] = []
        units: list[KnowledgeUnit] = []
        for index, item in enumerate(items, start=1):
            try:
                built = build_unit_content(item)
            except ValueError as e:
                errors.append(f"Item {index}: {e}")
                continue
            units.append(
                KnowledgeUnit(
                    content=built.content,
                    category=item.category,
                    importance=item.importance,
                    data_type=built.data_type,
                    source_name=item.source_name,
                    entities=built.entities,
                    embedding=None,
                    embedding_status=EmbeddingStatus.PENDING.value,
                    terms=_build_terms(item.keywords, item.labels),
                )
            )

        if units:
            async with self.session_factory() as session:
                session.add_all(units)
                await session.commit()

        logger.info(f"Created {len(units)} knowledge units ({len(errors)} rejected)")
        return _summary(len(items), len(units), errors, [u.id for u in units])

    async def get_unit(self, unit_id: str) -> Optional[KnowledgeUnit]:
        async with self.session_factory() as session:
            return await session.get(KnowledgeUnit, unit_id)

    async def update_unit(
        self,
        unit_id: str,
        patch: KnowledgeUnitPatch,
    ) -> Optional[KnowledgeUnit]:
        """Apply ``patch``; returns ``None`` if the unit does not exist."""
        async with self.session_factory() as session:
            unit = await session.get(KnowledgeUnit, unit_id)
            if unit is None:
                return None

            changed = False
            if patch.content is not None:
                content = patch.content.strip()
                if not content:
                    raise ValueError("Knowledge unit content cannot be empty")
                if content != unit.content:
                    unit.content = content
                    # Edited text no longer matches the original Q&A pair
                    unit.data_type = "text"
                    unit.entities = None
                    changed = True
            if patch.category is not None:
                category = normalize_category(patch.category)
                changed = changed or category != unit.category
                unit.category = category
            if patch.importance is not None:
                importance = normalize_importance(patch.importance)
                changed = changed or importance != unit.importance
                unit.importance = importance
            if patch.keywords is not None or patch.labels is not None:
                keywords = unit.keywords if patch.keywords is None else split_terms(patch.keywords)
                labels = unit.labels if patch.labels is None else split_terms(patch.labels)
                unit.terms = _build_terms(keywords, labels)
                changed = True
            if patch.source_name is not None:
                unit.source_name = patch.source_name.strip() or None

            if changed:
                _invalidate_embedding(unit)

            await session.commit()
            return unit

    async def delete_unit(self, unit_id: str) -> bool:
        async with self.session_factory() as session:
            unit = await session.get(KnowledgeUnit, unit_id)
            if unit is None:
                return False
            await session.delete(unit)
            await session.commit()
        logger.info(f"Deleted knowledge unit {unit_id}")
        return True

    async def list_units(
        self,
        category: Optional[str] = None,
        importance: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[KnowledgeUnit], int]:
        """Return one page of units (newest first) and the total count."""
        query = select(KnowledgeUnit)
        category = normalize_filter(category)
        importance = normalize_filter(importance)
        status = normalize_filter(status)
        if category:
            query = query.where(KnowledgeUnit.category == category)
        if importance:
            query = query.where(KnowledgeUnit.importance == importance)
        if status:
            query = query.where(KnowledgeUnit.embedding_status == status)

        count_query = select(func.count()).select_from(query.subquery())
        offset = (max(page, 1) - 1) * per_page
        query = (
            query.order_by(KnowledgeUnit.created_at.desc(), KnowledgeUnit.id)
            .offset(offset)
            .limit(per_page)
        )

        async with self.session_factory() as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(query)
            return list(result.scalars().all()), total

    # ---------------------------------------------------------------------
    # Embedding lifecycle
    # ---------------------------------------------------------------------

    async def embed_units(self, unit_ids: Sequence[str]) -> OperationSummary:
        """Embed the given units, recording per-unit success or failure.

        The vector is stored only if the unit's content is unchanged since it
        was read; a unit edited meanwhile stays pending for its own re-embed.
        """
        ids = list(dict.fromkeys(unit_ids))
        if not ids:
            return _summary(0, 0, [], [])

        async with self.session_factory() as session:
            result = await session.execute(
                select(KnowledgeUnit).where(KnowledgeUnit.id.in_(ids))
            )
            units = list(result.scalars().all())
            for unit in units:
                unit.embedding_status = EmbeddingStatus.PROCESSING.value
                unit.embedding_error = None
            await session.commit()
            texts = {unit.id: unit.content for unit in units}

        vectors, failures = await self._embed_contents(texts)

        errors: list[str] = []
        succeeded: list[str] = []
        async with self.session_factory() as session:
            result = await session.execute(
                select(KnowledgeUnit).where(KnowledgeUnit.id.in_(list(texts)))
            )
            current = {unit.id: unit for unit in result.scalars().all()}
            for unit_id, text in texts.items():
                unit = current.get(unit_id)
                if unit is None:
                    errors.append(f"{unit_id}: deleted during embedding")
                    continue
                if unit.content != text:
                    logger.info(f"Knowledge unit {unit_id} changed during embedding; left pending")
                    errors.append(f"{unit_id}: content changed during embedding")
                    continue
                if unit_id in vectors:
                    unit.embedding = vectors[unit_id]
                    unit.embedding_status = EmbeddingStatus.COMPLETED.value
                    unit.embedding_error = None
                    succeeded.append(unit_id)
                else:
                    reason = failures.get(unit_id, "Embedding failed")
                    unit.embedding = None
                    unit.embedding_status = EmbeddingStatus.FAILED.value
                    unit.embedding_error = reason
                    errors.append(f"{unit_id}: {reason}")
            await session.commit()

        missing = [i for i in ids if i not in texts]
        errors.extend(f"{i}: not found" for i in missing)

        logger.info(
            f"Embedded {len(succeeded)}/{len(ids)} knowledge units ({len(errors)} errors)"
        )
        return _summary(len(ids), len(succeeded), errors, succeeded)

    async def embed_pending(self, limit: int = DEFAULT_PENDING_LIMIT) -> OperationSummary:
        """Embed up to ``limit`` units that have no vector yet."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(KnowledgeUnit.id)
                .where(
                    KnowledgeUnit.embedding_status.in_(
                        [EmbeddingStatus.PENDING.value, EmbeddingStatus.FAILED.value]
                    )
                )
                .order_by(KnowledgeUnit.created_at, KnowledgeUnit.id)
                .limit(limit)
            )
            ids = list(result.scalars().all())

        if not ids:
            logger.info("No pending knowledge units to embed")
        return await self.embed_units(ids)

    async def reindex_all(self) -> OperationSummary:
        """Invalidate and re-embed every unit (e.g. after a model change)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(KnowledgeUnit).order_by(KnowledgeUnit.created_at, KnowledgeUnit.id)
            )
            units = list(result.scalars().all())
            for unit in units:
                _invalidate_embedding(unit)
            await session.commit()
            ids = [u.id for u in units]

        logger.info(f"Reindexing {len(ids)} knowledge units")
        return await self.embed_units(ids)

    async def _embed_contents(
        self,
        texts: dict[str, str],
    ) -> tuple[dict[str, list[float]], dict[str, str]]:
        """Embed unit contents (by id) as a batch, falling back to one-by-one.

        Returns:
            ``(vectors_by_id, errors_by_id)``.
        """
        if not texts:
            return {}, {}

        ids = list(texts)
        try:
            matrix = await self.embedder.embed_many([texts[i] for i in ids])
            return {unit_id: row.tolist() for unit_id, row in zip(ids, matrix)}, {}
        except EmbeddingUnavailable as e:
            if len(ids) == 1:
                return {}, {ids[0]: e.detail}
            logger.warning(f"Batch embedding failed, retrying units individually: {e.detail}")

        vectors: dict[str, list[float]] = {}
        failures: dict[str, str] = {}
        for unit_id in ids:
            try:
                matrix = await self.embedder.embed_many([texts[unit_id]])
                vectors[unit_id] = matrix[0].tolist()
            except EmbeddingUnavailable as e:
                failures[unit_id] = e.detail
        return vectors, failures
