"""Score fusion, ranking and confidence gating of retrieval candidates."""

from typing import Iterable

from heartbridge.core.config import RetrievalPolicy
from heartbridge.knowledge.models import RetrievalCandidate, RetrievalSource


def fuse_candidates(
    vector_hits: Iterable[RetrievalCandidate],
    keyword_hits: Iterable[RetrievalCandidate],
    policy: RetrievalPolicy,
) -> list[RetrievalCandidate]:
    """Merge vector and keyword hits into one ranked list, one entry per unit.

    Vector hits keep their similarity. A keyword hit for a unit not found by
    vector search enters at ``keyword_prior_score``. A unit found by both
    searches scores ``max(similarity, keyword_prior_score) + keyword_overlap_boost``
    (boosted once), so agreement never ranks below either search alone.

    Returns:
        Candidates sorted by fused score, highest first. Ties keep insertion
        order (vector rank, then keyword order).
    """
    merged: dict[str, RetrievalCandidate] = {}

    for hit in vector_hits:
        existing = merged.get(hit.unit_id)
        if existing is not None:
            if hit.score > existing.score:
                existing.score = hit.score
            continue
        merged[hit.unit_id] = hit.model_copy(
            update={"provenance": [RetrievalSource.VECTOR]},
            deep=True,
        )

    boosted: set[str] = set()
    for hit in keyword_hits:
        existing = merged.get(hit.unit_id)
        if existing is None:
            merged[hit.unit_id] = hit.model_copy(
                update={
                    "score": policy.keyword_prior_score,
                    "provenance": [RetrievalSource.KEYWORD],
                },
                deep=True,
            )
            boosted.add(hit.unit_id)
        elif hit.unit_id not in boosted:
            existing.score = (
                max(existing.score, policy.keyword_prior_score) + policy.keyword_overlap_boost
            )
            existing.provenance.append(RetrievalSource.KEYWORD)
            boosted.add(hit.unit_id)

    return rank_candidates(merged.values())


def rank_candidates(candidates: Iterable[RetrievalCandidate]) -> list[RetrievalCandidate]:
    """Stable sort by score, descending."""
    return sorted(candidates, key=lambda c: c.score, reverse=True)


def apply_confidence_gate(
    ranked: list[RetrievalCandidate],
    gate: float,
    max_forwarded: int,
) -> list[RetrievalCandidate]:
    """Keep candidates scoring strictly above ``gate``, at most ``max_forwarded``.

    ``ranked`` must already be sorted best first.
    """
    if max_forwarded <= 0:
        return []
    passing = [c for c in ranked if c.score > gate]
    return passing[:max_forwarded]
