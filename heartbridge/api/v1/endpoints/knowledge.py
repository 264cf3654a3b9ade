"""Knowledge base management endpoints."""

import logging
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from heartbridge.api.deps import get_knowledge_service
from heartbridge.knowledge.loader import KnowledgeItem
from heartbridge.knowledge.models import CamelModel, OperationSummary
from heartbridge.knowledge.service import (
    DEFAULT_PENDING_LIMIT,
    KnowledgeService,
    KnowledgeUnitPatch,
)
from heartbridge.models.knowledge import EmbeddingStatus, KnowledgeUnit

router = APIRouter()
logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------


class KnowledgeCreateRequest(BaseModel):
    """Batch of items to add (manual entry or a parsed CSV)."""

    items: list[KnowledgeItem] = Field(..., min_length=1, max_length=1000)
    embed: bool = True


class KnowledgeUnitResponse(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    content: str
    category: str
    importance: str
    data_type: str
    source_name: Optional[str]
    keywords: list[str]
    labels: list[str]
    embedding_status: str
    embedding_error: Optional[str]
    has_embedding: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_unit(cls, unit: KnowledgeUnit) -> "KnowledgeUnitResponse":
        response = cls.model_validate(unit)
        response.has_embedding = unit.embedding is not None
        return response


class KnowledgeListResponse(CamelModel):
    items: list[KnowledgeUnitResponse]
    total: int
    page: int
    per_page: int


# -------------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------------


@router.get("", response_model=KnowledgeListResponse)
async def list_knowledge(
    service: Annotated[KnowledgeService, Depends(get_knowledge_service)],
    category: Optional[str] = Query(None, description="Category filter; 'all' for none"),
    importance: Optional[str] = Query(None, description="Importance filter; 'all' for none"),
    embedding_status: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
) -> KnowledgeListResponse:
    """List knowledge units, newest first."""
    units, total = await service.list_units(
        category=category,
        importance=importance,
        status=embedding_status,
        page=page,
        per_page=per_page,
    )
    return KnowledgeListResponse(
        items=[KnowledgeUnitResponse.from_unit(u) for u in units],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("", response_model=OperationSummary, status_code=status.HTTP_201_CREATED)
async def create_knowledge(
    request: KnowledgeCreateRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[KnowledgeService, Depends(get_knowledge_service)],
) -> OperationSummary:
    """Add knowledge units; embeddings are generated in the background."""
    summary = await service.create_units(request.items)
    if request.embed and summary.unit_ids:
        background_tasks.add_task(service.embed_units, summary.unit_ids)
    return summary


@router.patch("/{unit_id}", response_model=KnowledgeUnitResponse)
async def update_knowledge(
    unit_id: str,
    patch: KnowledgeUnitPatch,
    background_tasks: BackgroundTasks,
    service: Annotated[KnowledgeService, Depends(get_knowledge_service)],
) -> KnowledgeUnitResponse:
    """Edit a unit. Content-affecting edits schedule a fresh embedding."""
    try:
        unit = await service.update_unit(unit_id, patch)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    if unit is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Knowledge unit not found",
        )

    if unit.embedding_status == EmbeddingStatus.PENDING.value:
        background_tasks.add_task(service.embed_units, [unit.id])
    return KnowledgeUnitResponse.from_unit(unit)


@router.delete("/{unit_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_knowledge(
    unit_id: str,
    service: Annotated[KnowledgeService, Depends(get_knowledge_service)],
) -> Response:
    """Delete a unit and its terms."""
    if not await service.delete_unit(unit_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Knowledge unit not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/embeddings/pending", response_model=OperationSummary)
async def embed_pending(
    service: Annotated[KnowledgeService, Depends(get_knowledge_service)],
    limit: int = Query(DEFAULT_PENDING_LIMIT, ge=1, le=500),
) -> OperationSummary:
    """Embed units that are pending or previously failed."""
    return await service.embed_pending(limit=limit)


@router.post("/reindex", response_model=OperationSummary)
async def reindex(
    service: Annotated[KnowledgeService, Depends(get_knowledge_service)],
) -> OperationSummary:
    """Re-embed every unit, e.g. after switching embedding models."""
    summary = await service.reindex_all()
    logger.info(
        f"Reindex finished: {summary.success_count}/{summary.total} "
        f"({summary.error_count} errors)"
    )
    return summary
