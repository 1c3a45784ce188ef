"""
MindNote Backend — Embedding Route Handlers
============================================

What:  HTTP surface of the VectorBatchCoordinator.

    POST /api/embeddings/batch    embed notes that have no embedding yet
    POST /api/embeddings/rebuild  rebuild the similarity index (exclusive)
    POST /api/embeddings/similar  similar notes by note id or free text
"""

import logging

from fastapi import APIRouter, Depends

from app.exceptions import ValidationError
from app.schemas.ai import (
    BatchEmbeddingResult,
    EmbeddingBatchRequest,
    IndexRebuildResult,
    SimilarityQuery,
)
from app.schemas.common import ErrorResponse, SimilarityResponse
from app.routes.deps import get_coordinator
from app.services.vector_coordinator import VectorBatchCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/embeddings", tags=["Embeddings"])


@router.post(
    "/batch",
    response_model=BatchEmbeddingResult,
    responses={
        413: {"description": "Too many notes in one batch", "model": ErrorResponse},
    },
    summary="Generate embeddings for a batch of notes",
    description=(
        "Notes that already have an embedding are reported as skipped. "
        "Per-note failures are reported in `failed` and can be retried."
    ),
)
async def batch_embeddings(
    body: EmbeddingBatchRequest,
    coordinator: VectorBatchCoordinator = Depends(get_coordinator),
) -> BatchEmbeddingResult:
    return await coordinator.generate_batch_embeddings(body.entity_ids)


@router.post(
    "/rebuild",
    response_model=IndexRebuildResult,
    responses={
        409: {"description": "A rebuild is already running", "model": ErrorResponse},
    },
    summary="Rebuild the similarity index from stored embeddings",
)
async def rebuild_index(
    coordinator: VectorBatchCoordinator = Depends(get_coordinator),
) -> IndexRebuildResult:
    return await coordinator.rebuild_index()


@router.post(
    "/similar",
    response_model=SimilarityResponse,
    responses={
        400: {"description": "Neither or both of entity_id and text given", "model": ErrorResponse},
        404: {"description": "Note has no embedding", "model": ErrorResponse},
    },
    summary="Find similar notes",
)
async def similar(
    body: SimilarityQuery,
    coordinator: VectorBatchCoordinator = Depends(get_coordinator),
) -> SimilarityResponse:
    if (body.entity_id is None) == (body.text is None):
        raise ValidationError("Provide exactly one of entity_id or text", field="entity_id")

    if body.entity_id is not None:
        matches = await coordinator.find_similar(body.entity_id, limit=body.limit, threshold=body.threshold)
    else:
        matches = await coordinator.search(body.text, limit=body.limit, threshold=body.threshold)
    return SimilarityResponse(matches=matches, total=len(matches))
