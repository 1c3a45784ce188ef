"""
MindNote Backend — AI Route Handlers
=====================================

What:  HTTP surface of the AIDispatcher.
How:   Thin handlers: validate the body (pydantic), call the dispatcher,
       return its result. Errors propagate to the global exception handlers.

    POST /api/ai/generate   single request with provider fallback
    POST /api/ai/batch      ordered batch, per-item success/failure
    GET  /api/ai/providers  registry view (priority, circuit state, counts)
    GET  /api/ai/stats      request/token counters
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from app.schemas.ai import (
    AIRequest,
    AIResponse,
    BatchJob,
    BatchResponse,
    DispatcherStats,
    ProviderStatus,
)
from app.schemas.common import ErrorResponse
from app.routes.deps import get_dispatcher
from app.services.dispatcher import AIDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["AI"])


@router.post(
    "/generate",
    response_model=AIResponse,
    responses={
        503: {"description": "Every provider unavailable", "model": ErrorResponse},
    },
    summary="Run one AI request with provider fallback",
)
async def generate(
    body: AIRequest,
    dispatcher: AIDispatcher = Depends(get_dispatcher),
) -> AIResponse:
    return await dispatcher.execute_request(body)


@router.post(
    "/batch",
    response_model=BatchResponse,
    responses={
        413: {"description": "Batch rejected by admission control", "model": ErrorResponse},
    },
    summary="Run a batch of AI requests",
    description=(
        "Results are returned in request order. A failing item is reported with "
        "success=false and never fails the rest of the batch."
    ),
)
async def batch(
    body: BatchJob,
    dispatcher: AIDispatcher = Depends(get_dispatcher),
) -> BatchResponse:
    results = await dispatcher.execute_batch(
        body.requests,
        strategy=body.strategy,
        max_concurrency=body.max_concurrency,
    )
    succeeded = sum(1 for r in results if r.success)
    return BatchResponse(
        results=results,
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


@router.get("/providers", response_model=List[ProviderStatus], summary="List registered providers")
async def providers(dispatcher: AIDispatcher = Depends(get_dispatcher)) -> List[ProviderStatus]:
    return dispatcher.provider_statuses()


@router.get("/stats", response_model=DispatcherStats, summary="Dispatcher counters")
async def stats(dispatcher: AIDispatcher = Depends(get_dispatcher)) -> DispatcherStats:
    return dispatcher.get_stats()
