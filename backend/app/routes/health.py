"""
MindNote Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Checks the database (SELECT 1) and every registered AI provider
       (circuit state, then a cheap probe) and returns an aggregate status.

    Status levels:
    - healthy:   database up and at least one provider available
    - degraded:  database up, no provider available (AI features fail fast)
    - unhealthy: database unreachable
"""

import logging
import time

from fastapi import APIRouter, Depends

from app import __version__
from app.database import check_database
from app.routes.deps import get_coordinator, get_dispatcher
from app.schemas.common import HealthResponse
from app.services.dispatcher import AIDispatcher
from app.services.vector_coordinator import VectorBatchCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(
    dispatcher: AIDispatcher = Depends(get_dispatcher),
    coordinator: VectorBatchCoordinator = Depends(get_coordinator),
) -> HealthResponse:
    db_ok = await check_database()
    if not db_ok:
        logger.warning("Health check: database unreachable")

    providers = await dispatcher.check_providers()

    if not db_ok:
        overall = "unhealthy"
    elif "available" not in providers.values():
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        version=__version__,
        database="connected" if db_ok else "disconnected",
        providers=providers,
        index_size=len(coordinator.index),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
