"""
MindNote Backend — Cache Admin Route Handlers
==============================================

What:  Operator endpoints over the named cache instances.

    GET    /api/cache/stats    per-instance statistics
    DELETE /api/cache/{name}   clear one instance ("all" clears every instance)
    POST   /api/cache/cleanup  eagerly drop expired entries
"""

from fastapi import APIRouter, Depends

from app.cache.registry import CacheRegistry
from app.schemas.cache import CacheRegistryStats
from app.schemas.common import CacheCleanupResponse, CacheClearResponse, ErrorResponse
from app.routes.deps import get_cache_registry

router = APIRouter(prefix="/api/cache", tags=["Cache"])


@router.get("/stats", response_model=CacheRegistryStats, summary="Cache statistics")
async def cache_stats(caches: CacheRegistry = Depends(get_cache_registry)) -> CacheRegistryStats:
    return caches.stats()


@router.delete(
    "/{name}",
    response_model=CacheClearResponse,
    responses={404: {"description": "Unknown cache name", "model": ErrorResponse}},
    summary="Clear a cache instance",
)
async def clear_cache(name: str, caches: CacheRegistry = Depends(get_cache_registry)) -> CacheClearResponse:
    cleared = caches.clear(None if name == "all" else name)
    return CacheClearResponse(name=name, cleared=cleared)


@router.post("/cleanup", response_model=CacheCleanupResponse, summary="Remove expired entries")
async def cleanup_caches(caches: CacheRegistry = Depends(get_cache_registry)) -> CacheCleanupResponse:
    return CacheCleanupResponse(removed=caches.cleanup())
