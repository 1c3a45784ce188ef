"""
MindNote Backend — Route Dependencies
======================================

What:  FastAPI dependencies that hand route handlers the components built in
       the lifespan handler (cache registry, dispatcher, coordinator).
Why:   Components live on app.state rather than in module globals, so tests
       can install fakes on a fresh app without patching imports.
"""

from fastapi import Request

from app.cache.registry import CacheRegistry
from app.services.dispatcher import AIDispatcher
from app.services.vector_coordinator import VectorBatchCoordinator


def get_cache_registry(request: Request) -> CacheRegistry:
    return request.app.state.caches


def get_dispatcher(request: Request) -> AIDispatcher:
    return request.app.state.dispatcher


def get_coordinator(request: Request) -> VectorBatchCoordinator:
    return request.app.state.coordinator
