"""
MindNote Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes middleware registration, route mounting, component wiring,
       and lifecycle management in one place.
How:   Factory pattern: create_app() returns a configured FastAPI instance;
       the lifespan handler builds the AI core and stores it on app.state.
Who:   Called by uvicorn to start the server (uvicorn app.main:app).

Application Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                     FastAPI App                         │
    │                                                         │
    │  Middleware:  Rate Limit → Request ID → Logging         │
    │                                                         │
    │  Routes:      /api/ai/*   /api/embeddings/*             │
    │               /api/cache/*   /health                    │
    │                                                         │
    │  app.state:   caches (CacheRegistry)                    │
    │               dispatcher (AIDispatcher)                 │
    │               coordinator (VectorBatchCoordinator)      │
    └─────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging → config validation → build components → ready
    Shutdown: dispose database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.cache.registry import CacheRegistry
from app.config import Settings, settings
from app.database import async_session_factory, dispose_engine
from app.exceptions import (
    AdmissionRejectedError,
    AllProvidersUnavailableError,
    CircuitBreakerOpenError,
    DatabaseError,
    IndexRebuildInProgressError,
    MindNoteError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitExceededError,
    ValidationError,
)
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.request_id import RequestIDFilter, RequestIDMiddleware, request_id_var
from app.routes import ai, cache, embeddings, health
from app.services.dispatcher import AIDispatcher
from app.services.embedding_repository import EmbeddingRepository, SQLEmbeddingRepository
from app.services.gemini_provider import GeminiProvider
from app.services.openai_provider import OpenAIProvider
from app.services.provider_base import ProviderCapability
from app.services.vector_coordinator import VectorBatchCoordinator

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Structured Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging once for the whole process.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s
    The request_id field comes from RequestIDFilter, so log lines emitted
    while serving a request carry its correlation id.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Component Wiring
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class Components:
    caches: CacheRegistry
    dispatcher: AIDispatcher
    coordinator: VectorBatchCoordinator


def build_provider_adapters(config: Settings) -> Dict[str, ProviderCapability]:
    """One adapter per known provider id; credentials may be missing (probe → False)."""
    timeout = config.dispatcher.provider_timeout_s
    retry = {
        "retry_attempts": config.retry_max_attempts,
        "retry_min_wait": config.retry_min_wait,
        "retry_max_wait": config.retry_max_wait,
    }
    return {
        "gemini": GeminiProvider(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            embedding_model=config.gemini_embedding_model,
            request_timeout=timeout,
            **retry,
        ),
        "openai": OpenAIProvider(
            api_key=config.openai_api_key,
            model=config.openai_model,
            embedding_model=config.openai_embedding_model,
            request_timeout=timeout,
            **retry,
        ),
    }


def build_components(
    config: Settings,
    capabilities: Optional[Dict[str, ProviderCapability]] = None,
    repository: Optional[EmbeddingRepository] = None,
) -> Components:
    """
    Assemble the AI core from settings.

    capabilities/repository default to the real adapters and the SQL
    repository; tests pass fakes.
    """
    caches = CacheRegistry.from_settings(config)
    dispatcher = AIDispatcher.from_settings(
        config,
        capabilities if capabilities is not None else build_provider_adapters(config),
        response_cache=caches.ai_results,
    )
    coordinator = VectorBatchCoordinator.from_settings(
        config,
        dispatcher,
        repository if repository is not None else SQLEmbeddingRepository(async_session_factory),
        search_cache=caches.search,
    )
    return Components(caches=caches, dispatcher=dispatcher, coordinator=coordinator)


def install_components(app: FastAPI, components: Components) -> None:
    app.state.caches = components.caches
    app.state.dispatcher = components.dispatcher
    app.state.coordinator = components.coordinator


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("MindNote Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: health checks report the degraded state
        logger.error("Configuration error: %s", str(e))

    install_components(app, build_components(settings))
    logger.info(
        "AI core ready: providers=%s, caches=%s",
        [s.id for s in app.state.dispatcher.provider_statuses()],
        app.state.caches.names(),
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("MindNote Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception taxonomy to HTTP responses.

    Handler hierarchy:
        ValidationError               → 400
        NotFoundError                 → 404
        IndexRebuildInProgressError   → 409
        AdmissionRejectedError        → 413
        RateLimitExceededError        → 429
        AllProvidersUnavailableError  → 503 (details: per-provider reasons)
        ProviderUnavailableError      → 503 (incl. CircuitBreakerOpenError)
        ProviderError                 → 503
        PersistenceError/DatabaseError→ 500 (generic message, context logged)
        MindNoteError / Exception     → 500

    Context dicts are returned as `details` only where they are safe to show
    (limits, retry hints, provider ids); storage errors keep theirs server-side.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message)

    @app.exception_handler(IndexRebuildInProgressError)
    async def handle_rebuild_conflict(request: Request, exc: IndexRebuildInProgressError):
        return _error_response(409, "rebuild_in_progress", exc.message)

    @app.exception_handler(AdmissionRejectedError)
    async def handle_admission_rejected(request: Request, exc: AdmissionRejectedError):
        logger.warning("Admission rejected: %s", exc.message)
        return _error_response(413, "admission_rejected", exc.message, exc.context)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error_response(
            429, "rate_limit_exceeded", exc.message, exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(AllProvidersUnavailableError)
    async def handle_all_providers_unavailable(request: Request, exc: AllProvidersUnavailableError):
        logger.error("All providers unavailable: %s", exc.attempts)
        return _error_response(
            503, "all_providers_unavailable", exc.message, {"attempts": exc.attempts},
        )

    @app.exception_handler(ProviderUnavailableError)
    async def handle_provider_unavailable(request: Request, exc: ProviderUnavailableError):
        logger.warning("Provider unavailable: %s", exc.message)
        headers = None
        if isinstance(exc, CircuitBreakerOpenError):
            headers = {"Retry-After": str(exc.recovery_time)}
        return _error_response(
            503, "provider_unavailable", exc.message, {"provider": exc.provider}, headers=headers,
        )

    @app.exception_handler(ProviderError)
    async def handle_provider_error(request: Request, exc: ProviderError):
        logger.error("Provider error: %s | Context: %s", exc.message, exc.context)
        return _error_response(503, "provider_error", exc.message, {"provider": exc.provider})

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        logger.error("Persistence error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("Database error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(MindNoteError)
    async def handle_app_error(request: Request, exc: MindNoteError):
        logger.error("Unhandled application error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="MindNote AI API",
        description=(
            "AI core of the MindNote note-taking app: multi-provider generation "
            "with fallback, batch execution, note embeddings, and similarity search."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware executes in REVERSE order of addition:
    # RateLimit → RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(ai.router)
    app.include_router(embeddings.router)
    app.include_router(cache.router)
    app.include_router(health.router)

    return app


# uvicorn expects `app.main:app` to be importable
app = create_app()
