"""
MindNote Backend — Shared API Schemas
======================================

What:  Response models shared across routes (errors, health, cache admin).
Why:   Every error body has the same shape no matter which handler produced
       it, so the frontend parses errors in exactly one place.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.schemas.ai import SimilarityMatch


class ErrorResponse(BaseModel):
    """
    Standard error response format for all API errors.

    Fields:
        error:      Machine-readable code (e.g. "admission_rejected")
        message:    Human-readable description, safe to show users
        details:    Optional context (limits, retry_after, provider attempts)
        request_id: Correlation id from RequestIDMiddleware
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    providers: Dict[str, str] = Field(
        default_factory=dict,
        description="Per-provider status: available, unavailable, circuit_open, disabled",
    )
    index_size: int = Field(default=0, description="Vectors in the similarity index")
    uptime_seconds: float = Field(description="Seconds since the process started")


class SimilarityResponse(BaseModel):
    matches: List[SimilarityMatch]
    total: int


class CacheClearResponse(BaseModel):
    name: str
    cleared: int = Field(description="Entries removed")


class CacheCleanupResponse(BaseModel):
    removed: Dict[str, int] = Field(description="Expired entries removed per instance")
