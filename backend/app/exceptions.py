"""
MindNote Backend — Custom Exception Hierarchy
==============================================

What:  Application-specific exceptions for the AI core and its HTTP surface.
Why:   Typed exceptions let the dispatcher tell a recoverable provider failure
       from a terminal one, and let global handlers pick the right status code.
How:   Each exception carries a message and an optional context dict.
       Context is logged server-side; only the message reaches API clients.

Exception Hierarchy:
    MindNoteError (base)
    ├── ValidationError                  → 400 Bad Request
    ├── NotFoundError                    → 404 Not Found
    ├── ProviderError                    → raised by a provider adapter
    ├── ProviderUnavailableError         → 503 (one provider, recoverable by fallback)
    │   └── CircuitBreakerOpenError      → 503 (provider skipped while its circuit is open)
    ├── AllProvidersUnavailableError     → 503 (every enabled provider exhausted)
    ├── AdmissionRejectedError           → 413 (batch too large / concurrency too high)
    ├── PersistenceError                 → 500 (embedding store read/write failed)
    ├── IndexRebuildInProgressError      → 409 (a rebuild is already running)
    ├── DatabaseError                    → 500
    └── RateLimitExceededError           → 429

Cache misses are deliberately absent: absence is a normal return value.
Batch item failures are not exceptions either; they are recorded as
BatchItemResult(success=False) and never cross the batch boundary.
"""

from typing import Any, Dict, List, Optional


class MindNoteError(Exception):
    """
    Base exception for all MindNote application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(MindNoteError):
    """Raised when client input fails a business rule (HTTP 400)."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(MindNoteError):
    """Raised when a requested resource does not exist (HTTP 404)."""

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ProviderError(MindNoteError):
    """
    Raised by a provider adapter when a generate/embed/probe call fails.

    What:    Wraps SDK-specific exceptions (transport, auth, timeout, quota).
    Why:     The dispatcher only needs two facts: which provider failed, and
             whether trying the same provider again could help.

    Classification:
        retryable=True   → connection resets, timeouts, 429/5xx responses.
                           Adapters retry these with tenacity before giving up.
        retryable=False  → bad credentials, invalid request, unsupported model.
                           Retrying wastes quota; the dispatcher moves on.
    """

    def __init__(
        self,
        provider: str,
        message: str = "AI provider call failed",
        retryable: bool = True,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["provider"] = provider
        ctx["retryable"] = retryable
        super().__init__(message=message, context=ctx)
        self.provider = provider
        self.retryable = retryable


class ProviderUnavailableError(MindNoteError):
    """
    A specific provider could not serve a request.

    Recoverable locally: the dispatcher catches it and moves to the next
    provider in the fallback chain. Surfaces to callers only when a specific
    provider was requested explicitly.
    """

    def __init__(
        self,
        provider: str,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["provider"] = provider
        super().__init__(
            message=message or f"AI provider '{provider}' is unavailable",
            context=ctx,
        )
        self.provider = provider


class CircuitBreakerOpenError(ProviderUnavailableError):
    """
    Raised when a provider's circuit breaker is in OPEN state.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (provider skipped for recovery_time seconds)
        → After recovery_time → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED, if it fails → OPEN again
    """

    def __init__(
        self,
        provider: str = "unknown",
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(
            provider=provider,
            message=(
                f"AI provider '{provider}' is temporarily disabled after repeated failures. "
                f"It will be retried in approximately {recovery_time} seconds."
            ),
            context=ctx,
        )
        self.recovery_time = recovery_time


class AllProvidersUnavailableError(MindNoteError):
    """
    Every enabled provider was tried and none produced a response.

    Terminal for execute_request: propagated to the caller (HTTP 503).
    `attempts` maps provider id → short reason, in the order tried.
    """

    def __init__(
        self,
        attempts: Optional[Dict[str, str]] = None,
        message: str = "All AI providers are currently unavailable. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["attempts"] = dict(attempts or {})
        super().__init__(message=message, context=ctx)
        self.attempts = dict(attempts or {})


class AdmissionRejectedError(MindNoteError):
    """
    A batch was refused before any provider call was made.

    When:  Batch size above the configured maximum, or requested concurrency
           outside 1..max_concurrency.
    HTTP:  413 Payload Too Large
    """

    def __init__(
        self,
        message: str = "Request rejected by admission control",
        limit: Optional[int] = None,
        requested: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if limit is not None:
            ctx["limit"] = limit
        if requested is not None:
            ctx["requested"] = requested
        super().__init__(message=message, context=ctx)
        self.limit = limit
        self.requested = requested


class PersistenceError(MindNoteError):
    """
    The embedding store failed to read or write.

    Inside a batch this becomes a FailedEmbedding entry for one entity;
    outside a batch it propagates (HTTP 500).
    """

    def __init__(
        self,
        message: str = "Embedding storage operation failed",
        entity_ids: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if entity_ids:
            ctx["entity_ids"] = list(entity_ids)
        super().__init__(message=message, context=ctx)


class IndexRebuildInProgressError(MindNoteError):
    """A second rebuild_index() was requested while one is running (HTTP 409)."""

    def __init__(
        self,
        message: str = "A similarity index rebuild is already in progress",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(MindNoteError):
    """
    Raised when database operations fail unexpectedly (HTTP 500).

    The message returned to the client is always generic; details are
    logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(MindNoteError):
    """Raised when a client exceeds the per-IP request rate limit (HTTP 429)."""

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
