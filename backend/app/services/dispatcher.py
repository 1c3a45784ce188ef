"""
MindNote Backend — AI Dispatcher
=================================

What:  Routes AI requests across registered providers with primary/fallback
       ordering, and runs batches of requests under a concurrency cap.
Why:   Any single provider can be down, rate-limited, or misconfigured. Callers
       should get an answer from whichever provider can give one, and should
       only see an error when none can.
How:   A typed registry of (descriptor, capability, circuit breaker) entries.
       Each request walks the chain: primary first, then every enabled
       provider with fallback_enabled in ascending priority order.
Who:   Built once in the app lifespan; used by the AI routes and by the
       VectorBatchCoordinator (embed()).

Per-provider attempt:
    1. Circuit breaker open      → skip (no probe, no call)
    2. probe() False / timeout   → skip
    3. generate() under timeout  → success returns immediately;
                                   failure is logged, recorded in the breaker,
                                   and the chain moves on
    Exhausting the chain raises AllProvidersUnavailableError with the reason
    recorded for every provider tried.

Batches:
    parallel   → fixed windows of max_concurrency requests; each window is
                 drained by a small worker pool over an asyncio.Queue, then
                 the dispatcher pauses inter_batch_delay seconds before the next
    sequential → one request at a time, no pause
    Results are correlated by index, never by completion order. One failing
    item becomes BatchItemResult(success=False) and never fails its siblings.
    Admission control rejects oversized batches before any provider call.

Concurrency:
    Registration takes the registry lock; dispatch reads a snapshot taken
    under the same lock, so registering a provider mid-flight never changes
    the chain of a request already being served.
"""

import asyncio
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from app.cache.store import CacheStore
from app.exceptions import (
    AdmissionRejectedError,
    AllProvidersUnavailableError,
    CircuitBreakerOpenError,
    MindNoteError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from app.schemas.ai import (
    AIRequest,
    AIResponse,
    BatchItemResult,
    BatchStrategy,
    DispatcherStats,
    EmbeddingResult,
    ProviderDescriptor,
    ProviderStatus,
)
from app.services.circuit_breaker import CircuitBreaker
from app.services.provider_base import ProviderCapability

if TYPE_CHECKING:
    from app.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RegisteredProvider:
    descriptor: ProviderDescriptor
    capability: ProviderCapability
    breaker: CircuitBreaker
    responses: int = 0


def request_cache_key(request: AIRequest) -> str:
    """SHA-256 over every request field; equal requests share one ai_results entry."""
    digest = hashlib.sha256(request.model_dump_json().encode("utf-8")).hexdigest()
    return f"ai:{digest}"


class AIDispatcher:
    """
    Multi-provider request router with fallback, batching, and admission control.

    Args:
        max_batch_size:     Largest batch execute_batch() admits
        max_concurrency:    Default and upper bound for a batch's window size
        inter_batch_delay:  Seconds to pause between parallel windows
        provider_timeout:   Seconds allowed for each probe/generate/embed call
        primary_provider:   Registry id tried first (default: lowest priority)
        response_cache:     Optional store memoizing single-request responses
        cb_failure_threshold / cb_recovery_timeout: per-provider breaker tuning
    """

    def __init__(
        self,
        *,
        max_batch_size: int = 50,
        max_concurrency: int = 5,
        inter_batch_delay: float = 1.0,
        provider_timeout: float = 30.0,
        primary_provider: Optional[str] = None,
        response_cache: Optional[CacheStore] = None,
        cb_failure_threshold: int = 5,
        cb_recovery_timeout: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_batch_size = max_batch_size
        self.max_concurrency = max_concurrency
        self.inter_batch_delay = inter_batch_delay
        self.provider_timeout = provider_timeout
        self.primary_provider = primary_provider
        self._response_cache = response_cache
        self._cb_failure_threshold = cb_failure_threshold
        self._cb_recovery_timeout = cb_recovery_timeout
        self._clock = clock

        self._registry: Dict[str, RegisteredProvider] = {}
        self._registry_lock = threading.RLock()
        self._stats = DispatcherStats()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        capabilities: Dict[str, ProviderCapability],
        response_cache: Optional[CacheStore] = None,
    ) -> "AIDispatcher":
        """
        Build a dispatcher and register every configured provider that has an adapter.

        Descriptors without a matching capability are logged and ignored;
        they cannot serve requests.
        """
        cfg = settings.dispatcher
        dispatcher = cls(
            max_batch_size=cfg.max_batch_size,
            max_concurrency=cfg.max_concurrency,
            inter_batch_delay=cfg.inter_batch_delay_seconds,
            provider_timeout=cfg.provider_timeout_s,
            primary_provider=cfg.primary_provider,
            response_cache=response_cache if cfg.cache_responses else None,
            cb_failure_threshold=settings.cb_failure_threshold,
            cb_recovery_timeout=settings.cb_recovery_timeout,
        )
        for descriptor in settings.providers:
            capability = capabilities.get(descriptor.id)
            if capability is None:
                logger.warning("No adapter for configured provider '%s'; not registered", descriptor.id)
                continue
            dispatcher.register_provider(descriptor, capability)
        return dispatcher

    # ── Registry ──────────────────────────────────────────────────────────

    def register_provider(self, descriptor: ProviderDescriptor, capability: ProviderCapability) -> None:
        """Add or replace the provider registered under descriptor.id."""
        entry = RegisteredProvider(
            descriptor=descriptor,
            capability=capability,
            breaker=CircuitBreaker(
                name=descriptor.id,
                failure_threshold=self._cb_failure_threshold,
                recovery_timeout=self._cb_recovery_timeout,
                clock=self._clock,
            ),
        )
        with self._registry_lock:
            replaced = descriptor.id in self._registry
            self._registry[descriptor.id] = entry
        logger.info(
            "%s provider '%s' (priority=%d, enabled=%s, fallback=%s)",
            "Replaced" if replaced else "Registered",
            descriptor.id,
            descriptor.priority,
            descriptor.enabled,
            descriptor.fallback_enabled,
        )

    def unregister_provider(self, provider_id: str) -> None:
        with self._registry_lock:
            if self._registry.pop(provider_id, None) is None:
                raise NotFoundError(resource="provider", resource_id=provider_id)
        logger.info("Unregistered provider '%s'", provider_id)

    def provider_chain(self) -> List[RegisteredProvider]:
        """
        Snapshot of the order a request will try providers in.

        Primary: the configured primary_provider when registered and enabled,
        else the enabled provider with the lowest priority (ties by id).
        Then every other enabled provider with fallback_enabled, by priority.
        """
        with self._registry_lock:
            entries = list(self._registry.values())

        enabled = sorted(
            (e for e in entries if e.descriptor.enabled),
            key=lambda e: (e.descriptor.priority, e.descriptor.id),
        )
        if not enabled:
            return []

        primary = next((e for e in enabled if e.descriptor.id == self.primary_provider), enabled[0])
        fallbacks = [e for e in enabled if e is not primary and e.descriptor.fallback_enabled]
        return [primary] + fallbacks

    def provider_statuses(self) -> List[ProviderStatus]:
        chain = self.provider_chain()
        primary_id = chain[0].descriptor.id if chain else None
        with self._registry_lock:
            entries = sorted(
                self._registry.values(),
                key=lambda e: (e.descriptor.priority, e.descriptor.id),
            )
        return [
            ProviderStatus(
                id=e.descriptor.id,
                priority=e.descriptor.priority,
                enabled=e.descriptor.enabled,
                fallback_enabled=e.descriptor.fallback_enabled,
                is_primary=e.descriptor.id == primary_id,
                circuit_state=e.breaker.state,
                responses=e.responses,
            )
            for e in entries
        ]

    def get_stats(self) -> DispatcherStats:
        return self._stats.model_copy(deep=True)

    async def check_providers(self) -> Dict[str, str]:
        """
        Health view per provider: disabled, circuit_open, available, or unavailable.

        Open circuits are reported without probing.
        """
        with self._registry_lock:
            entries = list(self._registry.values())
        report: Dict[str, str] = {}
        for entry in entries:
            if not entry.descriptor.enabled:
                report[entry.descriptor.id] = "disabled"
            elif entry.breaker.state == CircuitBreaker.OPEN:
                report[entry.descriptor.id] = "circuit_open"
            else:
                report[entry.descriptor.id] = "available" if await self._probe(entry) else "unavailable"
        return report

    # ── Single requests ───────────────────────────────────────────────────

    async def execute_request(self, request: AIRequest) -> AIResponse:
        """
        Serve one request from the first provider in the chain that can.

        Raises:
            AllProvidersUnavailableError: every provider was skipped or failed.
        """
        self._stats.total_requests += 1

        cache_key = None
        if self._response_cache is not None:
            cache_key = request_cache_key(request)
            cached = self._response_cache.get(cache_key)
            if cached is not None:
                self._stats.cache_hits += 1
                self._stats.successful_requests += 1
                logger.debug("ai_results cache hit for %s", cache_key[:16])
                return cached.model_copy(update={"cached": True})

        start_time = time.time()
        try:
            response, entry = await self._run_chain(
                "generate",
                lambda capability: capability.generate(request),
                len(request.content),
            )
        except AllProvidersUnavailableError:
            self._stats.failed_requests += 1
            raise

        update = {"provider": entry.descriptor.id, "cached": False}
        if not response.response_time_ms:
            update["response_time_ms"] = int((time.time() - start_time) * 1000)
        response = response.model_copy(update=update)

        entry.responses += 1
        self._record_success(response)
        if cache_key is not None:
            self._response_cache.set(cache_key, response)
        return response

    # ── Batches ───────────────────────────────────────────────────────────

    async def execute_batch(
        self,
        requests: Sequence[AIRequest],
        strategy: BatchStrategy = BatchStrategy.PARALLEL,
        max_concurrency: Optional[int] = None,
    ) -> List[BatchItemResult]:
        """
        Run every request and return one result per request, in input order.

        Raises:
            AdmissionRejectedError: batch larger than max_batch_size, or
                max_concurrency outside 1..self.max_concurrency. Raised before
                any provider is called.
        """
        requests = list(requests)
        strategy = BatchStrategy(strategy)
        concurrency = self.max_concurrency if max_concurrency is None else max_concurrency
        self._admit(len(requests), concurrency)

        if not requests:
            return []

        results: List[Optional[BatchItemResult]] = [None] * len(requests)
        logger.info(
            "Executing batch of %d requests (%s, concurrency=%d)",
            len(requests),
            strategy.value,
            concurrency,
        )

        if strategy is BatchStrategy.SEQUENTIAL:
            for index, request in enumerate(requests):
                results[index] = await self._execute_item(index, request)
        else:
            indexed = list(enumerate(requests))
            for window_start in range(0, len(indexed), concurrency):
                if window_start:
                    await asyncio.sleep(self.inter_batch_delay)
                await self._drain_window(indexed[window_start:window_start + concurrency], results, concurrency)

        succeeded = sum(1 for r in results if r is not None and r.success)
        logger.info("Batch finished: %d/%d succeeded", succeeded, len(requests))
        return results  # type: ignore[return-value]

    def _admit(self, size: int, concurrency: int) -> None:
        if size > self.max_batch_size:
            logger.warning("Rejected batch of %d requests (limit %d)", size, self.max_batch_size)
            raise AdmissionRejectedError(
                message=f"Batch of {size} requests exceeds the maximum of {self.max_batch_size}",
                limit=self.max_batch_size,
                requested=size,
            )
        if concurrency < 1 or concurrency > self.max_concurrency:
            logger.warning(
                "Rejected batch with concurrency %d (allowed 1..%d)", concurrency, self.max_concurrency
            )
            raise AdmissionRejectedError(
                message=f"max_concurrency must be between 1 and {self.max_concurrency}, got {concurrency}",
                limit=self.max_concurrency,
                requested=concurrency,
            )

    async def _drain_window(
        self,
        window: List[Tuple[int, AIRequest]],
        results: List[Optional[BatchItemResult]],
        concurrency: int,
    ) -> None:
        queue: "asyncio.Queue[Tuple[int, AIRequest]]" = asyncio.Queue()
        for item in window:
            queue.put_nowait(item)

        async def worker() -> None:
            while True:
                try:
                    index, request = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await self._execute_item(index, request)

        await asyncio.gather(*(worker() for _ in range(min(concurrency, len(window)))))

    async def _execute_item(self, index: int, request: AIRequest) -> BatchItemResult:
        try:
            response = await self.execute_request(request)
        except Exception as e:
            message = e.message if isinstance(e, MindNoteError) else str(e)
            logger.warning("Batch item %d failed (%s): %s", index, type(e).__name__, message)
            return BatchItemResult(index=index, success=False, error=message, error_type=type(e).__name__)
        return BatchItemResult(index=index, success=True, response=response)

    # ── Embeddings ────────────────────────────────────────────────────────

    async def embed(self, texts: Sequence[str]) -> EmbeddingResult:
        """
        Embed `texts` with the first provider in the chain that can.

        A provider returning a different number of vectors than texts counts
        as a failure of that provider.
        """
        texts = list(texts)
        if not texts:
            raise ValidationError("Cannot embed an empty list of texts", field="texts")

        async def _embed(capability: ProviderCapability) -> List[List[float]]:
            vectors = await capability.embed(texts)
            if len(vectors) != len(texts):
                raise ProviderError(
                    provider=capability.name,
                    message=f"Expected {len(texts)} vectors, got {len(vectors)}",
                    retryable=False,
                )
            return vectors

        start_time = time.time()
        vectors, entry = await self._run_chain("embed", _embed, len(texts))
        return EmbeddingResult(
            vectors=vectors,
            provider=entry.descriptor.id,
            model=entry.capability.embedding_model,
            dimensions=len(vectors[0]) if vectors else 0,
            response_time_ms=int((time.time() - start_time) * 1000),
        )

    # ── Fallback chain ────────────────────────────────────────────────────

    async def _run_chain(
        self,
        operation: str,
        call: Callable[[ProviderCapability], Awaitable[T]],
        request_size: int,
    ) -> Tuple[T, RegisteredProvider]:
        chain = self.provider_chain()
        if not chain:
            logger.error("No enabled AI providers for %s", operation)
            raise AllProvidersUnavailableError(message="No AI providers are enabled")

        attempts: Dict[str, str] = {}
        for entry in chain:
            provider_id = entry.descriptor.id

            try:
                entry.breaker.can_execute()
            except CircuitBreakerOpenError as e:
                attempts[provider_id] = f"circuit open (retry in {e.recovery_time}s)"
                logger.info("Skipping provider '%s' for %s: circuit open", provider_id, operation)
                continue

            try:
                if not await self._probe(entry):
                    attempts[provider_id] = "unavailable"
                    logger.info("Skipping provider '%s' for %s: probe reported unavailable", provider_id, operation)
                    continue

                try:
                    result = await asyncio.wait_for(call(entry.capability), timeout=self.provider_timeout)
                except asyncio.TimeoutError:
                    entry.breaker.record_failure()
                    attempts[provider_id] = f"timed out after {self.provider_timeout}s"
                    logger.warning(
                        "Provider '%s' timed out on %s (size=%d) after %.1fs",
                        provider_id, operation, request_size, self.provider_timeout,
                    )
                    continue
                except Exception as e:
                    entry.breaker.record_failure()
                    reason = e.message if isinstance(e, MindNoteError) else str(e)
                    attempts[provider_id] = f"{type(e).__name__}: {reason}"
                    logger.warning(
                        "Provider '%s' failed on %s (size=%d): %s",
                        provider_id, operation, request_size, reason,
                    )
                    continue

                entry.breaker.record_success()
            finally:
                # No-op unless a HALF_OPEN trial ended without an outcome
                entry.breaker.release_trial()

            if provider_id != chain[0].descriptor.id:
                logger.info("Served %s via fallback provider '%s'", operation, provider_id)
            return result, entry

        logger.error("All providers exhausted for %s (size=%d): %s", operation, request_size, attempts)
        raise AllProvidersUnavailableError(attempts=attempts)

    async def _probe(self, entry: RegisteredProvider) -> bool:
        try:
            return bool(await asyncio.wait_for(entry.capability.probe(), timeout=self.provider_timeout))
        except asyncio.TimeoutError:
            logger.warning("Probe for provider '%s' timed out", entry.descriptor.id)
            return False
        except Exception as e:
            logger.warning("Probe for provider '%s' raised %s: %s", entry.descriptor.id, type(e).__name__, e)
            return False

    def _record_success(self, response: AIResponse) -> None:
        stats = self._stats
        stats.successful_requests += 1
        if response.tokens_used is not None:
            stats.total_tokens += response.tokens_used.total
        if response.cost is not None:
            stats.total_cost += response.cost
        stats.requests_by_provider[response.provider] = stats.requests_by_provider.get(response.provider, 0) + 1
