"""
MindNote Backend — AI Request/Response Schemas
===============================================

What:  Pydantic models for the typed contract of the AI core.
Why:   The dispatcher and coordinator speak these types; the HTTP layer only
       (de)serializes them. Validation happens once, at the boundary.
How:   FastAPI validates request bodies against these models and serializes
       responses from them; services construct them directly.

Design Decision:
    Batch limits (max batch size, max concurrency) are NOT encoded as schema
    constraints. They are admission-control policy owned by the dispatcher and
    configurable at runtime; a schema limit would turn a policy rejection into
    a generic 422 and hide the configured limit from the client.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ══════════════════════════════════════════════════════════════════════════
# Provider Registry
# ══════════════════════════════════════════════════════════════════════════


class ProviderDescriptor(BaseModel):
    """
    What:  Static description of one registered AI provider.
    Who:   Loaded from settings.providers; held by the dispatcher registry.

    Ordering:
        Lower priority is tried first. A provider with fallback_enabled=False
        is only ever used as the primary; it never joins the fallback chain.
    """
    id: str = Field(min_length=1, description="Registry key, e.g. 'gemini' or 'openai'")
    priority: int = Field(default=100, description="Lower values are tried first")
    enabled: bool = Field(default=True)
    fallback_enabled: bool = Field(default=True)


class ProviderStatus(BaseModel):
    """Point-in-time view of a registered provider for GET /api/ai/providers."""
    id: str
    priority: int
    enabled: bool
    fallback_enabled: bool
    is_primary: bool
    circuit_state: str = Field(description="closed, open, or half_open")
    responses: int = Field(default=0, description="Responses produced by this provider")


# ══════════════════════════════════════════════════════════════════════════
# Single Requests
# ══════════════════════════════════════════════════════════════════════════


class AIRequest(BaseModel):
    """
    What:  One generation request (summarize, classify, tag...).
    Who:   Built by route handlers or services; consumed by AIDispatcher.
    """
    content: str = Field(min_length=1, description="Text to analyze")
    context: Optional[str] = Field(default=None, description="Extra instructions or note title")
    max_length: Optional[int] = Field(default=None, ge=1, description="Upper bound on output tokens")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    include_metadata: bool = Field(default=False, description="Ask for category/tags/summary")

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class TokenUsage(BaseModel):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class AIResponse(BaseModel):
    """
    What:  Result of a generation request.

    `provider` always names the provider that actually produced the response,
    which differs from the configured primary whenever a fallback was used.
    """
    content: str
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    summary: Optional[str] = None
    provider: str
    model: str
    tokens_used: Optional[TokenUsage] = None
    cost: Optional[float] = Field(default=None, ge=0)
    response_time_ms: int = Field(default=0, ge=0)
    cached: bool = Field(default=False, description="Served from the ai_results cache")


# ══════════════════════════════════════════════════════════════════════════
# Batches
# ══════════════════════════════════════════════════════════════════════════


class BatchStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class BatchJob(BaseModel):
    """
    What:  Ordered list of requests executed as one unit.
    How:   parallel → windows of max_concurrency, paced by the inter-batch delay;
           sequential → strictly one request at a time.
    """
    requests: List[AIRequest] = Field(description="Requests in result order")
    strategy: BatchStrategy = Field(default=BatchStrategy.PARALLEL)
    max_concurrency: int = Field(default=5, ge=1)


class BatchItemResult(BaseModel):
    """One positional slot of a batch result; exactly one of response/error is set."""
    index: int = Field(ge=0, description="Position of the request in the batch")
    success: bool
    response: Optional[AIResponse] = None
    error: Optional[str] = None
    error_type: Optional[str] = Field(default=None, description="Exception class name on failure")


class BatchResponse(BaseModel):
    results: List[BatchItemResult]
    total: int
    succeeded: int
    failed: int


# ══════════════════════════════════════════════════════════════════════════
# Embeddings
# ══════════════════════════════════════════════════════════════════════════


class EmbeddingResult(BaseModel):
    """Vectors produced by one dispatcher embed() call, aligned with the input texts."""
    vectors: List[List[float]]
    provider: str
    model: str
    dimensions: int = Field(ge=0)
    response_time_ms: int = Field(default=0, ge=0)


class EmbeddingBatchRequest(BaseModel):
    entity_ids: List[str] = Field(min_length=1, description="Note ids to embed")


class FailedEmbedding(BaseModel):
    id: str
    error: str


class BatchEmbeddingResult(BaseModel):
    """
    What:  Outcome of VectorBatchCoordinator.generate_batch_embeddings.

    successful: embedded and persisted during this call
    failed:     not embedded (provider or persistence failure); retryable later
    skipped:    already had a stored embedding (or were being embedded by
                another in-flight call), so no provider call was made
    """
    successful: List[str] = Field(default_factory=list)
    failed: List[FailedEmbedding] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class SimilarityQuery(BaseModel):
    """Either an existing entity id or free text; text is embedded on the fly."""
    entity_id: Optional[str] = None
    text: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=100)
    threshold: float = Field(default=0.7, ge=-1.0, le=1.0)


class SimilarityMatch(BaseModel):
    entity_id: str
    similarity: float


class IndexRebuildResult(BaseModel):
    indexed: int = Field(ge=0)
    skipped_invalid: int = Field(default=0, ge=0)
    dimensions: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)


class DispatcherStats(BaseModel):
    """Simple token/response counters; no cost accounting beyond sums."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    requests_by_provider: Dict[str, int] = Field(default_factory=dict)
