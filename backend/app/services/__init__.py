# Services package init
"""
MindNote Backend — Services Layer
==================================

What:  The AI core: provider adapters, the dispatcher, embedding persistence,
       and the vector batch coordinator.
Why:   Routes handle HTTP; services handle provider selection, batching,
       and idempotent embedding. Services are unit-tested without HTTP.

Service Inventory:
    - ProviderCapability (abstract): probe / generate / embed contract
    - GeminiProvider, OpenAIProvider: concrete adapters with tenacity retries
    - CircuitBreaker: per-provider failure isolation
    - AIDispatcher: primary/fallback routing, batches, admission control
    - EmbeddingRepository / SQLEmbeddingRepository: persistence collaborator
    - VectorBatchCoordinator + SimilarityIndex: batch embeddings, index rebuild,
      similarity queries

Dependency direction (leaf to root):
    cache → provider adapters → dispatcher → vector coordinator
"""
