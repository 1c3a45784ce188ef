"""
MindNote Backend — Application Package Initializer
===================================================

What: Marks the `app` directory as a Python package.
Why:  Enables module imports like `from app.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by Alembic, pytest, and uvicorn.

Architecture Note:
    The AI core of MindNote is layered leaf-to-root:

    ┌─────────────────────────────────────┐
    │      Routes + Middleware (HTTP)     │  ← JSON in / JSON out only
    ├─────────────────────────────────────┤
    │   VectorBatchCoordinator            │  ← batch embeddings, index rebuild
    ├─────────────────────────────────────┤
    │   AIDispatcher                      │  ← primary/fallback, batches, admission
    ├─────────────────────────────────────┤
    │   ProviderCapability adapters       │  ← Gemini, OpenAI
    ├─────────────────────────────────────┤
    │   CacheStore / CacheRegistry        │  ← TTL + LRU/FIFO/LFU eviction
    └─────────────────────────────────────┘

    Components are constructed explicitly (see app.main.build_components) and
    handed to the layers that need them. Nothing in the core is a module-level
    singleton, so every piece can be built in isolation inside a unit test.
"""

__version__ = "1.0.0"
