# Routes package init
"""
MindNote Backend — API Routes Package
======================================

What:  HTTP route handlers over the AI core.

Route Inventory:
    - ai.py:          POST /api/ai/generate, POST /api/ai/batch,
                      GET  /api/ai/providers, GET /api/ai/stats
    - embeddings.py:  POST /api/embeddings/batch, /rebuild, /similar
    - cache.py:       GET  /api/cache/stats, DELETE /api/cache/{name},
                      POST /api/cache/cleanup
    - health.py:      GET  /health

Design Principle:
    Routes are THIN. They read components from app.state (deps.py), call one
    service method, and return its result. Errors propagate to the global
    exception handlers in app.main.
"""
