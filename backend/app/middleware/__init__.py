# Middleware package init
"""
MindNote Backend — Middleware Package
======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (execution order for a request):
    [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Rate Limit first: abusive clients are refused before any work (only /api/)
    2. Request ID: correlation id for logs and error bodies
    3. Logging: one access line per request, with duration
"""
