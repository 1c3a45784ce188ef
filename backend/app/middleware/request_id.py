"""
MindNote Backend — Request ID Middleware
=========================================

What:  Gives every request a short correlation id and echoes it back.
Why:   A batch request fans out into many provider calls; one id ties every
       log line of that fan-out (and the error body the client sees) together.
How:   Reuses the client's X-Request-ID header when present, else generates
       an 8-character id. Stored in a ContextVar (read by loggers and the
       exception handlers) and on request.state (read by route handlers).
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDFilter(logging.Filter):
    """Adds `request_id` to every log record so formats can include it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get("") or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())[:8]
        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
