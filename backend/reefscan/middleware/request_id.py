"""
ReefScan Gateway — Request ID Middleware
=========================================

What:  Assigns a correlation id to each request and echoes it in the
       X-Request-ID response header.
Why:   The id appears in every log line and every error envelope, so a user
       report can be matched to server logs. It is also the default
       idempotency key for POST /v1/analyze.
How:   Client-provided X-Request-ID wins; otherwise a short UUID is minted.
       Stored in a ContextVar (for loggers and exception handlers) and on
       request.state (for route handlers).
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

MAX_REQUEST_ID_LENGTH = 128


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Accepts or generates X-Request-ID and returns it on the response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID", "").strip()[:MAX_REQUEST_ID_LENGTH]
        if not rid:
            rid = str(uuid.uuid4())[:8]

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
