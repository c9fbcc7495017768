"""
ReefScan Gateway — IP Rate Limiting Middleware
===============================================

What:  Hourly request cap per client IP, applied before authentication.
Why:   Device quotas only protect authenticated routes; registration and
       refresh are reachable by anyone and need a coarse flood guard.
How:   Fixed hourly window counter in Redis (`ratelimit:ip:{ip}:{hour}`),
       shared by every gateway instance. See RateLimiter.check_ip().

Failure mode:
    If Redis is unreachable the request is let through and the outage is
    logged; device-level admission in the orchestrator applies the same rule.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from reefscan.exceptions import StoreUnavailableError
from reefscan.middleware.request_id import request_id_var
from reefscan.services.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)


def client_ip_for(request: Request) -> str:
    """First X-Forwarded-For hop when behind the load balancer, else the peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return getattr(request.client, "host", "unknown") if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects with 429 and Retry-After once an IP spends its hourly budget."""

    EXCLUDED_PATHS = {"/", "/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.EXCLUDED_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        client_ip = client_ip_for(request)
        try:
            result = await rate_limiter.check_ip(client_ip)
        except StoreUnavailableError as e:
            logger.error("IP rate limit skipped, store unavailable: %s", e.context)
            return await call_next(request)

        if not result.allowed:
            retry_after = result.retry_after
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": "RATE_LIMIT_EXCEEDED",
                        "message": f"Too many requests. Please wait {retry_after} seconds before retrying.",
                        "details": {
                            "limit": result.limit,
                            "remaining": 0,
                            "reset_at": result.reset_at,
                        },
                        "retry_after": retry_after,
                        "request_id": request.headers.get("X-Request-ID") or request_id_var.get(""),
                    }
                },
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)
