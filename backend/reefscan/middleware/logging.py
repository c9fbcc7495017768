"""
ReefScan Gateway — Request Logging Middleware
==============================================

What:  One access-log line per request, tagged with where an analysis was
       served from and how much daily quota the device has left.
Why:   Analysis latency is dominated by the provider call; the access line
       is where slow or failing scans first show up, and the source tag
       shows at a glance how much traffic the cache and fallback absorb.

Line format:
    POST /v1/analyze 200 2345.6ms [a1b2c3d4] ip=203.0.113.9 source=gemini quota=2

Never logged: request bodies (images), Authorization headers, tokens.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from reefscan.middleware.rate_limit import client_ip_for
from reefscan.middleware.request_id import request_id_var

logger = logging.getLogger("reefscan.access")

QUIET_PATHS = frozenset({"/health", "/"})


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        # Probed every few seconds by the load balancer
        if path in QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        client_ip = client_ip_for(request)

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s raised after %.1fms [%s] ip=%s",
                request.method, path, (time.perf_counter() - started) * 1000,
                request_id_var.get(""), client_ip,
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        source = response.headers.get("X-Analysis-Source", "-")
        remaining = response.headers.get("X-RateLimit-Remaining", "-")

        logger.log(
            _level_for(response.status_code),
            "%s %s %d %.1fms [%s] ip=%s source=%s quota=%s",
            request.method, path, response.status_code, elapsed_ms,
            request_id_var.get(""), client_ip, source, remaining,
        )
        return response
