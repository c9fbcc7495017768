"""
ReefScan Gateway — Custom Exception Hierarchy
==============================================

What:  Defines the gateway's error taxonomy as exception classes.
Why:   Mobile clients branch on a stable machine-readable `code`; carrying the
       code and HTTP status on the exception keeps that mapping in one place.
How:   Each exception carries a user-facing message, a public `details` dict
       (returned to the client), and a private `context` dict (logged only).
       Global exception handlers (registered in main.py) render the envelope:

           {"error": {"code", "message", "details", "retry_after", "request_id"}}

Exception Hierarchy:
    ReefScanError (base)                       → 500 INTERNAL_ERROR
    ├── ValidationError                        → 400 INVALID_REQUEST
    ├── UnauthorizedError                      → 401 UNAUTHORIZED
    ├── TokenError                             → 401 TOKEN_EXPIRED / INVALID_TOKEN /
    │                                                  TOKEN_REVOKED, 403 DEVICE_BLOCKED
    ├── NotFoundError                          → 404 NOT_FOUND
    ├── RateLimitExceededError                 → 429 RATE_LIMIT_EXCEEDED
    ├── ProviderError                          → raised by provider adapters, never
    │                                            rendered directly (orchestrator maps it)
    ├── AnalysisFailedError                    → 503 NO_CAPACITY / PROVIDER_UNAVAILABLE /
    │                                                  COST_LIMIT, 502 otherwise
    ├── DatabaseError                          → 500 INTERNAL_ERROR
    └── StoreUnavailableError                  → 503 STORE_UNAVAILABLE
"""

from typing import Any, Dict, Optional


class ReefScanError(Exception):
    """
    Base exception for all ReefScan application errors.

    Attributes:
        message:     User-facing error description (safe to return)
        details:     Structured data returned to the client
        context:     Debug info (logged but NOT returned to client)
        retry_after: Seconds the client should wait, when meaningful
    """

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        self.message = message
        self.details = details or {}
        self.context = context or {}
        self.retry_after = retry_after
        super().__init__(self.message)


class ValidationError(ReefScanError):
    """
    Raised when client input fails a business-rule check that the request
    schema could not express (e.g. base64 that does not decode).
    """

    code = "INVALID_REQUEST"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        details = {"field": field} if field else {}
        super().__init__(message=message, details=details, context=context)
        self.field = field


class UnauthorizedError(ReefScanError):
    """Missing/malformed credentials or a rejected app secret."""

    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Authentication required", context=None):
        super().__init__(message=message, context=context)


class TokenError(ReefScanError):
    """
    Raised when a presented JWT cannot be honoured.

    The code distinguishes the cases the client handles differently:
    TOKEN_EXPIRED → refresh, TOKEN_REVOKED / INVALID_TOKEN → re-register,
    DEVICE_BLOCKED → show a support message.
    """

    status_code = 401

    MESSAGES = {
        "TOKEN_EXPIRED": "Token has expired",
        "INVALID_TOKEN": "Token is invalid",
        "TOKEN_REVOKED": "Token has been revoked",
        "DEVICE_BLOCKED": "This device has been blocked",
    }

    def __init__(self, code: str, message: Optional[str] = None, context=None):
        super().__init__(message=message or self.MESSAGES.get(code, "Token error"), context=context)
        self.code = code
        self.status_code = 403 if code == "DEVICE_BLOCKED" else 401


class NotFoundError(ReefScanError):
    """Raised when a requested resource does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class RateLimitExceededError(ReefScanError):
    """
    Raised when a device, the whole fleet, or an IP exceeds its quota.

    Carries the rate-limit snapshot so the handler can emit X-RateLimit-*
    headers alongside Retry-After.
    """

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(
        self,
        retry_after: int = 60,
        message: Optional[str] = None,
        limit: Optional[int] = None,
        remaining: int = 0,
        reset_at: Optional[int] = None,
        tier: Optional[str] = None,
        upgrade_url: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        details: Dict[str, Any] = {"remaining": remaining}
        if limit is not None:
            details["limit"] = limit
        if reset_at is not None:
            details["reset_at"] = reset_at
        if tier:
            details["tier"] = tier
        if upgrade_url:
            details["upgrade_url"] = upgrade_url
        super().__init__(
            message=message or f"Rate limit exceeded. Please wait {retry_after} seconds.",
            details=details,
            context=context,
            retry_after=max(1, int(retry_after)),
        )
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        self.tier = tier


class ProviderError(ReefScanError):
    """
    Raised by a provider adapter when a single upstream call fails.

    What:    Normalizes SDK-specific failures into one shape.
    Fields:  code (RATE_LIMITED, API_ERROR, INVALID_RESPONSE, PARSE_ERROR,
             TIMEOUT, DISABLED, NOT_CONFIGURED, COST_LIMIT, STORE_UNAVAILABLE),
             provider name and upstream HTTP status when one exists. The key
             pool uses the status to decide on a cooldown.
    """

    status_code = 502

    def __init__(
        self,
        code: str,
        message: str,
        provider: str = "",
        upstream_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx.update({"provider": provider, "upstream_status": upstream_status})
        super().__init__(message=message, context=ctx)
        self.code = code
        self.provider = provider
        self.upstream_status = upstream_status


class AnalysisFailedError(ReefScanError):
    """
    Raised by the orchestrator once every route to a result is exhausted.

    HTTP:  503 when the gateway itself declined (no key capacity, circuits
           open, fallback budget spent); 502 when an upstream answered badly.
    """

    UNAVAILABLE_CODES = {"NO_CAPACITY", "PROVIDER_UNAVAILABLE", "COST_LIMIT"}

    def __init__(
        self,
        code: str,
        message: str,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context, retry_after=retry_after)
        self.code = code
        self.status_code = 503 if code in self.UNAVAILABLE_CODES else 502


class DatabaseError(ReefScanError):
    """
    Raised when database operations fail unexpectedly.

    The client always receives a generic message; the SQL error is logged.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StoreUnavailableError(ReefScanError):
    """Raised when the shared Redis store cannot be reached."""

    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(
        self,
        message: str = "Coordination store is unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context, retry_after=5)
