"""
ReefScan Gateway — Shared Response Schemas
===========================================

What:  The error envelope and the health-check response.
Why:   Every endpoint fails with the same envelope, so clients parse errors
       with one code path:

           {
               "error": {
                   "code": "RATE_LIMIT_EXCEEDED",
                   "message": "Daily limit reached",
                   "details": {"limit": 3, "remaining": 0, "reset_at": 1760054400},
                   "retry_after": 43200,
                   "request_id": "a1b2c3d4"
               }
           }
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error context")
    retry_after: Optional[int] = Field(default=None, description="Seconds before retrying")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class ErrorResponse(BaseModel):
    error: ErrorBody


class HealthResponse(BaseModel):
    """
    What:  Health status of the gateway and its dependencies.
    Who:   Polled by the load balancer and container orchestrator.

    Status values:
        healthy:   Redis and PostgreSQL reachable, primary circuit not open
        degraded:  Serving, but the primary circuit is open or PostgreSQL is down
        unhealthy: Redis unreachable; admission control cannot run
    """
    status: str = Field(description="healthy, degraded, or unhealthy")
    version: str = Field(description="Application version")
    redis: str = Field(description="Redis status: connected or disconnected")
    database: str = Field(description="Database status: connected or disconnected")
    circuits: Dict[str, str] = Field(default_factory=dict, description="Circuit state per provider")
    uptime_seconds: float = Field(description="Seconds since server start")
