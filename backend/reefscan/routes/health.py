"""
ReefScan Gateway — Health Check Route
======================================

What:  Liveness/readiness probe for the load balancer.
How:   Pings Redis, runs SELECT 1 against PostgreSQL and reads circuit state.

Status levels:
    healthy:   Redis and PostgreSQL reachable, primary circuit not open  (200)
    degraded:  PostgreSQL down or the Gemini circuit open               (200)
    unhealthy: Redis unreachable; admission control cannot run          (503)
"""

import logging
import time

from fastapi import APIRouter, Response
from sqlalchemy.exc import SQLAlchemyError

from reefscan import __version__
from reefscan.database import check_database
from reefscan.exceptions import StoreUnavailableError
from reefscan.schemas.common import HealthResponse
from reefscan.services.circuit_breaker import OPEN, circuit_breaker
from reefscan.store import store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Redis unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(response: Response) -> HealthResponse:
    overall = "healthy"

    redis_status = "connected" if await store.ping() else "disconnected"

    db_status = "connected"
    try:
        await check_database()
    except (SQLAlchemyError, OSError) as e:
        db_status = "disconnected"
        logger.warning("Health check: database unreachable: %s", str(e))

    circuits = {}
    if redis_status == "connected":
        try:
            status = await circuit_breaker.get_all_status()
            circuits = {name: info["state"] for name, info in status.items()}
        except StoreUnavailableError:
            redis_status = "disconnected"

    if db_status != "connected" or circuits.get("gemini") == OPEN:
        overall = "degraded"
    if redis_status != "connected":
        overall = "unhealthy"
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        redis=redis_status,
        database=db_status,
        circuits=circuits,
        uptime_seconds=round(time.time() - _start_time, 2),
    )


@router.get("/", include_in_schema=False)
async def root() -> dict:
    return {"service": "ReefScan API", "version": __version__, "docs": "/docs", "health": "/health"}
