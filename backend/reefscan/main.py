"""
ReefScan Gateway — FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes middleware registration, route mounting, error rendering
       and lifecycle management in one place.
How:   create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn (uvicorn reefscan.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware Chain:                                       │
    │  ┌──────────────┐ ┌──────────┐ ┌─────────┐ ┌──────────┐  │
    │  │ IP RateLimit │→│ Req ID   │→│ Logging │→│GZip/CORS │  │
    │  └──────────────┘ └──────────┘ └─────────┘ └──────────┘  │
    │                                                          │
    │  Routes:                                                 │
    │  /v1/auth/*  /v1/analyze  /v1/usage  /v1/account         │
    │  /v1/metrics  /health                                    │
    │                                                          │
    │  Exception Handlers:                                     │
    │  ReefScanError → {"error": {code, message, ...}}         │
    │  RequestValidationError → 400 INVALID_REQUEST            │
    │  Exception → 500 INTERNAL_ERROR                          │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (log, don't exit)
    3. Wait for Redis (tenacity retry); probe PostgreSQL
    4. Log key pool size and fallback state

    Shutdown:
    1. Close the Redis connection pool
    2. Dispose database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from reefscan import __version__
from reefscan.config import settings
from reefscan.database import check_database, dispose_engine
from reefscan.exceptions import DatabaseError, RateLimitExceededError, ReefScanError
from reefscan.middleware.logging import RequestLoggingMiddleware
from reefscan.middleware.rate_limit import RateLimitMiddleware
from reefscan.middleware.request_id import RequestIDMiddleware, request_id_var
from reefscan.routes import account, analyze, auth, health, metrics, usage
from reefscan.services.key_pool import key_pool
from reefscan.store import store

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Called once during startup, before anything else logs. Every module
    uses logging.getLogger(__name__); the access log uses reefscan.access.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),  # Docker captures stdout
        ],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Startup dependency checks
# ══════════════════════════════════════════════════════════════════════════

class DependencyNotReady(Exception):
    pass


@retry(
    retry=retry_if_exception_type(DependencyNotReady),
    stop=stop_after_attempt(settings.retry_max_attempts),
    wait=wait_exponential(multiplier=1, min=settings.retry_min_wait, max=settings.retry_max_wait),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def wait_for_redis() -> None:
    if not await store.ping():
        raise DependencyNotReady("Redis is not reachable")


async def probe_database() -> bool:
    try:
        return await check_database()
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database unreachable at startup: %s", e)
        return False


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("ReefScan Gateway %s starting up (%s)...", __version__, settings.environment)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")
        # Don't exit: /health keeps answering so the problem is visible

    try:
        await wait_for_redis()
        logger.info("Redis connected")
    except DependencyNotReady:
        logger.error("Redis unreachable after %d attempts; admission will fail open", settings.retry_max_attempts)

    if await probe_database():
        logger.info("Database connected")

    logger.info(
        "Gemini key pool: %d key(s), tier %s (%d rpm each)",
        len(key_pool.keys), settings.gemini_key_tier, settings.gemini_key_rpm,
    )
    logger.info(
        "OpenAI fallback: %s",
        "enabled" if settings.enable_openai_fallback and settings.openai_api_key else "disabled",
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("ReefScan Gateway shutting down...")
    await store.close()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict] = None,
    retry_after: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Renders the error envelope shared by every endpoint."""
    body: Dict = {"code": code, "message": message, "request_id": request_id_var.get("")}
    if details:
        body["details"] = details
    out_headers = dict(headers or {})
    if retry_after is not None:
        body["retry_after"] = retry_after
        out_headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=status_code, content={"error": body}, headers=out_headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Handler hierarchy:
        RateLimitExceededError  → 429 + Retry-After + X-RateLimit-*
        DatabaseError           → 500, generic message (details logged only)
        ReefScanError (base)    → exc.status_code with exc.code
        RequestValidationError  → 400 INVALID_REQUEST
        Exception (fallback)    → 500 INTERNAL_ERROR

    Responses never carry exc.context; it may hold SQL, upstream bodies or
    key ids.
    """

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        headers = {"X-RateLimit-Remaining": str(exc.remaining), "X-RateLimit-Window": "day"}
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(exc.reset_at)
        if exc.tier:
            headers["X-RateLimit-Tier"] = exc.tier
        return error_response(
            429, exc.code, exc.message, exc.details, exc.retry_after, headers=headers
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        rid = request_id_var.get("")
        logger.error("[%s] Database error: %s | Context: %s", rid, exc.message, exc.context)
        return error_response(500, "INTERNAL_ERROR", "An internal error occurred. Please try again later.")

    @app.exception_handler(ReefScanError)
    async def handle_reefscan_error(request: Request, exc: ReefScanError):
        rid = request_id_var.get("")
        if exc.status_code >= 500:
            logger.error("[%s] %s: %s | Context: %s", rid, exc.code, exc.message, exc.context)
        else:
            logger.warning("[%s] %s: %s", rid, exc.code, exc.message)
        retry_after = exc.retry_after
        if retry_after is None and exc.status_code == 503:
            retry_after = 30
        return error_response(exc.status_code, exc.code, exc.message, exc.details, retry_after)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        return error_response(
            400,
            "INVALID_REQUEST",
            f"{field}: {message}" if field else message,
            details={"field": field} if field else None,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return error_response(
            500, "INTERNAL_ERROR", "An unexpected error occurred. Please try again or contact support."
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="ReefScan API",
        description=(
            "Gateway for reef-tank photo analysis. Authenticates app installs, "
            "enforces per-device quotas and routes each scan to Gemini or OpenAI."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RateLimit → RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-RateLimit-Window",
            "X-RateLimit-Tier",
        ],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(auth.router)
    app.include_router(analyze.router)
    app.include_router(usage.router)
    app.include_router(account.router)
    app.include_router(metrics.router)
    app.include_router(health.router)

    return app


app = create_app()
