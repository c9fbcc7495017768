"""
ReefScan Gateway — Analysis Routes
===================================

What:  POST /v1/analyze runs one reef-tank photo through the orchestrator;
       GET /v1/analyze/status reports which providers can take traffic.

Request Flow:
    Client → POST /v1/analyze (JSON, base64 image)
      → [Bearer auth] → AnalysisService.analyze()
          → idempotency → admission → cache → Gemini → OpenAI
      → 200 ScanResult + X-RateLimit-* headers

Idempotency:
    `request_id` in the body, or the X-Request-ID header when absent. A
    replay within 24h returns the stored response without consuming quota.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.database import get_db_session
from reefscan.dependencies import AuthContext, get_current_device, set_rate_limit_headers
from reefscan.schemas.analysis import AnalyzeRequest, ProviderStatusResponse, ScanResult
from reefscan.schemas.common import ErrorResponse
from reefscan.services.analysis_service import analysis_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/analyze", tags=["Analysis"])


@router.post(
    "",
    response_model=ScanResult,
    responses={
        200: {"description": "Analysis result", "model": ScanResult},
        400: {"description": "Invalid image or options", "model": ErrorResponse},
        401: {"description": "Not authenticated", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        502: {"description": "Provider returned an unusable answer", "model": ErrorResponse},
        503: {"description": "No provider capacity", "model": ErrorResponse},
    },
    summary="Analyze a reef tank photo",
)
async def analyze(
    body: AnalyzeRequest,
    request: Request,
    response: Response,
    auth: AuthContext = Depends(get_current_device),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    request_id = body.request_id or request.state.request_id
    outcome = await analysis_service.analyze(db, auth.device, body, request_id)

    if outcome.rate_limit is not None:
        for name, value in outcome.rate_limit.headers().items():
            response.headers[name] = value
    else:
        # Replays and fail-open admissions carry the current standing instead
        await set_rate_limit_headers(response, auth.device)
    response.headers["X-Analysis-Source"] = outcome.source

    return outcome.response


@router.get(
    "/status",
    response_model=ProviderStatusResponse,
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
    summary="Provider availability",
)
async def provider_status(
    auth: AuthContext = Depends(get_current_device),
) -> dict:
    return await analysis_service.get_provider_status()
