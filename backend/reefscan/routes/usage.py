"""
ReefScan Gateway — Usage Routes
================================

What:  Quota standing and historical usage for the calling device.
       GET /v1/usage reads the same Redis counter admission uses, so the
       number shown in the app matches what the next scan will be checked
       against. GET /v1/usage/stats reads the daily_usage rollup.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan import clock
from reefscan.database import get_db_session
from reefscan.dependencies import AuthContext, get_current_device, set_rate_limit_headers
from reefscan.exceptions import ValidationError
from reefscan.schemas.common import ErrorResponse
from reefscan.schemas.usage import UsageResponse, UsageStatsResponse
from reefscan.services.usage_service import usage_service

router = APIRouter(prefix="/v1/usage", tags=["Usage"])

MAX_STATS_RANGE_DAYS = 366


@router.get(
    "",
    response_model=UsageResponse,
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
    summary="Today's quota standing",
)
async def get_usage(
    response: Response,
    auth: AuthContext = Depends(get_current_device),
) -> dict:
    device = auth.device
    await set_rate_limit_headers(response, device)
    return await usage_service.get_usage(device.device_uuid, device.tier)


@router.get(
    "/stats",
    response_model=UsageStatsResponse,
    responses={
        400: {"description": "Invalid date range", "model": ErrorResponse},
        401: {"description": "Not authenticated", "model": ErrorResponse},
    },
    summary="Usage history over a date range",
)
async def get_usage_stats(
    response: Response,
    start_date: Optional[date] = Query(default=None, description="Inclusive start (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(default=None, description="Inclusive end (YYYY-MM-DD), default today"),
    auth: AuthContext = Depends(get_current_device),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    """Defaults to the last 30 days."""
    if start_date is not None:
        end = end_date or clock.utc_today()
        if start_date > end:
            raise ValidationError("start_date must not be after end_date", field="start_date")
        if (end - start_date).days >= MAX_STATS_RANGE_DAYS:
            raise ValidationError("Date range may span at most one year", field="start_date")

    await set_rate_limit_headers(response, auth.device)

    return await usage_service.get_usage_stats(db, auth.device.id, start_date, end_date)
