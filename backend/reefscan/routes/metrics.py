"""
ReefScan Gateway — Metrics Route
=================================

What:  GET /v1/metrics, the operator dashboard (traffic, errors, devices,
       provider spend, key pool and circuits). Unauthenticated; expose it
       only on the internal network.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.database import get_db_session
from reefscan.schemas.usage import MetricsResponse
from reefscan.services.metrics_service import metrics_service

router = APIRouter(prefix="/v1", tags=["Metrics"])


@router.get("/metrics", response_model=MetricsResponse, summary="Operational dashboard")
async def get_metrics(db: AsyncSession = Depends(get_db_session)) -> dict:
    return await metrics_service.get_dashboard(db)
