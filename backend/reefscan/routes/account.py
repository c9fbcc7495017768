"""
ReefScan Gateway — Account Data Routes
=======================================

What:  Data-access and erasure requests for the calling device.
    GET    /v1/account/export  device record, daily usage and request history
    DELETE /v1/account         deletes the device and all its rows

Cached analysis results are keyed by image hash, not by device, and expire
on their own TTL; they are not part of either operation.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.database import get_db_session
from reefscan.dependencies import AuthContext, get_current_device
from reefscan.schemas.auth import MessageResponse
from reefscan.schemas.common import ErrorResponse
from reefscan.schemas.usage import AccountExport
from reefscan.services.auth_service import auth_service
from reefscan.services.usage_service import usage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/account", tags=["Account"])


@router.get(
    "/export",
    response_model=AccountExport,
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
    summary="Export everything stored about this device",
)
async def export_account(
    auth: AuthContext = Depends(get_current_device),
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    return await usage_service.export_device_data(db, auth.device)


@router.delete(
    "",
    response_model=MessageResponse,
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
    summary="Erase this device and its usage history",
)
async def delete_account(
    auth: AuthContext = Depends(get_current_device),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await auth_service.delete_device(db, auth.device.device_uuid)
    return MessageResponse(message="Device and associated data deleted")
