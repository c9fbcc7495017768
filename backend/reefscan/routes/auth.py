"""
ReefScan Gateway — Device Auth Routes
======================================

What:  Registration and token lifecycle for app installs.

Endpoints:
    POST /v1/auth/register  app secret → token pair (201 new, 200 existing)
    POST /v1/auth/refresh   refresh token → new token pair
    POST /v1/auth/revoke    invalidate every token of the calling device
    GET  /v1/auth/me        the calling device's tier and limits
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.config import settings
from reefscan.database import get_db_session
from reefscan.dependencies import AuthContext, get_current_device, set_rate_limit_headers
from reefscan.exceptions import TokenError, UnauthorizedError
from reefscan.models.device import Device
from reefscan.schemas.auth import (
    DeviceInfo,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPair,
)
from reefscan.schemas.common import ErrorResponse
from reefscan.services.auth_service import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["Auth"])


def _device_info(device: Device) -> DeviceInfo:
    return DeviceInfo(
        device_uuid=device.device_uuid,
        platform=device.platform,
        tier=device.tier,
        daily_limit=settings.daily_limit_for(device.tier),
        subscription_status=device.subscription_status,
        subscription_id=device.subscription_id,
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        200: {"description": "Device already registered", "model": RegisterResponse},
        400: {"description": "Invalid request body", "model": ErrorResponse},
        401: {"description": "Invalid app secret", "model": ErrorResponse},
        403: {"description": "Device blocked", "model": ErrorResponse},
    },
    summary="Register a device install",
)
async def register(
    body: RegisterRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
) -> RegisterResponse:
    """
    Idempotent per device_uuid: registering again returns fresh tokens for
    the existing device with status 200 instead of 201.
    """
    if not auth_service.validate_app_secret(body.platform, body.app_secret):
        logger.warning("Rejected registration with invalid app secret (platform=%s)", body.platform)
        raise UnauthorizedError("Invalid app secret")

    device, is_new = await auth_service.register_device(
        db, body.device_uuid, body.platform, body.app_version
    )
    if device.is_blocked:
        raise TokenError("DEVICE_BLOCKED", device.block_reason or "Device has been blocked")

    if not is_new:
        response.status_code = status.HTTP_200_OK

    return RegisterResponse(**auth_service.issue_tokens(device), device=_device_info(device))


@router.post(
    "/refresh",
    response_model=TokenPair,
    responses={401: {"description": "Expired, invalid or revoked refresh token", "model": ErrorResponse}},
    summary="Exchange a refresh token for a new token pair",
)
async def refresh(
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
) -> TokenPair:
    return TokenPair(**await auth_service.refresh_tokens(db, body.refresh_token))


@router.post(
    "/revoke",
    response_model=MessageResponse,
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
    summary="Revoke all tokens of the calling device",
)
async def revoke(
    auth: AuthContext = Depends(get_current_device),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await auth_service.revoke_tokens(db, auth.device)
    return MessageResponse(message="All tokens for this device have been revoked")


@router.get(
    "/me",
    response_model=DeviceInfo,
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
    summary="Describe the calling device",
)
async def me(
    response: Response,
    auth: AuthContext = Depends(get_current_device),
) -> DeviceInfo:
    await set_rate_limit_headers(response, auth.device)
    return _device_info(auth.device)
