"""
ReefScan Gateway — Request Dependencies
========================================

What:  FastAPI dependency that turns an `Authorization: Bearer <jwt>` header
       into the authenticated device, and the helper that stamps a device's
       daily standing onto responses as X-RateLimit-* headers.

Flow:
  1. Extract the Bearer token from the Authorization header
  2. Verify signature, issuer, expiry and type (access)
  3. Load the device; reject blocked devices and revoked token versions
  4. Return AuthContext (device + decoded claims)

Raw tokens are never logged.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Response
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.database import get_db_session
from reefscan.exceptions import StoreUnavailableError, UnauthorizedError
from reefscan.models.device import Device
from reefscan.services.auth_service import auth_service
from reefscan.services.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """
    Attributes:
        device: The registered device the access token was issued to.
        claims: Decoded access-token claims (tier, daily_limit, ver, ...).
    """

    device: Device
    claims: Dict[str, Any]


async def get_current_device(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    db: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    """
    Raises:
        UnauthorizedError: header missing or not a Bearer credential
        TokenError:        expired, invalid or revoked token; blocked device
    """
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")

    parts = authorization.split(" ", maxsplit=1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise UnauthorizedError("Authorization header must be 'Bearer <token>'")

    device, claims = await auth_service.authenticate(db, parts[1].strip())
    return AuthContext(device=device, claims=claims)


async def set_rate_limit_headers(response: Response, device: Device) -> None:
    """
    Attach the device's daily standing as X-RateLimit-* headers on routes
    that do not pass through admission. Headers are omitted when the store
    is down; the response itself is unaffected.
    """
    try:
        info = await rate_limiter.get_rate_limit_info(device.device_uuid, device.tier)
    except StoreUnavailableError as e:
        logger.warning("Rate-limit headers omitted, store unavailable: %s", e.context)
        return
    for name, value in info.headers().items():
        response.headers[name] = value
