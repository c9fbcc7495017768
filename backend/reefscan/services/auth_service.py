"""
ReefScan Gateway — Device Authentication
=========================================

What:  Device registration, JWT issuance/verification and the device
       lifecycle operations that invalidate tokens.
Why:   There are no user accounts. An install proves it is a genuine app
       build with a per-platform app secret, then authenticates every call
       with a short-lived access token.
How:   PyJWT HS256 tokens with issuer `reefscan-api`.

Token design:
    access   (1h)   sub=device_uuid, type=access, platform, tier, daily_limit,
                    subscription_id, ver=token_version
    refresh  (30d)  sub=device_uuid, type=refresh, version=token_version

    Revocation is a counter, not a blacklist: bumping devices.token_version
    makes every token minted with the old value fail with TOKEN_REVOKED.
    Tier changes and blocking bump it too, so no stale tier survives in a
    token beyond the next refresh.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.config import settings
from reefscan.exceptions import DatabaseError, NotFoundError, ReefScanError, TokenError
from reefscan.models.device import Device
from reefscan.models.usage import DailyUsage, RequestLog

logger = logging.getLogger(__name__)

DEVELOPMENT_JWT_SECRET = "reefscan-development-only-secret"


class AuthService:
    """Stateless; every database call receives the request's session."""

    # ── Token primitives ──────────────────────────────────────────────────

    def _secret(self) -> str:
        if settings.jwt_secret:
            return settings.jwt_secret
        if settings.is_development:
            return DEVELOPMENT_JWT_SECRET
        raise ReefScanError("Token signing is not configured", context={"missing": "JWT_SECRET"})

    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {**claims, "iss": settings.jwt_issuer, "iat": now, "exp": now + ttl}
        return jwt.encode(payload, self._secret(), algorithm=settings.jwt_algorithm)

    def create_access_token(self, device: Device) -> str:
        return self._encode(
            {
                "sub": device.device_uuid,
                "type": "access",
                "platform": device.platform,
                "tier": device.tier,
                "daily_limit": settings.daily_limit_for(device.tier),
                "subscription_id": device.subscription_id,
                "ver": device.token_version,
            },
            timedelta(seconds=settings.jwt_access_ttl_seconds),
        )

    def create_refresh_token(self, device: Device) -> str:
        return self._encode(
            {"sub": device.device_uuid, "type": "refresh", "version": device.token_version},
            timedelta(days=settings.jwt_refresh_ttl_days),
        )

    def issue_tokens(self, device: Device) -> Dict[str, Any]:
        return {
            "access_token": self.create_access_token(device),
            "refresh_token": self.create_refresh_token(device),
            "token_type": "Bearer",
            "expires_in": settings.jwt_access_ttl_seconds,
        }

    def decode_token(self, token: str, expected_type: str) -> Dict[str, Any]:
        """
        Raises:
            TokenError TOKEN_EXPIRED for an expired token, INVALID_TOKEN for
            a bad signature, wrong issuer, malformed token or wrong type.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret(),
                algorithms=[settings.jwt_algorithm],
                issuer=settings.jwt_issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenError("TOKEN_EXPIRED", f"{expected_type.capitalize()} token has expired")
        except jwt.InvalidTokenError:
            raise TokenError("INVALID_TOKEN", f"Invalid {expected_type} token")

        if claims.get("type") != expected_type:
            raise TokenError("INVALID_TOKEN", "Invalid token type")
        return claims

    # ── Device lookup ─────────────────────────────────────────────────────

    async def find_device(self, db: AsyncSession, device_uuid: str) -> Optional[Device]:
        try:
            result = await db.execute(select(Device).where(Device.device_uuid == device_uuid))
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "find_device", "error": str(e)})
        return result.scalar_one_or_none()

    async def _require_device(self, db: AsyncSession, device_uuid: str) -> Device:
        device = await self.find_device(db, device_uuid)
        if device is None:
            raise NotFoundError(resource="device", resource_id=device_uuid)
        return device

    async def authenticate(self, db: AsyncSession, token: str) -> Tuple[Device, Dict[str, Any]]:
        """Verifies an access token and loads its device."""
        claims = self.decode_token(token, "access")
        device = await self.find_device(db, claims["sub"])
        if device is None:
            raise TokenError("INVALID_TOKEN", "Device not found")
        if device.is_blocked:
            raise TokenError("DEVICE_BLOCKED", device.block_reason or "Device has been blocked")
        if claims.get("ver") != device.token_version:
            raise TokenError("TOKEN_REVOKED")
        return device, claims

    # ── Registration ──────────────────────────────────────────────────────

    def validate_app_secret(self, platform: str, app_secret: str) -> bool:
        """
        Accepts any configured secret for the platform (several may be live
        during a rotation). With none configured, only development accepts.
        """
        valid = settings.app_secrets_for(platform)
        if not valid:
            if settings.is_development:
                logger.warning("No app secrets configured for %s; allowing in development", platform)
                return True
            return False
        return any(secrets.compare_digest(app_secret, s) for s in valid)

    async def register_device(
        self, db: AsyncSession, device_uuid: str, platform: str, app_version: str
    ) -> Tuple[Device, bool]:
        """Returns (device, is_new); re-registration refreshes last_seen_at."""
        device = await self.find_device(db, device_uuid)
        now = datetime.now(timezone.utc)

        if device is not None:
            device.last_seen_at = now
            device.app_version = app_version
            await db.flush()
            logger.info("Device re-registered: %s (%s)", device_uuid, platform)
            return device, False

        device = Device(
            device_uuid=device_uuid,
            platform=platform,
            app_version=app_version,
            tier="free",
            token_version=1,
            is_blocked=False,
            extra_metadata={},
            created_at=now,
            last_seen_at=now,
        )
        db.add(device)
        try:
            await db.flush()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same install
            await db.rollback()
            existing = await self._require_device(db, device_uuid)
            return existing, False

        logger.info("New device registered: %s (%s)", device_uuid, platform)
        return device, True

    # ── Token lifecycle ───────────────────────────────────────────────────

    async def refresh_tokens(self, db: AsyncSession, refresh_token: str) -> Dict[str, Any]:
        claims = self.decode_token(refresh_token, "refresh")
        device = await self.find_device(db, claims["sub"])
        if device is None:
            raise TokenError("INVALID_TOKEN", "Device not found")
        if device.is_blocked:
            raise TokenError("DEVICE_BLOCKED", device.block_reason or "Device has been blocked")
        if claims.get("version") != device.token_version:
            raise TokenError("TOKEN_REVOKED")
        device.last_seen_at = datetime.now(timezone.utc)
        await db.flush()
        return self.issue_tokens(device)

    async def revoke_tokens(self, db: AsyncSession, device: Device) -> int:
        """Invalidates every outstanding token of the device."""
        device.token_version += 1
        await db.flush()
        logger.info("Tokens revoked for device %s (version now %d)", device.device_uuid, device.token_version)
        return device.token_version

    async def update_device_tier(
        self,
        db: AsyncSession,
        device_uuid: str,
        tier: str,
        subscription_id: Optional[str] = None,
    ) -> Device:
        if tier not in ("free", "premium"):
            raise ValueError(f"Unknown tier '{tier}'")
        device = await self._require_device(db, device_uuid)
        device.tier = tier
        device.subscription_id = subscription_id
        device.token_version += 1
        await db.flush()
        logger.info("Device %s moved to tier %s", device_uuid, tier)
        return device

    async def block_device(self, db: AsyncSession, device_uuid: str, reason: str) -> Device:
        device = await self._require_device(db, device_uuid)
        device.is_blocked = True
        device.block_reason = reason
        device.token_version += 1
        await db.flush()
        logger.warning("Device blocked: %s (%s)", device_uuid, reason)
        return device

    async def delete_device(self, db: AsyncSession, device_uuid: str) -> bool:
        """Erases the device and everything recorded about it."""
        device = await self.find_device(db, device_uuid)
        if device is None:
            return False
        try:
            await db.execute(delete(RequestLog).where(RequestLog.device_id == device.id))
            await db.execute(delete(DailyUsage).where(DailyUsage.device_id == device.id))
            await db.delete(device)
            await db.flush()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "delete_device", "error": str(e)})
        logger.info("Device erased on request: %s", device_uuid)
        return True


auth_service = AuthService()
