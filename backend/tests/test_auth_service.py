"""
ReefScan Gateway — Device Auth Tests
=====================================

What we test:
    ✅ Access/refresh token claims, issuer and lifetime
    ✅ Expired, forged, wrong-issuer and wrong-type tokens
    ✅ token_version revocation; blocked devices get 403
    ✅ App secret rotation (several secrets live per platform)
    ✅ Registration: new install, re-registration, concurrent-insert race
    ✅ Tier change, blocking and erasure
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import IntegrityError

from reefscan.config import settings
from reefscan.exceptions import NotFoundError, ReefScanError, TokenError
from reefscan.services.auth_service import AuthService


@pytest.fixture
def auth():
    return AuthService()


def _result(device):
    result = MagicMock()
    result.scalar_one_or_none.return_value = device
    return result


def _decode(token: str) -> dict:
    return jwt.decode(
        token, settings.jwt_secret, algorithms=["HS256"], issuer="reefscan-api"
    )


class TestTokens:

    def test_access_token_claims(self, auth, make_device):
        device = make_device(device_uuid="d1", tier="premium", token_version=4)
        claims = _decode(auth.create_access_token(device))

        assert claims["sub"] == "d1"
        assert claims["type"] == "access"
        assert claims["tier"] == "premium"
        assert claims["platform"] == "ios"
        assert claims["daily_limit"] == settings.rate_limit_premium_daily
        assert claims["ver"] == 4
        assert claims["exp"] - claims["iat"] == settings.jwt_access_ttl_seconds

    def test_refresh_token_claims(self, auth, make_device):
        claims = _decode(auth.create_refresh_token(make_device(device_uuid="d1", token_version=2)))
        assert claims["type"] == "refresh"
        assert claims["version"] == 2
        assert claims["exp"] - claims["iat"] == settings.jwt_refresh_ttl_days * 86400

    def test_issue_tokens_shape(self, auth, make_device):
        tokens = auth.issue_tokens(make_device())
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["access_token"] != tokens["refresh_token"]

    def test_round_trip(self, auth, make_device):
        token = auth.create_access_token(make_device(device_uuid="d1"))
        assert auth.decode_token(token, "access")["sub"] == "d1"

    def test_expired(self, auth):
        token = auth._encode({"sub": "d1", "type": "access"}, timedelta(seconds=-10))
        with pytest.raises(TokenError) as exc_info:
            auth.decode_token(token, "access")
        assert exc_info.value.code == "TOKEN_EXPIRED"
        assert exc_info.value.status_code == 401

    def test_forged_signature(self, auth):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "d1", "type": "access", "iss": "reefscan-api", "iat": now, "exp": now + timedelta(hours=1)},
            "someone-elses-secret-0123456789abcdef",
            algorithm="HS256",
        )
        with pytest.raises(TokenError) as exc_info:
            auth.decode_token(token, "access")
        assert exc_info.value.code == "INVALID_TOKEN"

    def test_wrong_issuer(self, auth):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "d1", "type": "access", "iss": "elsewhere", "iat": now, "exp": now + timedelta(hours=1)},
            settings.jwt_secret,
            algorithm="HS256",
        )
        with pytest.raises(TokenError) as exc_info:
            auth.decode_token(token, "access")
        assert exc_info.value.code == "INVALID_TOKEN"

    def test_refresh_token_is_not_an_access_token(self, auth, make_device):
        token = auth.create_refresh_token(make_device())
        with pytest.raises(TokenError) as exc_info:
            auth.decode_token(token, "access")
        assert exc_info.value.code == "INVALID_TOKEN"

    def test_garbage(self, auth):
        with pytest.raises(TokenError):
            auth.decode_token("not.a.jwt", "access")

    def test_no_secret_outside_development(self, auth, monkeypatch):
        monkeypatch.setattr(settings, "jwt_secret", "")
        monkeypatch.setattr(settings, "environment", "production")
        with pytest.raises(ReefScanError):
            auth._encode({"sub": "d1"}, timedelta(minutes=1))


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_valid(self, auth, make_device, mock_db_session):
        device = make_device(device_uuid="d1")
        mock_db_session.execute.return_value = _result(device)

        found, claims = await auth.authenticate(mock_db_session, auth.create_access_token(device))
        assert found is device
        assert claims["sub"] == "d1"

    @pytest.mark.asyncio
    async def test_revoked_after_version_bump(self, auth, make_device, mock_db_session):
        device = make_device(token_version=1)
        token = auth.create_access_token(device)
        device.token_version = 2
        mock_db_session.execute.return_value = _result(device)

        with pytest.raises(TokenError) as exc_info:
            await auth.authenticate(mock_db_session, token)
        assert exc_info.value.code == "TOKEN_REVOKED"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_blocked_device_is_403(self, auth, make_device, mock_db_session):
        device = make_device(is_blocked=True)
        mock_db_session.execute.return_value = _result(device)

        with pytest.raises(TokenError) as exc_info:
            await auth.authenticate(mock_db_session, auth.create_access_token(device))
        assert exc_info.value.code == "DEVICE_BLOCKED"
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_device(self, auth, make_device, mock_db_session):
        mock_db_session.execute.return_value = _result(None)
        with pytest.raises(TokenError) as exc_info:
            await auth.authenticate(mock_db_session, auth.create_access_token(make_device()))
        assert exc_info.value.code == "INVALID_TOKEN"


class TestAppSecrets:

    @pytest.mark.parametrize("platform, secret, ok", [
        ("ios", "ios-secret-old", True),
        ("ios", "ios-secret-new", True),
        ("ios", "android-secret", False),
        ("android", "android-secret", True),
        ("android", "", False),
        ("windows", "anything", False),
    ])
    def test_validation(self, auth, platform, secret, ok):
        assert auth.validate_app_secret(platform, secret) is ok

    def test_development_allows_unconfigured_platform(self, auth, monkeypatch):
        monkeypatch.setattr(settings, "environment", "development")
        monkeypatch.setattr(settings, "app_secrets_android", "")
        assert auth.validate_app_secret("android", "whatever")


class TestRegistration:

    @pytest.mark.asyncio
    async def test_new_device(self, auth, mock_db_session):
        mock_db_session.execute.return_value = _result(None)

        device, is_new = await auth.register_device(mock_db_session, "new-install", "android", "2.0.0")

        assert is_new
        assert device.tier == "free"
        assert device.token_version == 1
        assert device.platform == "android"
        mock_db_session.add.assert_called_once_with(device)
        mock_db_session.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_existing_device(self, auth, make_device, mock_db_session):
        existing = make_device(device_uuid="d1")
        mock_db_session.execute.return_value = _result(existing)

        device, is_new = await auth.register_device(mock_db_session, "d1", "ios", "1.5.0")

        assert device is existing
        assert not is_new
        assert device.app_version == "1.5.0"
        assert device.last_seen_at is not None
        mock_db_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_registration_race(self, auth, make_device, mock_db_session):
        winner = make_device(device_uuid="d1")
        mock_db_session.execute.side_effect = [_result(None), _result(winner)]
        mock_db_session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        device, is_new = await auth.register_device(mock_db_session, "d1", "ios", "1.4.0")

        assert device is winner
        assert not is_new
        mock_db_session.rollback.assert_awaited_once()


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_refresh_issues_new_pair(self, auth, make_device, mock_db_session):
        device = make_device(device_uuid="d1")
        mock_db_session.execute.return_value = _result(device)

        tokens = await auth.refresh_tokens(mock_db_session, auth.create_refresh_token(device))
        assert auth.decode_token(tokens["access_token"], "access")["sub"] == "d1"

    @pytest.mark.asyncio
    async def test_refresh_after_revoke_fails(self, auth, make_device, mock_db_session):
        device = make_device()
        refresh = auth.create_refresh_token(device)
        await auth.revoke_tokens(mock_db_session, device)
        mock_db_session.execute.return_value = _result(device)

        with pytest.raises(TokenError) as exc_info:
            await auth.refresh_tokens(mock_db_session, refresh)
        assert exc_info.value.code == "TOKEN_REVOKED"

    @pytest.mark.asyncio
    async def test_access_token_rejected_for_refresh(self, auth, make_device, mock_db_session):
        with pytest.raises(TokenError) as exc_info:
            await auth.refresh_tokens(mock_db_session, auth.create_access_token(make_device()))
        assert exc_info.value.code == "INVALID_TOKEN"

    @pytest.mark.asyncio
    async def test_tier_change_bumps_version(self, auth, make_device, mock_db_session):
        device = make_device(token_version=3)
        mock_db_session.execute.return_value = _result(device)

        await auth.update_device_tier(mock_db_session, device.device_uuid, "premium", "sub_123")

        assert device.tier == "premium"
        assert device.subscription_id == "sub_123"
        assert device.token_version == 4

    @pytest.mark.asyncio
    async def test_unknown_tier(self, auth, mock_db_session):
        with pytest.raises(ValueError):
            await auth.update_device_tier(mock_db_session, "d1", "platinum")

    @pytest.mark.asyncio
    async def test_block(self, auth, make_device, mock_db_session):
        device = make_device()
        mock_db_session.execute.return_value = _result(device)

        await auth.block_device(mock_db_session, device.device_uuid, "abuse")

        assert device.is_blocked
        assert device.block_reason == "abuse"
        assert device.token_version == 2

    @pytest.mark.asyncio
    async def test_block_unknown_device(self, auth, mock_db_session):
        mock_db_session.execute.return_value = _result(None)
        with pytest.raises(NotFoundError):
            await auth.block_device(mock_db_session, "ghost", "abuse")

    @pytest.mark.asyncio
    async def test_delete(self, auth, make_device, mock_db_session):
        device = make_device()
        mock_db_session.execute.return_value = _result(device)

        assert await auth.delete_device(mock_db_session, device.device_uuid)
        assert mock_db_session.execute.await_count == 3
        mock_db_session.delete.assert_awaited_once_with(device)

    @pytest.mark.asyncio
    async def test_delete_unknown(self, auth, mock_db_session):
        mock_db_session.execute.return_value = _result(None)
        assert not await auth.delete_device(mock_db_session, "ghost")
        mock_db_session.delete.assert_not_awaited()
