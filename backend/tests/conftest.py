"""
ReefScan Gateway — Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   The coordination services (rate limiter, key pool, circuit breaker,
       cache) are pure logic over the shared store; an in-memory store with
       a controllable clock lets every window and TTL be tested exactly.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── frozen_clock:      Replaces clock.now() with a manually advanced time
    ├── memory_store:      InMemoryStore honouring TTLs against frozen_clock
    ├── mock_db_session:   Mock AsyncSession (no real DB needed)
    ├── make_device:       Factory for Device rows
    ├── sample_analysis:   A provider answer in raw JSON form
    └── test_client:       HTTPX AsyncClient bound to the FastAPI app
"""

import json
import os
import uuid
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock
from httpx import AsyncClient, ASGITransport


# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Set BEFORE any reefscan import: settings are read once at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["REDIS_URL"] = "redis://localhost:6399/15"
os.environ["JWT_SECRET"] = "test-secret-not-real-0123456789abcdef"
os.environ["GEMINI_API_KEYS"] = "test-gemini-key-1,test-gemini-key-2"
os.environ["OPENAI_API_KEY"] = "test-openai-key-not-real"
os.environ["APP_SECRETS_IOS"] = "ios-secret-old,ios-secret-new"
os.environ["APP_SECRETS_ANDROID"] = "android-secret"
os.environ["LOG_LEVEL"] = "WARNING"

from reefscan import clock  # noqa: E402
from reefscan.exceptions import StoreUnavailableError  # noqa: E402

# 2025-10-09T12:00:00Z, on a minute boundary
NOON_UTC = 1760011200.0


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════

class FrozenClock:
    """Callable stand-in for clock.now(); only moves when advanced."""

    def __init__(self, start: float = NOON_UTC):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class InMemoryStore:
    """
    Same interface as RedisStore, backed by dicts.

    Expiry is evaluated lazily against clock.now(), so advancing the frozen
    clock past a TTL makes the key disappear exactly as in Redis. Setting
    `available = False` makes every call raise StoreUnavailableError.
    """

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expires_at: Dict[str, float] = {}
        self.available = True

    def _check(self, key: str = "") -> None:
        if not self.available:
            raise StoreUnavailableError(context={"key": key, "error": "connection refused"})

    def _live(self, key: str) -> Optional[str]:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= clock.now():
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return self.data.get(key)

    def ttl(self, key: str) -> Optional[float]:
        if self._live(key) is None or key not in self.expires_at:
            return None
        return self.expires_at[key] - clock.now()

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        pass

    async def get_json(self, key: str) -> Any:
        self._check(key)
        raw = self._live(key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._check(key)
        self.data[key] = json.dumps(value, default=str)
        if ttl:
            self.expires_at[key] = clock.now() + ttl
        else:
            self.expires_at.pop(key, None)

    async def get_int(self, key: str) -> int:
        self._check(key)
        raw = self._live(key)
        return int(raw) if raw is not None else 0

    async def get_float(self, key: str) -> float:
        self._check(key)
        raw = self._live(key)
        return float(raw) if raw is not None else 0.0

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        self._check(key)
        value = int(self._live(key) or 0) + 1
        self.data[key] = str(value)
        if ttl and value == 1:
            self.expires_at[key] = clock.now() + ttl
        return value

    async def incr_float(self, key: str, amount: float, ttl: Optional[int] = None) -> float:
        self._check(key)
        value = float(self._live(key) or 0.0) + amount
        self.data[key] = str(value)
        if ttl and key not in self.expires_at:
            self.expires_at[key] = clock.now() + ttl
        return value

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return removed


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures (created fresh for each test)
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def frozen_clock(monkeypatch):
    fake = FrozenClock()
    monkeypatch.setattr(clock, "now", fake)
    return fake


@pytest.fixture
def memory_store(frozen_clock):
    return InMemoryStore()


@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    Usage:
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = device
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.delete = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def make_device():
    """Factory for transient Device instances (never flushed)."""
    from reefscan.models.device import Device

    def _make(
        device_uuid: Optional[str] = None,
        tier: str = "free",
        token_version: int = 1,
        is_blocked: bool = False,
        platform: str = "ios",
    ) -> Device:
        return Device(
            id=uuid.uuid4(),
            device_uuid=device_uuid or str(uuid.uuid4()),
            platform=platform,
            app_version="1.4.0",
            tier=tier,
            token_version=token_version,
            is_blocked=is_blocked,
            block_reason=None,
            subscription_id=None,
            extra_metadata={},
        )

    return _make


@pytest.fixture
def sample_analysis() -> Dict[str, Any]:
    """A well-formed provider answer before normalization."""
    return {
        "tank_health": "Fair",
        "summary": "Healthy fish, some hair algae on the rockwork.",
        "identifications": [
            {
                "name": "Ocellaris Clownfish",
                "category": "fish",
                "confidence": 0.94,
                "is_problem": False,
                "severity": None,
                "description": "Active and well coloured.",
            },
            {
                "name": "Hair Algae",
                "category": "algae",
                "confidence": 0.81,
                "is_problem": True,
                "severity": "medium",
                "description": "Patches on the back wall.",
            },
        ],
        "recommendations": ["Reduce feeding", "Test phosphate"],
    }


@pytest_asyncio.fixture
async def test_client():
    """
    HTTPX AsyncClient routed directly into the FastAPI app.

    Dependency overrides set by a test are cleared afterwards.
    """
    from reefscan.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
