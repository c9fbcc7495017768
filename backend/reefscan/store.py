"""
ReefScan Gateway — Shared Key-Value Store
==========================================

What:  Thin async wrapper over Redis exposing the handful of primitives the
       coordination components need: JSON get/set with TTL, integer and float
       counters that set their expiry on first increment, and delete.
Why:   Rate limits, key-pool counters, circuit states and the result cache
       must be shared by every gateway instance. Going through one wrapper
       keeps key TTL handling uniform and turns every redis-py failure into
       a single `StoreUnavailableError` that callers can decide to degrade on.
How:   redis.asyncio client created lazily from `settings.redis_url`;
       responses decoded to str.

Counter semantics:
    incr() is INCR followed by EXPIRE only when the counter was just created
    (value == 1). Concurrent first increments both see "1" at most once, so
    the expiry is set exactly once and the window is never extended.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from reefscan.config import settings
from reefscan.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)


class RedisStore:
    """Async Redis access for gateway coordination state."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self._url = url or settings.redis_url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout,
                socket_timeout=settings.redis_socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self._client

    async def ping(self) -> bool:
        """True when Redis answers; never raises."""
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Values ────────────────────────────────────────────────────────────

    async def get_json(self, key: str) -> Any:
        """Decoded JSON value, or None when the key is absent or unparseable."""
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(context={"key": key, "error": str(e)}) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unparseable JSON at %s", key)
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            payload = json.dumps(value, default=str)
            if ttl:
                await self.client.setex(key, int(ttl), payload)
            else:
                await self.client.set(key, payload)
        except RedisError as e:
            raise StoreUnavailableError(context={"key": key, "error": str(e)}) from e

    async def get_int(self, key: str) -> int:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(context={"key": key, "error": str(e)}) from e
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def get_float(self, key: str) -> float:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(context={"key": key, "error": str(e)}) from e
        try:
            return float(raw) if raw is not None else 0.0
        except ValueError:
            return 0.0

    # ── Counters ──────────────────────────────────────────────────────────

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        """Increment a counter; sets `ttl` only when the counter was created."""
        try:
            value = await self.client.incr(key)
            if ttl and value == 1:
                await self.client.expire(key, int(ttl))
            return int(value)
        except RedisError as e:
            raise StoreUnavailableError(context={"key": key, "error": str(e)}) from e

    async def incr_float(self, key: str, amount: float, ttl: Optional[int] = None) -> float:
        """Add `amount` to a float counter; sets `ttl` if the key had none."""
        try:
            value = float(await self.client.incrbyfloat(key, amount))
            if ttl and await self.client.ttl(key) < 0:
                await self.client.expire(key, int(ttl))
            return value
        except RedisError as e:
            raise StoreUnavailableError(context={"key": key, "error": str(e)}) from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys))
        except RedisError as e:
            raise StoreUnavailableError(context={"keys": list(keys), "error": str(e)}) from e


store = RedisStore()
