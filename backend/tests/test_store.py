"""
ReefScan Gateway — Redis Store Wrapper Tests
=============================================

What we test:
    ✅ JSON values are encoded on write and decoded on read
    ✅ Unparseable JSON reads as a miss
    ✅ Counters set their expiry only on first increment
    ✅ redis-py errors surface as StoreUnavailableError
    ✅ ping() reports failure instead of raising
    ❌ A live Redis server (covered by deployment smoke tests)
"""

import pytest
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from reefscan.exceptions import StoreUnavailableError
from reefscan.store import RedisStore


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.get = AsyncMock(return_value=None)
    return client


@pytest.fixture
def redis_store(redis_client):
    return RedisStore(url="redis://unused:6379/0", client=redis_client)


class TestJsonValues:

    @pytest.mark.asyncio
    async def test_get_json_decodes(self, redis_store, redis_client):
        redis_client.get.return_value = '{"state": "OPEN", "failures": 0}'
        assert await redis_store.get_json("circuit:gemini:state") == {"state": "OPEN", "failures": 0}

    @pytest.mark.asyncio
    async def test_get_json_missing_is_none(self, redis_store):
        assert await redis_store.get_json("nope") is None

    @pytest.mark.asyncio
    async def test_get_json_garbage_is_none(self, redis_store, redis_client):
        redis_client.get.return_value = "{not json"
        assert await redis_store.get_json("cache:image:abc:fish_id") is None

    @pytest.mark.asyncio
    async def test_set_json_with_ttl_uses_setex(self, redis_store, redis_client):
        await redis_store.set_json("idempotency:r1", {"a": 1}, ttl=86400)
        redis_client.setex.assert_awaited_once_with("idempotency:r1", 86400, '{"a": 1}')

    @pytest.mark.asyncio
    async def test_set_json_without_ttl_uses_set(self, redis_store, redis_client):
        await redis_store.set_json("k", [1, 2])
        redis_client.set.assert_awaited_once_with("k", "[1, 2]")


class TestCounters:

    @pytest.mark.asyncio
    async def test_first_increment_sets_expiry(self, redis_store, redis_client):
        redis_client.incr.return_value = 1
        assert await redis_store.incr("ratelimit:minute:d1:1", ttl=120) == 1
        redis_client.expire.assert_awaited_once_with("ratelimit:minute:d1:1", 120)

    @pytest.mark.asyncio
    async def test_later_increment_keeps_expiry(self, redis_store, redis_client):
        redis_client.incr.return_value = 4
        assert await redis_store.incr("ratelimit:minute:d1:1", ttl=120) == 4
        redis_client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_int_defaults_to_zero(self, redis_store):
        assert await redis_store.get_int("ratelimit:daily:d1") == 0

    @pytest.mark.asyncio
    async def test_incr_float_sets_expiry_when_missing(self, redis_store, redis_client):
        redis_client.incrbyfloat.return_value = "0.25"
        redis_client.ttl.return_value = -1
        assert await redis_store.incr_float("openai:daily_cost", 0.25, ttl=3600) == 0.25
        redis_client.expire.assert_awaited_once_with("openai:daily_cost", 3600)

    @pytest.mark.asyncio
    async def test_delete_without_keys_is_noop(self, redis_store, redis_client):
        assert await redis_store.delete() == 0
        redis_client.delete.assert_not_awaited()


class TestFailures:

    @pytest.mark.asyncio
    async def test_read_error_is_wrapped(self, redis_store, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(StoreUnavailableError) as exc_info:
            await redis_store.get_int("ratelimit:daily:d1")
        assert exc_info.value.code == "STORE_UNAVAILABLE"
        assert exc_info.value.context["key"] == "ratelimit:daily:d1"

    @pytest.mark.asyncio
    async def test_write_error_is_wrapped(self, redis_store, redis_client):
        redis_client.incr.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(StoreUnavailableError):
            await redis_store.incr("k", ttl=10)

    @pytest.mark.asyncio
    async def test_ping_returns_false_on_error(self, redis_store, redis_client):
        redis_client.ping.side_effect = RedisConnectionError("connection refused")
        assert await redis_store.ping() is False

    @pytest.mark.asyncio
    async def test_close_releases_client(self, redis_store, redis_client):
        await redis_store.close()
        redis_client.aclose.assert_awaited_once()
