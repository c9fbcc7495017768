"""
ReefScan Gateway — API Key Pool Tests
======================================

What we test:
    ✅ Least-loaded selection, ties to the first configured key
    ✅ HTTP 429 cools a key down for exactly the cooldown duration
    ✅ Error-rate exclusion only above the minimum sample
    ✅ Per-minute and daily caps exclude a key; no key → None
    ✅ Metrics snapshot and the low-availability warning
    ✅ Secrets stay out of repr
"""

import logging

import pytest

from reefscan.services.key_pool import ApiKeyConfig, KeyPool, KeyPoolPolicy, build_key_configs


def _pool(store, count=2, rpm_limit=60, daily_quota=0, policy=None):
    keys = build_key_configs([f"secret-{i}" for i in range(1, count + 1)], rpm_limit, "paid_tier_1", daily_quota)
    return KeyPool(store, keys, policy or KeyPoolPolicy())


class TestConfiguration:

    def test_ids_follow_configuration_order(self):
        keys = build_key_configs(["a", "b", "c"], rpm_limit=15, tier="free")
        assert [k.id for k in keys] == ["gemini_1", "gemini_2", "gemini_3"]
        assert all(k.rpm_limit == 15 and k.daily_quota is None for k in keys)

    def test_secret_not_in_repr(self):
        config = ApiKeyConfig(id="gemini_1", key="super-secret", rpm_limit=60)
        assert "super-secret" not in repr(config)

    def test_configs_are_immutable(self):
        config = ApiKeyConfig(id="gemini_1", key="k", rpm_limit=60)
        with pytest.raises(AttributeError):
            config.rpm_limit = 1


class TestSelection:

    @pytest.mark.asyncio
    async def test_tie_goes_to_first_key(self, memory_store):
        pool = _pool(memory_store)
        selected = await pool.select_key()
        assert selected.id == "gemini_1"
        assert selected.key == "secret-1"

    @pytest.mark.asyncio
    async def test_least_loaded_key_wins(self, memory_store):
        pool = _pool(memory_store, count=3)
        await pool.record_success("gemini_1")
        await pool.record_success("gemini_1")
        await pool.record_success("gemini_2")
        assert (await pool.select_key()).id == "gemini_3"

    @pytest.mark.asyncio
    async def test_rpm_limit_excludes_key(self, memory_store, frozen_clock):
        pool = _pool(memory_store, count=1, rpm_limit=2)
        await pool.record_success("gemini_1")
        await pool.record_success("gemini_1")
        assert await pool.select_key() is None

        frozen_clock.advance(60)
        assert (await pool.select_key()).id == "gemini_1"

    @pytest.mark.asyncio
    async def test_daily_quota_excludes_key(self, memory_store, frozen_clock):
        pool = _pool(memory_store, count=1, daily_quota=2)
        await pool.record_success("gemini_1")
        frozen_clock.advance(60)
        await pool.record_success("gemini_1")
        frozen_clock.advance(60)
        assert await pool.select_key() is None

    @pytest.mark.asyncio
    async def test_empty_pool_returns_none(self, memory_store):
        assert await KeyPool(memory_store, []).select_key() is None


class TestCooldown:

    @pytest.mark.asyncio
    async def test_429_cools_down_for_exact_duration(self, memory_store, frozen_clock):
        pool = _pool(memory_store, policy=KeyPoolPolicy(cooldown_seconds=60))
        await pool.record_success("gemini_2")  # gemini_2 is busier
        await pool.record_failure("gemini_1", 429)

        assert (await pool.select_key()).id == "gemini_2"
        frozen_clock.advance(59)
        assert (await pool.select_key()).id == "gemini_2"

        frozen_clock.advance(1)
        # Cooldown over; new minute so both keys are idle again
        assert (await pool.select_key()).id == "gemini_1"

    @pytest.mark.asyncio
    async def test_other_errors_do_not_cool_down(self, memory_store):
        pool = _pool(memory_store)
        await pool.record_failure("gemini_1", 500)
        await pool.record_failure("gemini_1", None)
        assert (await pool.select_key()).id == "gemini_1"

    @pytest.mark.asyncio
    async def test_all_keys_cooling_returns_none(self, memory_store):
        pool = _pool(memory_store)
        await pool.record_failure("gemini_1", 429)
        await pool.record_failure("gemini_2", 429)
        assert await pool.select_key() is None


class TestErrorRate:

    @pytest.mark.asyncio
    async def test_high_error_rate_over_sample_excludes(self, memory_store, frozen_clock):
        pool = _pool(memory_store, count=2, rpm_limit=1000)
        for _ in range(9):
            await pool.record_success("gemini_1")
        await pool.record_failure("gemini_1", 500)  # 1/10 = 10%
        frozen_clock.advance(60)

        assert (await pool.select_key()).id == "gemini_2"
        metrics = await pool.get_metrics()
        assert metrics["keys"][0]["error_rate"] == 0.1
        assert metrics["keys"][0]["available"] is False

    @pytest.mark.asyncio
    async def test_small_sample_is_not_excluded(self, memory_store):
        pool = _pool(memory_store, count=1)
        await pool.record_failure("gemini_1", 500)  # 100% of one request
        assert (await pool.select_key()).id == "gemini_1"

    @pytest.mark.asyncio
    async def test_rate_at_threshold_is_allowed(self, memory_store, frozen_clock):
        pool = _pool(memory_store, count=1, rpm_limit=1000)
        for _ in range(19):
            await pool.record_success("gemini_1")
        await pool.record_failure("gemini_1", 500)  # exactly 5%
        assert (await pool.select_key()).id == "gemini_1"

    @pytest.mark.asyncio
    async def test_error_window_expires_after_an_hour(self, memory_store, frozen_clock):
        pool = _pool(memory_store, count=1, rpm_limit=1000)
        for _ in range(10):
            await pool.record_failure("gemini_1", 500)
        assert await pool.select_key() is None

        frozen_clock.advance(3600)
        assert (await pool.select_key()).id == "gemini_1"


class TestMetrics:

    @pytest.mark.asyncio
    async def test_snapshot_counts(self, memory_store):
        pool = _pool(memory_store, count=3)
        await pool.record_failure("gemini_2", 429)
        await pool.record_success("gemini_3")

        metrics = await pool.get_metrics()
        assert metrics["total_keys"] == 3
        assert metrics["available_keys"] == 2
        assert metrics["keys_in_cooldown"] == 1
        assert metrics["total_rpm"] == 1
        assert all("secret" not in str(k) for k in metrics["keys"])

    @pytest.mark.asyncio
    async def test_warns_when_fewer_than_two_available(self, memory_store, caplog):
        pool = _pool(memory_store, count=2)
        await pool.record_failure("gemini_1", 429)
        with caplog.at_level(logging.WARNING, logger="reefscan.services.key_pool"):
            await pool.get_metrics()
        assert "Key pool degraded" in caplog.text

    @pytest.mark.asyncio
    async def test_single_key_pool_does_not_warn(self, memory_store, caplog):
        pool = _pool(memory_store, count=1)
        with caplog.at_level(logging.WARNING, logger="reefscan.services.key_pool"):
            await pool.get_metrics()
        assert "Key pool degraded" not in caplog.text
