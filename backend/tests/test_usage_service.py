"""
ReefScan Gateway — Usage Accounting & Metrics Tests (Mocked DB)
================================================================

What we test:
    ✅ Success rows + daily rollup upsert; DB failure never raises
    ✅ Error rows are committed immediately
    ✅ Quota standing comes from the admission counter
    ✅ Stats and export shape from mocked query results
    ✅ Dashboard aggregation and cost estimates
"""

import uuid
from datetime import date

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import OperationalError

from reefscan.config import settings
from reefscan.exceptions import DatabaseError
from reefscan.models.usage import RequestLog
from reefscan.services.metrics_service import MetricsService, estimate_cost
from reefscan.services.rate_limiter import RateLimiter
from reefscan.services.usage_service import UsageService

DEVICE_ID = uuid.uuid4()


def _rows(rows):
    result = MagicMock()
    result.all.return_value = rows
    return result


def _scalar(value):
    result = MagicMock()
    result.scalar.return_value = value
    return result


@pytest.fixture
def usage(memory_store):
    return UsageService(RateLimiter(memory_store))


class TestRecordSuccess:

    @pytest.mark.asyncio
    async def test_log_row_and_rollup(self, usage, mock_db_session):
        ok = await usage.record_success(
            mock_db_session, DEVICE_ID, "req-1", "fish_id", "gemini", "gemini_1",
            latency_ms=850, tokens_input=1200, tokens_output=300, image_hash="ab" * 32,
        )

        assert ok
        row = mock_db_session.add.call_args.args[0]
        assert isinstance(row, RequestLog)
        assert row.status == "success"
        assert row.provider_used == "gemini"
        assert row.api_key_id == "gemini_1"
        assert row.tokens_input == 1200 and row.tokens_output == 300
        assert row.error_code is None
        mock_db_session.execute.assert_awaited_once()
        mock_db_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_database_failure_is_swallowed(self, usage, mock_db_session):
        mock_db_session.execute.side_effect = OperationalError("INSERT", {}, Exception("db gone"))

        ok = await usage.record_success(
            mock_db_session, DEVICE_ID, "req-1", "fish_id", "cache", None, latency_ms=5,
        )

        assert not ok
        mock_db_session.rollback.assert_awaited_once()


class TestRecordError:

    @pytest.mark.asyncio
    async def test_error_row_is_committed(self, usage, mock_db_session):
        ok = await usage.record_error(
            mock_db_session, DEVICE_ID, "req-1", "comprehensive", "openai", None,
            error_code="COST_LIMIT", latency_ms=12,
        )

        assert ok
        row = mock_db_session.add.call_args.args[0]
        assert row.status == "error"
        assert row.error_code == "COST_LIMIT"
        mock_db_session.commit.assert_awaited_once()
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commit_failure(self, usage, mock_db_session):
        mock_db_session.commit.side_effect = OperationalError("COMMIT", {}, Exception("db gone"))
        ok = await usage.record_error(
            mock_db_session, DEVICE_ID, "req-1", "comprehensive", "gemini", "gemini_1",
            error_code="PROVIDER_ERROR", latency_ms=12,
        )
        assert not ok
        mock_db_session.rollback.assert_awaited_once()


class TestReads:

    @pytest.mark.asyncio
    async def test_get_usage_free(self, usage, frozen_clock):
        limiter = usage.limiter
        await limiter.check("d1", "free")
        frozen_clock.advance(61)
        await limiter.check("d1", "free")

        result = await usage.get_usage("d1", "free")

        assert result["daily"]["used"] == 2
        assert result["daily"]["limit"] == 3
        assert result["daily"]["reset_at"] == "2025-10-10T00:00:00Z"
        assert result["subscription_status"] == "none"
        assert result["upgrade_url"] == settings.upgrade_url

    @pytest.mark.asyncio
    async def test_get_usage_premium(self, usage):
        result = await usage.get_usage("p1", "premium")
        assert result["daily"]["used"] == 0
        assert result["daily"]["limit"] == settings.rate_limit_premium_daily
        assert result["subscription_status"] == "active"
        assert result["upgrade_url"] is None

    @pytest.mark.asyncio
    async def test_stats(self, usage, mock_db_session):
        mock_db_session.execute.side_effect = [
            _rows([(date(2025, 10, 1), 3, 4500), (date(2025, 10, 2), 1, 1500)]),
            _rows([("fish_id", 3), ("coral_id", 1)]),
        ]

        stats = await usage.get_usage_stats(
            mock_db_session, DEVICE_ID, date(2025, 10, 1), date(2025, 10, 7)
        )

        assert stats["total_requests"] == 4
        assert stats["total_tokens"] == 6000
        assert stats["by_mode"] == {"fish_id": 3, "coral_id": 1}
        assert stats["by_date"][0] == {"date": date(2025, 10, 1), "requests": 3, "tokens": 4500}

    @pytest.mark.asyncio
    async def test_stats_default_range(self, usage, mock_db_session, frozen_clock):
        mock_db_session.execute.side_effect = [_rows([]), _rows([])]
        stats = await usage.get_usage_stats(mock_db_session, DEVICE_ID)
        assert stats["end_date"] == date(2025, 10, 9)
        assert stats["start_date"] == date(2025, 9, 10)
        assert stats["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_stats_database_error(self, usage, mock_db_session):
        mock_db_session.execute.side_effect = OperationalError("SELECT", {}, Exception("db gone"))
        with pytest.raises(DatabaseError):
            await usage.get_usage_stats(mock_db_session, DEVICE_ID)

    @pytest.mark.asyncio
    async def test_export(self, usage, mock_db_session, make_device):
        device = make_device(device_uuid="d1")
        log = RequestLog(device_id=device.id, request_id="req-1", mode="fish_id", status="success")
        logs_result = MagicMock()
        logs_result.scalars.return_value.all.return_value = [log]
        mock_db_session.execute.side_effect = [_rows([(date(2025, 10, 1), 2, 900)]), logs_result]

        export = await usage.export_device_data(mock_db_session, device)

        assert export["device"]["device_uuid"] == "d1"
        assert export["usage_history"] == [{"date": date(2025, 10, 1), "requests": 2, "tokens": 900}]
        assert export["request_history"] == [log]
        assert export["data_retention"]["request_logs"] == "30 days"

    @pytest.mark.asyncio
    async def test_purge(self, usage, mock_db_session):
        mock_db_session.execute.return_value = MagicMock(rowcount=5)
        assert await usage.purge_old_request_logs(mock_db_session) == 5


class TestMetrics:

    def test_cost_estimates(self):
        assert estimate_cost("gemini", 1_000_000, 1_000_000) == pytest.approx(0.375)
        assert estimate_cost("openai", 1_000_000, 0) == pytest.approx(2.5)
        assert estimate_cost("cache", 1000, 1000) == 0.0

    @pytest.mark.asyncio
    async def test_dashboard(self, mock_db_session):
        window = MagicMock()
        window.one.return_value = (10, 2, 812.5)
        mock_db_session.execute.side_effect = [
            _scalar(120),
            _scalar(14),
            window,
            _rows([("fish_id", 6, 1), ("pest_id", 4, 1)]),
            _rows([("gemini", 90, 1_000_000, 200_000), ("cache", 20, 0, 0)]),
            _scalar(40),
            _scalar(25),
            _rows([("free", 35), ("premium", 5)]),
        ]
        keys = MagicMock()
        keys.get_metrics = AsyncMock(return_value={"total_keys": 2, "available_keys": 2})
        breaker = MagicMock()
        breaker.get_all_status = AsyncMock(return_value={"gemini": {"state": "CLOSED"}})
        fallback = MagicMock()
        fallback.get_current_daily_cost = AsyncMock(return_value=1.23456)
        cache = MagicMock()
        cache.get_stats.return_value = {"enabled": True}

        dashboard = await MetricsService(keys, breaker, fallback, cache).get_dashboard(mock_db_session)

        requests = dashboard["requests"]
        assert requests["total"] == 120
        assert requests["today"] == 14
        assert requests["error_rate_24h"] == 0.2
        assert requests["avg_latency_ms_24h"] == 812.5
        assert requests["by_mode_24h"]["fish_id"] == {"requests": 6, "errors": 1}
        assert dashboard["devices"]["tier_distribution"] == {"free": 35, "premium": 5}
        assert dashboard["providers"]["usage"]["gemini"]["estimated_cost"] == pytest.approx(0.135)
        assert dashboard["providers"]["usage"]["cache"]["estimated_cost"] == 0.0
        assert dashboard["providers"]["openai_daily_cost"] == 1.2346
        assert dashboard["key_pool"]["available_keys"] == 2
