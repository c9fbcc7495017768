"""
ReefScan Gateway — Operational Metrics
=======================================

What:  Aggregates the dashboard served at GET /v1/metrics: request volume,
       latency and error rate, device population, per-provider token use
       and estimated spend, plus live Redis state (key pool, circuits,
       fallback budget).
Why:   One call answers "is the gateway healthy and what is it costing?".
How:   A handful of aggregate queries over request_logs/devices and reads
       from the coordination services. Nothing here writes.

Pricing used for estimates (USD per 1M tokens):
    gemini  input 0.075, output 0.30
    openai  input 2.50,  output 10.00
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan.config import settings
from reefscan.exceptions import DatabaseError
from reefscan.models.device import Device
from reefscan.models.usage import RequestLog
from reefscan.services.cache_service import CacheService, cache_service
from reefscan.services.circuit_breaker import CircuitBreaker, circuit_breaker
from reefscan.services.key_pool import KeyPool, key_pool
from reefscan.services.openai_service import OpenAIProvider, openai_provider

logger = logging.getLogger(__name__)

PRICING_PER_MILLION = {
    "gemini": {"input": 0.075, "output": 0.30},
    "openai": {"input": 2.50, "output": 10.00},
}


def estimate_cost(provider: str, tokens_input: int, tokens_output: int) -> float:
    pricing = PRICING_PER_MILLION.get(provider)
    if pricing is None:
        return 0.0
    return (tokens_input / 1_000_000) * pricing["input"] + (tokens_output / 1_000_000) * pricing["output"]


class MetricsService:
    def __init__(
        self,
        keys: KeyPool,
        breaker: CircuitBreaker,
        fallback: OpenAIProvider,
        cache: CacheService,
    ):
        self.keys = keys
        self.breaker = breaker
        self.fallback = fallback
        self.cache = cache

    async def get_dashboard(self, db: AsyncSession) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        day_ago = now - timedelta(hours=24)
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        active_since = now - timedelta(days=30)
        is_error = case((RequestLog.status == "error", 1), else_=0)

        try:
            total_requests = (await db.execute(select(func.count(RequestLog.id)))).scalar() or 0
            requests_today = (await db.execute(
                select(func.count(RequestLog.id)).where(RequestLog.created_at >= today_start)
            )).scalar() or 0
            window = (await db.execute(
                select(
                    func.count(RequestLog.id),
                    func.coalesce(func.sum(is_error), 0),
                    func.coalesce(func.avg(RequestLog.latency_ms), 0),
                ).where(RequestLog.created_at >= day_ago)
            )).one()
            by_mode_rows = (await db.execute(
                select(RequestLog.mode, func.count(RequestLog.id), func.coalesce(func.sum(is_error), 0))
                .where(RequestLog.created_at >= day_ago)
                .group_by(RequestLog.mode)
            )).all()
            provider_rows = (await db.execute(
                select(
                    RequestLog.provider_used,
                    func.count(RequestLog.id),
                    func.coalesce(func.sum(RequestLog.tokens_input), 0),
                    func.coalesce(func.sum(RequestLog.tokens_output), 0),
                )
                .where(RequestLog.status == "success")
                .group_by(RequestLog.provider_used)
            )).all()
            total_devices = (await db.execute(select(func.count(Device.id)))).scalar() or 0
            active_devices = (await db.execute(
                select(func.count(Device.id)).where(Device.last_seen_at >= active_since)
            )).scalar() or 0
            tier_rows = (await db.execute(
                select(Device.tier, func.count(Device.id)).group_by(Device.tier)
            )).all()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "get_dashboard", "error": str(e)})

        window_total, window_errors, avg_latency = window
        providers: Dict[str, Any] = {}
        for provider, count, tokens_in, tokens_out in provider_rows:
            name = provider or "unknown"
            providers[name] = {
                "requests": int(count),
                "tokens_input": int(tokens_in),
                "tokens_output": int(tokens_out),
                "estimated_cost": round(estimate_cost(name, int(tokens_in), int(tokens_out)), 4),
            }

        tier_distribution = {"free": 0, "premium": 0}
        for tier, count in tier_rows:
            tier_distribution[tier] = int(count)

        return {
            "requests": {
                "total": int(total_requests),
                "today": int(requests_today),
                "last_24h": int(window_total),
                "avg_latency_ms_24h": round(float(avg_latency or 0), 1),
                "error_rate_24h": round(int(window_errors) / int(window_total), 4) if window_total else 0.0,
                "by_mode_24h": {
                    mode: {"requests": int(count), "errors": int(errors)}
                    for mode, count, errors in by_mode_rows
                },
            },
            "devices": {
                "total": int(total_devices),
                "active_30d": int(active_devices),
                "tier_distribution": tier_distribution,
            },
            "providers": {
                "usage": providers,
                "openai_daily_cost": round(await self.fallback.get_current_daily_cost(), 4),
                "openai_max_daily_cost": settings.openai_max_cost_per_day,
            },
            "key_pool": await self.keys.get_metrics(),
            "circuits": await self.breaker.get_all_status(),
            "cache": self.cache.get_stats(),
            "generated_at": now,
        }


metrics_service = MetricsService(key_pool, circuit_breaker, openai_provider, cache_service)
