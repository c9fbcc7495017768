"""
ReefScan Gateway — Rate Limiter
================================

What:  Admission quotas for analysis requests, shared across all instances.
Why:   Every provider call costs money; the free tier gets a small daily
       allowance and nobody may burst faster than a few scans per minute.
How:   Fixed-window counters in Redis.

Checks (in order, first failure wins):
    1. Daily per-device quota   ratelimit:daily:{device}          → next UTC midnight
    2. Per-minute per-device    ratelimit:minute:{device}:{min}   → TTL 120s
    3. Global per-minute        ratelimit:global:{min}            → TTL 120s

    A rejected request increments nothing, so retrying after a rejection
    never pushes the reset further away. Counters are only incremented once
    all three checks pass.

Race tolerance:
    Two instances can both read "2 of 3" and both admit. Over-admission is
    bounded by the number of concurrent requests and accepted over the cost
    of a distributed lock on every scan.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from reefscan import clock
from reefscan.config import settings
from reefscan.store import RedisStore, store

logger = logging.getLogger(__name__)

MINUTE_WINDOW_TTL = 120
IP_WINDOW_TTL = 3600


@dataclass
class RateLimitResult:
    """Outcome of an admission check; also the source of X-RateLimit-* headers."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    tier: str
    upgrade_url: Optional[str] = None
    reason: Optional[str] = None

    @property
    def retry_after(self) -> int:
        return max(1, self.reset_at - int(clock.now()))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
            "X-RateLimit-Window": "day",
            "X-RateLimit-Tier": self.tier,
        }


class RateLimiter:
    """Daily, per-minute, global and per-IP quotas over the shared store."""

    def __init__(self, store: RedisStore):
        self.store = store

    @staticmethod
    def _daily_key(device_id: str) -> str:
        return f"ratelimit:daily:{device_id}"

    async def check(self, device_id: str, tier: str) -> RateLimitResult:
        """
        Admit or reject one analysis request for `device_id`.

        Returns a result instead of raising; the orchestrator decides how to
        surface a rejection.
        """
        now = clock.now()
        minute = clock.epoch_minute(now)
        midnight = clock.next_utc_midnight(now)
        daily_limit = settings.daily_limit_for(tier)

        daily_key = self._daily_key(device_id)
        minute_key = f"ratelimit:minute:{device_id}:{minute}"
        global_key = f"ratelimit:global:{minute}"

        daily_count = await self.store.get_int(daily_key)
        if daily_count >= daily_limit:
            logger.info("Daily limit reached for device %s (%d/%d)", device_id, daily_count, daily_limit)
            return RateLimitResult(
                allowed=False,
                limit=daily_limit,
                remaining=0,
                reset_at=midnight,
                tier=tier,
                upgrade_url=settings.upgrade_url if tier == "free" else None,
                reason="daily",
            )

        remaining_today = daily_limit - daily_count

        minute_count = await self.store.get_int(minute_key)
        if minute_count >= settings.rate_limit_per_minute:
            logger.info("Per-minute limit reached for device %s", device_id)
            return RateLimitResult(
                allowed=False,
                limit=daily_limit,
                remaining=remaining_today,
                reset_at=clock.next_minute(now),
                tier=tier,
                reason="minute",
            )

        global_count = await self.store.get_int(global_key)
        if global_count >= settings.rate_limit_global_per_minute:
            logger.warning("Global per-minute limit reached (%d)", global_count)
            return RateLimitResult(
                allowed=False,
                limit=daily_limit,
                remaining=remaining_today,
                reset_at=clock.next_minute(now),
                tier=tier,
                reason="global",
            )

        new_daily = await self.store.incr(daily_key, ttl=clock.seconds_until_utc_midnight(now))
        await self.store.incr(minute_key, ttl=MINUTE_WINDOW_TTL)
        await self.store.incr(global_key, ttl=MINUTE_WINDOW_TTL)

        return RateLimitResult(
            allowed=True,
            limit=daily_limit,
            remaining=max(0, daily_limit - new_daily),
            reset_at=midnight,
            tier=tier,
        )

    async def get_rate_limit_info(self, device_id: str, tier: str) -> RateLimitResult:
        """Current daily standing without consuming quota."""
        daily_limit = settings.daily_limit_for(tier)
        used = await self.store.get_int(self._daily_key(device_id))
        remaining = max(0, daily_limit - used)
        return RateLimitResult(
            allowed=remaining > 0,
            limit=daily_limit,
            remaining=remaining,
            reset_at=clock.next_utc_midnight(),
            tier=tier,
            upgrade_url=settings.upgrade_url if tier == "free" and remaining == 0 else None,
        )

    async def get_daily_usage(self, device_id: str) -> int:
        return await self.store.get_int(self._daily_key(device_id))

    async def check_ip(self, ip: str) -> RateLimitResult:
        """
        Hourly per-IP request cap applied by middleware to every API call.
        Only admitted requests are counted.
        """
        now = clock.now()
        hour = clock.epoch_hour(now)
        key = f"ratelimit:ip:{ip}:{hour}"
        limit = settings.rate_limit_ip_per_hour
        reset_at = (hour + 1) * 3600

        count = await self.store.get_int(key)
        if count >= limit:
            logger.warning("IP rate limit exceeded for %s: %d requests this hour", ip, count)
            return RateLimitResult(
                allowed=False, limit=limit, remaining=0, reset_at=reset_at, tier="ip", reason="ip"
            )

        count = await self.store.incr(key, ttl=IP_WINDOW_TTL)
        return RateLimitResult(
            allowed=True, limit=limit, remaining=max(0, limit - count), reset_at=reset_at, tier="ip"
        )


rate_limiter = RateLimiter(store)
