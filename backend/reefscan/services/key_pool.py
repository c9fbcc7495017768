"""
ReefScan Gateway — API Key Pool
================================

What:  Chooses which primary-provider API key serves the next request.
Why:   One key's per-minute quota is far below fleet demand. Spreading load
       across several keys, and steering around keys that are throttled or
       misbehaving, keeps the primary provider usable under load.
How:   Per-key counters in Redis; the immutable key list lives in memory.

Selection rule (evaluated fresh on every call):
    skip a key when
      - it is in a cooldown that has not yet expired (set after an HTTP 429)
      - its current-minute request count has reached its rpm limit
      - its optional daily quota is used up
      - its trailing-hour error rate exceeds the threshold (default 5%)
        over at least the minimum sample (default 10 requests)
    then pick the key with the lowest current-minute count.

Redis keys:
    keypool:state:{id}           cooldown record (JSON), TTL cooldown + 10s
    keypool:rpm:{id}:{minute}    TTL 120s
    keypool:daily:{id}           expires next UTC midnight
    keypool:errors:{id}          TTL 3600s (trailing hour, fixed window)
    keypool:success:{id}         TTL 3600s
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from reefscan import clock
from reefscan.config import settings
from reefscan.store import RedisStore, store

logger = logging.getLogger(__name__)

RPM_WINDOW_TTL = 120
HEALTH_WINDOW_TTL = 3600


@dataclass(frozen=True)
class ApiKeyConfig:
    """One configured key. The secret never appears in repr or logs."""

    id: str
    key: str = field(repr=False)
    rpm_limit: int
    tier: str = "paid_tier_1"
    daily_quota: Optional[int] = None


@dataclass(frozen=True)
class KeyPoolPolicy:
    error_rate_threshold: float = 0.05
    min_requests_for_error_rate: int = 10
    cooldown_seconds: int = 60


@dataclass
class ApiKeyState:
    config: ApiKeyConfig
    current_rpm: int = 0
    requests_today: int = 0
    error_rate: float = 0.0
    total_requests: int = 0
    cooldown_until: Optional[float] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def key(self) -> str:
        return self.config.key

    @property
    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None


def build_key_configs(
    raw_keys: Sequence[str], rpm_limit: int, tier: str, daily_quota: int = 0
) -> List[ApiKeyConfig]:
    """Assigns ids gemini_1..N in configuration order."""
    return [
        ApiKeyConfig(
            id=f"gemini_{i}",
            key=raw,
            rpm_limit=rpm_limit,
            tier=tier,
            daily_quota=daily_quota or None,
        )
        for i, raw in enumerate(raw_keys, start=1)
    ]


class KeyPool:
    """Least-loaded healthy key selection over shared counters."""

    def __init__(
        self,
        store: RedisStore,
        keys: Sequence[ApiKeyConfig],
        policy: Optional[KeyPoolPolicy] = None,
    ):
        self.store = store
        self.keys = tuple(keys)
        self.policy = policy or KeyPoolPolicy()

    @property
    def size(self) -> int:
        return len(self.keys)

    async def _load_state(self, config: ApiKeyConfig, now: float) -> ApiKeyState:
        minute = clock.epoch_minute(now)
        current_rpm = await self.store.get_int(f"keypool:rpm:{config.id}:{minute}")
        requests_today = await self.store.get_int(f"keypool:daily:{config.id}")
        errors = await self.store.get_int(f"keypool:errors:{config.id}")
        successes = await self.store.get_int(f"keypool:success:{config.id}")
        total = errors + successes

        cooldown_until = None
        state_key = f"keypool:state:{config.id}"
        record = await self.store.get_json(state_key)
        if record and record.get("in_cooldown"):
            until = float(record.get("cooldown_until") or 0)
            if until > now:
                cooldown_until = until
            else:
                # Expired cooldown; clear it so the key rejoins the pool
                await self.store.delete(state_key)

        return ApiKeyState(
            config=config,
            current_rpm=current_rpm,
            requests_today=requests_today,
            error_rate=(errors / total) if total else 0.0,
            total_requests=total,
            cooldown_until=cooldown_until,
        )

    def _is_usable(self, state: ApiKeyState) -> bool:
        if state.in_cooldown:
            return False
        if state.current_rpm >= state.config.rpm_limit:
            return False
        if state.config.daily_quota and state.requests_today >= state.config.daily_quota:
            return False
        if (
            state.total_requests >= self.policy.min_requests_for_error_rate
            and state.error_rate > self.policy.error_rate_threshold
        ):
            return False
        return True

    async def select_key(self) -> Optional[ApiKeyState]:
        """
        Returns the usable key with the lowest current-minute load, or None
        when every key is excluded. Ties go to the earlier-configured key.
        """
        now = clock.now()
        best: Optional[ApiKeyState] = None
        for config in self.keys:
            state = await self._load_state(config, now)
            if not self._is_usable(state):
                logger.debug(
                    "Key %s skipped (rpm=%d cooldown=%s error_rate=%.2f)",
                    config.id, state.current_rpm, state.in_cooldown, state.error_rate,
                )
                continue
            if best is None or state.current_rpm < best.current_rpm:
                best = state

        if best is None:
            logger.warning("No API key available out of %d configured", len(self.keys))
        return best

    async def record_success(self, key_id: str) -> None:
        now = clock.now()
        minute = clock.epoch_minute(now)
        await self.store.incr(f"keypool:rpm:{key_id}:{minute}", ttl=RPM_WINDOW_TTL)
        await self.store.incr(f"keypool:daily:{key_id}", ttl=clock.seconds_until_utc_midnight(now))
        await self.store.incr(f"keypool:success:{key_id}", ttl=HEALTH_WINDOW_TTL)

    async def record_failure(self, key_id: str, status_code: Optional[int] = None) -> None:
        """Counts the error; an upstream 429 also puts the key into cooldown."""
        await self.store.incr(f"keypool:errors:{key_id}", ttl=HEALTH_WINDOW_TTL)
        if status_code == 429:
            cooldown = self.policy.cooldown_seconds
            await self.store.set_json(
                f"keypool:state:{key_id}",
                {"in_cooldown": True, "cooldown_until": clock.now() + cooldown},
                ttl=cooldown + 10,
            )
            logger.warning("Key %s rate limited upstream; cooling down for %ds", key_id, cooldown)

    async def get_metrics(self) -> Dict:
        """Snapshot for the status and metrics endpoints."""
        now = clock.now()
        details = []
        available = 0
        in_cooldown = 0
        total_rpm = 0
        for config in self.keys:
            state = await self._load_state(config, now)
            usable = self._is_usable(state)
            available += int(usable)
            in_cooldown += int(state.in_cooldown)
            total_rpm += state.current_rpm
            details.append({
                "id": config.id,
                "tier": config.tier,
                "rpm_limit": config.rpm_limit,
                "current_rpm": state.current_rpm,
                "requests_today": state.requests_today,
                "error_rate": round(state.error_rate, 4),
                "in_cooldown": state.in_cooldown,
                "cooldown_until": state.cooldown_until,
                "available": usable,
            })

        if len(self.keys) >= 2 and available < 2:
            logger.warning("Key pool degraded: %d of %d keys available", available, len(self.keys))

        return {
            "total_keys": len(self.keys),
            "available_keys": available,
            "keys_in_cooldown": in_cooldown,
            "total_rpm": total_rpm,
            "keys": details,
        }


def create_key_pool(redis_store: RedisStore) -> KeyPool:
    configs = build_key_configs(
        settings.gemini_api_keys_list,
        rpm_limit=settings.gemini_key_rpm,
        tier=settings.gemini_key_tier,
        daily_quota=settings.gemini_key_daily_quota,
    )
    policy = KeyPoolPolicy(
        error_rate_threshold=settings.key_error_rate_threshold,
        min_requests_for_error_rate=settings.key_error_rate_min_requests,
        cooldown_seconds=settings.key_cooldown_seconds,
    )
    return KeyPool(redis_store, configs, policy)


key_pool = create_key_pool(store)
