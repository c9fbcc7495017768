"""
ReefScan Gateway — Circuit Breaker
===================================

What:  Per-provider failure isolation shared by all gateway instances.
Why:   When a provider is down, every request would otherwise wait out a
       full timeout before failing. An open circuit fails (or falls back)
       immediately and gives the provider time to recover.
How:   A pure state machine whose state is one JSON document per provider
       at `circuit:{provider}:state` (TTL 3600s). Each call reads the
       latest state and writes the whole document back; concurrent writers
       are last-write-wins.

State machine:
    CLOSED ──(failures ≥ failure_threshold)──────────────→ OPEN
    OPEN ────(now ≥ next_attempt, checked lazily)────────→ HALF_OPEN
    HALF_OPEN ──(successes ≥ success_threshold)──────────→ CLOSED
    HALF_OPEN ──(any failure)────────────────────────────→ OPEN

    Entering OPEN resets both counters and sets next_attempt = now + timeout.
    Entering HALF_OPEN or CLOSED resets both counters and clears next_attempt.
    HALF_OPEN admits requests only while successes < half_open_requests.

Last-write-wins consequences:
    Two instances recording failures at once may lose one increment, which
    at worst delays opening by a request. Two instances racing OPEN →
    HALF_OPEN both admit their request as a probe. Both are acceptable.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional

from reefscan import clock
from reefscan.config import settings
from reefscan.store import RedisStore, store

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

STATE_TTL = 3600


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 3
    timeout_seconds: int = 30
    half_open_requests: int = 3


@dataclass
class CircuitState:
    state: str = CLOSED
    failures: int = 0
    successes: int = 0
    last_failure: Optional[float] = None
    last_success: Optional[float] = None
    next_attempt: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "CircuitState":
        if not data:
            return cls()
        state = data.get("state", CLOSED)
        if state not in (CLOSED, OPEN, HALF_OPEN):
            state = CLOSED
        return cls(
            state=state,
            failures=int(data.get("failures") or 0),
            successes=int(data.get("successes") or 0),
            last_failure=data.get("last_failure"),
            last_success=data.get("last_success"),
            next_attempt=data.get("next_attempt"),
        )


class CircuitBreaker:
    """Circuit state per provider name, persisted in the shared store."""

    def __init__(self, store: RedisStore, configs: Mapping[str, CircuitBreakerConfig]):
        self.store = store
        self.configs = dict(configs)

    def _config(self, provider: str) -> CircuitBreakerConfig:
        return self.configs.get(provider) or CircuitBreakerConfig()

    @staticmethod
    def _key(provider: str) -> str:
        return f"circuit:{provider}:state"

    async def get_state(self, provider: str) -> CircuitState:
        return CircuitState.from_dict(await self.store.get_json(self._key(provider)))

    async def _save(self, provider: str, state: CircuitState) -> None:
        await self.store.set_json(self._key(provider), state.to_dict(), ttl=STATE_TTL)

    def _transition(self, provider: str, state: CircuitState, target: str, now: float) -> None:
        logger.warning("Circuit %s: %s → %s", provider, state.state, target)
        state.state = target
        state.failures = 0
        state.successes = 0
        if target == OPEN:
            state.next_attempt = now + self._config(provider).timeout_seconds
        else:
            state.next_attempt = None

    async def should_allow(self, provider: str) -> bool:
        """Whether a request may be sent to `provider` right now."""
        state = await self.get_state(provider)
        if state.state == CLOSED:
            return True

        if state.state == OPEN:
            now = clock.now()
            if state.next_attempt is not None and now >= state.next_attempt:
                self._transition(provider, state, HALF_OPEN, now)
                await self._save(provider, state)
                return True
            return False

        return state.successes < self._config(provider).half_open_requests

    async def record_success(self, provider: str) -> None:
        now = clock.now()
        state = await self.get_state(provider)
        state.last_success = now

        if state.state == CLOSED:
            state.failures = 0
        elif state.state == HALF_OPEN:
            state.successes += 1
            if state.successes >= self._config(provider).success_threshold:
                self._transition(provider, state, CLOSED, now)

        await self._save(provider, state)

    async def record_failure(self, provider: str) -> None:
        now = clock.now()
        state = await self.get_state(provider)
        state.failures += 1
        state.last_failure = now

        if state.state == HALF_OPEN:
            self._transition(provider, state, OPEN, now)
        elif state.state == CLOSED and state.failures >= self._config(provider).failure_threshold:
            self._transition(provider, state, OPEN, now)

        await self._save(provider, state)

    async def reset(self, provider: str) -> None:
        """Force the circuit closed (operator action)."""
        await self._save(provider, CircuitState())
        logger.info("Circuit %s manually reset", provider)

    async def retry_after(self, provider: str) -> int:
        """Seconds until an open circuit will admit a probe (0 if not open)."""
        state = await self.get_state(provider)
        if state.state != OPEN or state.next_attempt is None:
            return 0
        return max(1, int(state.next_attempt - clock.now()))

    async def get_all_status(self) -> Dict[str, Dict]:
        return {
            provider: (await self.get_state(provider)).to_dict()
            for provider in self.configs
        }


def create_circuit_breaker(redis_store: RedisStore) -> CircuitBreaker:
    return CircuitBreaker(
        redis_store,
        {
            "gemini": CircuitBreakerConfig(
                failure_threshold=settings.cb_gemini_failure_threshold,
                success_threshold=settings.cb_gemini_success_threshold,
                timeout_seconds=settings.cb_gemini_timeout_seconds,
                half_open_requests=settings.cb_gemini_half_open_requests,
            ),
            "openai": CircuitBreakerConfig(
                failure_threshold=settings.cb_openai_failure_threshold,
                success_threshold=settings.cb_openai_success_threshold,
                timeout_seconds=settings.cb_openai_timeout_seconds,
                half_open_requests=settings.cb_openai_half_open_requests,
            ),
        },
    )


circuit_breaker = create_circuit_breaker(store)
