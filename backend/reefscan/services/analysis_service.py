"""
ReefScan Gateway — Analysis Orchestrator
=========================================

What:  Runs one analysis request end to end: idempotency → admission →
       cache → primary provider → fallback provider → bookkeeping.
Why:   Each coordination component answers a single question; this service
       owns the order they are asked in and what happens on each answer.
How:   Composes the rate limiter, cache, key pool, circuit breaker and the
       two providers, all injected through the constructor.

Orchestration Flow (POST /v1/analyze):
    ┌─────────────┐ hit  ┌──────────────────────────────┐
    │ idempotency │─────▶│ return stored response as-is │
    └──────┬──────┘      └──────────────────────────────┘
           ▼
    ┌─────────────┐ bad  ┌──────────────────────────────┐
    │ decode image│─────▶│ INVALID_REQUEST (400)        │
    └──────┬──────┘      └──────────────────────────────┘
           ▼
    ┌─────────────┐ no   ┌──────────────────────────────┐
    │ rate limit  │─────▶│ RATE_LIMIT_EXCEEDED (429)    │
    └──────┬──────┘      └──────────────────────────────┘
           ▼
    ┌─────────────┐ hit  ┌──────────────────────────────┐
    │ image cache │─────▶│ respond, store idempotency   │
    └──────┬──────┘      └──────────────────────────────┘
           ▼
    ┌─────────────┐ fail ┌──────────────┐ fail ┌─────────────────────┐
    │   Gemini    │─────▶│   OpenAI     │─────▶│ record error, raise │
    │ circuit+key │      │ circuit+cost │      └─────────────────────┘
    └──────┬──────┘      └──────┬───────┘
           └──────────┬─────────┘
                      ▼
         record success, cache, store idempotency, log usage

Guarantees:
    - A replayed request_id returns the exact stored response; no counter,
      provider or database is touched.
    - Quota is consumed at admission, before the provider call and after
      the image decodes; a malformed payload costs nothing.
    - Key, circuit and spend bookkeeping after a call is best effort: a
      store outage is logged and the paid answer is still returned.
    - Every provider call is bounded by provider_timeout_seconds; a timeout
      is recorded on the key and circuit like any other failure.
    - At most one fallback attempt; nothing is retried.
"""

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reefscan import clock
from reefscan.config import settings
from reefscan.exceptions import (
    AnalysisFailedError,
    ProviderError,
    RateLimitExceededError,
    StoreUnavailableError,
    ValidationError,
)
from reefscan.models.device import Device
from reefscan.schemas.analysis import AnalysisResult, AnalyzeRequest, ScanResult
from reefscan.services.cache_service import CacheService, cache_service
from reefscan.services.circuit_breaker import CircuitBreaker, circuit_breaker
from reefscan.services.gemini_service import gemini_provider
from reefscan.services.key_pool import KeyPool, key_pool
from reefscan.services.openai_service import OpenAIProvider, openai_provider
from reefscan.services.provider_base import AnalysisProvider, ProviderResult
from reefscan.services.rate_limiter import RateLimiter, RateLimitResult, rate_limiter
from reefscan.services.usage_service import UsageService, usage_service

logger = logging.getLogger(__name__)

FAILURE_MESSAGES = {
    "NO_CAPACITY": "All analysis capacity is currently in use. Please try again shortly.",
    "PROVIDER_UNAVAILABLE": "The analysis service is temporarily unavailable. Please try again shortly.",
    "COST_LIMIT": "The analysis service is temporarily unavailable. Please try again later.",
    "INVALID_RESPONSE": "The analysis service returned an unusable response.",
    "PARSE_ERROR": "The analysis service returned an unreadable response.",
    "PROVIDER_ERROR": "The analysis failed. Please try again.",
}


@dataclass
class AnalysisOutcome:
    """What the route needs: the response body and the rate-limit headers."""

    response: Dict[str, Any]
    rate_limit: Optional[RateLimitResult] = None
    source: str = "provider"


@dataclass
class _Attempt:
    provider: str
    api_key_id: Optional[str] = None
    result: Optional[ProviderResult] = None
    error_code: Optional[str] = None
    retry_after: Optional[int] = None


class AnalysisService:
    def __init__(
        self,
        limiter: RateLimiter,
        cache: CacheService,
        keys: KeyPool,
        breaker: CircuitBreaker,
        primary: AnalysisProvider,
        fallback: OpenAIProvider,
        usage: UsageService,
    ):
        self.limiter = limiter
        self.cache = cache
        self.keys = keys
        self.breaker = breaker
        self.primary = primary
        self.fallback = fallback
        self.usage = usage

    # ══════════════════════════════════════════════════════════════════════
    # Entry point
    # ══════════════════════════════════════════════════════════════════════

    async def analyze(
        self,
        db: AsyncSession,
        device: Device,
        request: AnalyzeRequest,
        request_id: str,
    ) -> AnalysisOutcome:
        """
        Raises:
            RateLimitExceededError: admission rejected
            ValidationError:        image data is not valid base64
            AnalysisFailedError:    no provider produced a result
        """
        stored = await self.cache.get_idempotent_result(request_id)
        if stored is not None:
            logger.info("[%s] Idempotent replay", request_id)
            return AnalysisOutcome(response=stored, source="idempotency")

        # Malformed payloads are rejected before they cost the device a scan
        image_bytes = self._decode_image(request.image.data)

        rate = await self._admit(device, request_id)

        image_hash = self.cache.hash_image(image_bytes)
        mode = request.mode
        start_time = time.perf_counter()

        cached = await self.cache.get_cached_result(image_hash, mode)
        if cached is not None:
            try:
                result = AnalysisResult.model_validate(cached)
            except ValueError:
                logger.warning("[%s] Discarding malformed cache entry %s", request_id, image_hash[:12])
                result = None
            if result is not None:
                response = self._build_response(result, request, request_id, rate)
                await self.cache.set_idempotent_result(request_id, response)
                await self.usage.record_success(
                    db, device.id, request_id, mode, "cache", None,
                    latency_ms=self._elapsed_ms(start_time), image_hash=image_hash,
                )
                return AnalysisOutcome(response=response, rate_limit=rate, source="cache")

        attempt = await self._try_primary(image_bytes, request, request_id)
        if attempt.result is None and self._fallback_enabled():
            attempt = await self._try_fallback(image_bytes, request, request_id)

        latency_ms = self._elapsed_ms(start_time)

        if attempt.result is None:
            code = attempt.error_code or "PROVIDER_ERROR"
            await self.usage.record_error(
                db, device.id, request_id, mode, attempt.provider, attempt.api_key_id,
                error_code=code, latency_ms=latency_ms, image_hash=image_hash,
            )
            logger.error(
                "[%s] Analysis failed: provider=%s key=%s code=%s latency=%dms",
                request_id, attempt.provider, attempt.api_key_id, code, latency_ms,
            )
            raise AnalysisFailedError(
                code=code,
                message=FAILURE_MESSAGES.get(code, FAILURE_MESSAGES["PROVIDER_ERROR"]),
                retry_after=attempt.retry_after,
                context={"provider": attempt.provider, "api_key_id": attempt.api_key_id},
            )

        provider_result = attempt.result
        await self.cache.cache_result(image_hash, mode, provider_result.result.model_dump())
        response = self._build_response(provider_result.result, request, request_id, rate)
        await self.cache.set_idempotent_result(request_id, response)
        await self.usage.record_success(
            db, device.id, request_id, mode, attempt.provider, attempt.api_key_id,
            latency_ms=latency_ms,
            tokens_input=provider_result.tokens_input,
            tokens_output=provider_result.tokens_output,
            image_hash=image_hash,
        )
        logger.info(
            "[%s] Analysis served by %s (key=%s, %dms, tokens=%d)",
            request_id, attempt.provider, attempt.api_key_id, latency_ms, provider_result.tokens_total,
        )
        return AnalysisOutcome(response=response, rate_limit=rate, source=attempt.provider)

    # ══════════════════════════════════════════════════════════════════════
    # Steps
    # ══════════════════════════════════════════════════════════════════════

    async def _admit(self, device: Device, request_id: str) -> Optional[RateLimitResult]:
        try:
            rate = await self.limiter.check(device.device_uuid, device.tier)
        except StoreUnavailableError as e:
            # Admission fails open: an outage of the store must not stop scans
            logger.error("[%s] Rate limiter unavailable, admitting request: %s", request_id, e.context)
            return None

        if not rate.allowed:
            messages = {
                "daily": "Daily scan limit reached",
                "minute": "Too many scans per minute",
                "global": "The service is busy. Please try again in a minute",
            }
            raise RateLimitExceededError(
                retry_after=rate.retry_after,
                message=messages.get(rate.reason or "", "Rate limit exceeded"),
                limit=rate.limit,
                remaining=rate.remaining,
                reset_at=rate.reset_at,
                tier=rate.tier,
                upgrade_url=rate.upgrade_url,
            )
        return rate

    @staticmethod
    def _decode_image(data: str) -> bytes:
        # Clients wrap long base64 at 76 columns
        compact = "".join(data.split())
        try:
            image_bytes = base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Image data is not valid base64", field="image.data")
        if not image_bytes:
            raise ValidationError("Image data is empty", field="image.data")
        if len(image_bytes) > settings.max_image_bytes:
            raise ValidationError("Image exceeds the maximum size", field="image.data")
        return image_bytes

    def _fallback_enabled(self) -> bool:
        return self.fallback.enabled and self.fallback.configured

    async def _call(self, provider: AnalysisProvider, image_bytes: bytes, request: AnalyzeRequest,
                    credential: Optional[str]) -> ProviderResult:
        try:
            return await asyncio.wait_for(
                provider.analyze(
                    image_bytes,
                    request.image.mime_type,
                    request.mode,
                    credential=credential,
                    language=request.options.language,
                ),
                timeout=settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProviderError("TIMEOUT", "Provider call timed out", provider=provider.name)

    async def _try_primary(self, image_bytes: bytes, request: AnalyzeRequest, request_id: str) -> _Attempt:
        name = self.primary.name
        try:
            if not await self.breaker.should_allow(name):
                logger.warning("[%s] Circuit %s open; skipping primary", request_id, name)
                return _Attempt(name, error_code="PROVIDER_UNAVAILABLE",
                                retry_after=await self.breaker.retry_after(name))
            key = await self.keys.select_key()
        except StoreUnavailableError as e:
            logger.error("[%s] Cannot read %s routing state: %s", request_id, name, e.context)
            return _Attempt(name, error_code="PROVIDER_UNAVAILABLE", retry_after=60)

        if key is None:
            return _Attempt(name, error_code="NO_CAPACITY", retry_after=60)

        try:
            result = await self._call(self.primary, image_bytes, request, key.key)
        except ProviderError as e:
            logger.warning(
                "[%s] Primary failed: key=%s code=%s status=%s",
                request_id, key.id, e.code, e.upstream_status,
            )
            await self._settle(request_id, self.keys.record_failure(key.id, e.upstream_status))
            await self._settle(request_id, self.breaker.record_failure(name))
            return _Attempt(name, api_key_id=key.id, error_code=self._terminal_code(e.code))

        await self._settle(request_id, self.keys.record_success(key.id))
        await self._settle(request_id, self.breaker.record_success(name))
        return _Attempt(name, api_key_id=key.id, result=result)

    async def _try_fallback(self, image_bytes: bytes, request: AnalyzeRequest, request_id: str) -> _Attempt:
        name = self.fallback.name
        try:
            if not await self.breaker.should_allow(name):
                logger.warning("[%s] Circuit %s open; no fallback available", request_id, name)
                return _Attempt(name, error_code="PROVIDER_UNAVAILABLE",
                                retry_after=await self.breaker.retry_after(name))
        except StoreUnavailableError as e:
            logger.error("[%s] Cannot read %s routing state: %s", request_id, name, e.context)
            return _Attempt(name, error_code="PROVIDER_UNAVAILABLE", retry_after=60)

        logger.info("[%s] Falling back to %s", request_id, name)
        try:
            result = await self._call(self.fallback, image_bytes, request, None)
        except ProviderError as e:
            logger.warning("[%s] Fallback failed: code=%s status=%s", request_id, e.code, e.upstream_status)
            if e.code == "STORE_UNAVAILABLE":
                return _Attempt(name, error_code="PROVIDER_UNAVAILABLE", retry_after=60)
            if e.code in ("COST_LIMIT", "DISABLED", "NOT_CONFIGURED"):
                # Refused before any call; says nothing about provider health
                return _Attempt(name, error_code=e.code)
            await self._settle(request_id, self.breaker.record_failure(name))
            return _Attempt(name, error_code=self._terminal_code(e.code))

        await self._settle(request_id, self.breaker.record_success(name))
        return _Attempt(name, api_key_id=name, result=result)

    @staticmethod
    async def _settle(request_id: str, update: Awaitable[None]) -> None:
        """Health bookkeeping after a call. An outage here must not cost the answer."""
        try:
            await update
        except StoreUnavailableError as e:
            logger.error("[%s] Health bookkeeping skipped, store unavailable: %s", request_id, e.context)

    @staticmethod
    def _terminal_code(provider_code: str) -> str:
        if provider_code in ("INVALID_RESPONSE", "PARSE_ERROR", "COST_LIMIT"):
            return provider_code
        return "PROVIDER_ERROR"

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)

    def _build_response(
        self,
        result: AnalysisResult,
        request: AnalyzeRequest,
        request_id: str,
        rate: Optional[RateLimitResult],
    ) -> Dict[str, Any]:
        if rate is not None:
            daily_limit = rate.limit
            used = rate.limit - rate.remaining
            reset_at = rate.reset_at
        else:
            daily_limit = settings.daily_limit_for("free")
            used = 0
            reset_at = clock.next_utc_midnight()

        body = result.model_dump()
        if not request.options.include_recommendations:
            body["recommendations"] = []

        scan = ScanResult(
            **body,
            request_id=request_id,
            usage={
                "requests_today": used,
                "daily_limit": daily_limit,
                "reset_at": clock.to_iso(reset_at),
            },
        )
        return scan.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════════════════
    # Status
    # ══════════════════════════════════════════════════════════════════════

    async def get_provider_status(self) -> Dict[str, Any]:
        circuits = await self.breaker.get_all_status()
        pool = await self.keys.get_metrics()
        primary_state = circuits.get(self.primary.name, {}).get("state", "CLOSED")
        fallback_state = circuits.get(self.fallback.name, {}).get("state", "CLOSED")

        return {
            "providers": {
                self.primary.name: {
                    "available": primary_state != "OPEN" and pool["available_keys"] > 0,
                    "circuit_state": primary_state,
                    "keys_available": pool["available_keys"],
                    "keys_total": pool["total_keys"],
                },
                self.fallback.name: {
                    "available": fallback_state != "OPEN" and await self.fallback.is_available(),
                    "circuit_state": fallback_state,
                    "daily_cost": round(await self.fallback.get_current_daily_cost(), 4),
                    "max_daily_cost": settings.openai_max_cost_per_day,
                },
            },
            "cache_enabled": self.cache.enabled,
        }


analysis_service = AnalysisService(
    limiter=rate_limiter,
    cache=cache_service,
    keys=key_pool,
    breaker=circuit_breaker,
    primary=gemini_provider,
    fallback=openai_provider,
    usage=usage_service,
)
