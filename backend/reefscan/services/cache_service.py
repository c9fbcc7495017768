"""
ReefScan Gateway — Result Cache & Idempotency
==============================================

What:  Two content-addressed stores in Redis:
         cache:image:{sha256}:{mode}   normalized analysis result, TTL 7 days
         idempotency:{request_id}      final response sent, TTL 24 hours
       plus a hit counter cache:hits:{sha256}.
Why:   Users re-scan the same photo; a cache hit answers without spending a
       provider call or quota. Mobile clients retry on flaky networks; the
       idempotency entry makes a retried request return exactly what the
       first attempt returned.
How:   Everything here is best effort. A Redis failure is logged and treated
       as a miss (reads) or as "not stored" (writes); it never fails the
       analysis.
"""

import hashlib
import logging
from typing import Any, Dict, Optional

from reefscan.config import settings
from reefscan.exceptions import StoreUnavailableError
from reefscan.schemas.analysis import ANALYSIS_MODES
from reefscan.store import RedisStore, store

logger = logging.getLogger(__name__)

HIT_COUNTER_TTL = 7 * 86400


class CacheService:
    def __init__(self, store: RedisStore):
        self.store = store

    @property
    def enabled(self) -> bool:
        return settings.enable_image_caching

    @property
    def image_ttl(self) -> int:
        return settings.cache_image_ttl_days * 86400

    @property
    def idempotency_ttl(self) -> int:
        return settings.idempotency_ttl_hours * 3600

    @staticmethod
    def hash_image(image_bytes: bytes) -> str:
        """SHA-256 hex digest of the decoded image bytes."""
        return hashlib.sha256(image_bytes).hexdigest()

    @staticmethod
    def _image_key(image_hash: str, mode: str) -> str:
        return f"cache:image:{image_hash}:{mode}"

    # ── Image cache ───────────────────────────────────────────────────────

    async def get_cached_result(self, image_hash: str, mode: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            cached = await self.store.get_json(self._image_key(image_hash, mode))
            if cached is None:
                return None
            await self.store.incr(f"cache:hits:{image_hash}", ttl=HIT_COUNTER_TTL)
        except StoreUnavailableError as e:
            logger.warning("Cache read failed for %s:%s: %s", image_hash[:12], mode, e.context)
            return None
        logger.info("Cache hit for image %s (%s)", image_hash[:12], mode)
        return cached

    async def cache_result(self, image_hash: str, mode: str, result: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            await self.store.set_json(self._image_key(image_hash, mode), result, ttl=self.image_ttl)
        except StoreUnavailableError as e:
            logger.warning("Cache write failed for %s:%s: %s", image_hash[:12], mode, e.context)
            return False
        return True

    async def get_cache_hit_count(self, image_hash: str) -> int:
        try:
            return await self.store.get_int(f"cache:hits:{image_hash}")
        except StoreUnavailableError:
            return 0

    async def invalidate_image(self, image_hash: str) -> bool:
        """Drops the cached result for every mode plus the hit counter."""
        keys = [self._image_key(image_hash, mode) for mode in ANALYSIS_MODES]
        keys.append(f"cache:hits:{image_hash}")
        try:
            await self.store.delete(*keys)
        except StoreUnavailableError as e:
            logger.warning("Cache invalidation failed for %s: %s", image_hash[:12], e.context)
            return False
        return True

    # ── Idempotency ───────────────────────────────────────────────────────

    async def get_idempotent_result(self, request_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.get_json(f"idempotency:{request_id}")
        except StoreUnavailableError as e:
            logger.warning("Idempotency read failed for %s: %s", request_id, e.context)
            return None

    async def set_idempotent_result(self, request_id: str, response: Dict[str, Any]) -> bool:
        try:
            await self.store.set_json(f"idempotency:{request_id}", response, ttl=self.idempotency_ttl)
        except StoreUnavailableError as e:
            logger.warning("Idempotency write failed for %s: %s", request_id, e.context)
            return False
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "image_ttl_seconds": self.image_ttl,
            "idempotency_ttl_seconds": self.idempotency_ttl,
        }


cache_service = CacheService(store)
