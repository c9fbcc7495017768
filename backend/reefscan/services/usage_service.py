"""
ReefScan Gateway — Usage Accounting
====================================

What:  Durable record of analysis attempts (request_logs) and the per-day
       rollup (daily_usage), plus the read side used by /v1/usage.
Why:   Redis counters answer "may this request run?"; these tables answer
       "what did this device use?", which outlives any Redis TTL.
How:   Writes are best effort. A failed insert is logged and rolled back but
       never fails the analysis the user already received.

Retention:
    request_logs rows older than REQUEST_LOG_RETENTION_DAYS are purged by
    purge_old_request_logs(); daily_usage is kept indefinitely.
"""

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reefscan import clock
from reefscan.config import settings
from reefscan.exceptions import DatabaseError
from reefscan.models.device import Device
from reefscan.models.usage import DailyUsage, RequestLog
from reefscan.services.rate_limiter import RateLimiter, rate_limiter

logger = logging.getLogger(__name__)

REQUEST_LOG_RETENTION_DAYS = 30
DEFAULT_STATS_DAYS = 30


class UsageService:
    def __init__(self, limiter: RateLimiter):
        self.limiter = limiter

    # ── Writes ────────────────────────────────────────────────────────────

    async def record_success(
        self,
        db: AsyncSession,
        device_id: uuid.UUID,
        request_id: str,
        mode: str,
        provider: str,
        api_key_id: Optional[str],
        latency_ms: int,
        tokens_input: int = 0,
        tokens_output: int = 0,
        image_hash: Optional[str] = None,
    ) -> bool:
        """Inserts a success log row and bumps today's rollup."""
        tokens = tokens_input + tokens_output
        try:
            db.add(RequestLog(
                device_id=device_id,
                request_id=request_id,
                mode=mode,
                image_hash=image_hash,
                provider_used=provider,
                api_key_id=api_key_id,
                status="success",
                latency_ms=latency_ms,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
            ))
            stmt = pg_insert(DailyUsage).values(
                device_id=device_id,
                usage_date=clock.utc_today(),
                request_count=1,
                tokens_used=tokens,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[DailyUsage.device_id, DailyUsage.usage_date],
                set_={
                    "request_count": DailyUsage.request_count + 1,
                    "tokens_used": DailyUsage.tokens_used + tokens,
                },
            )
            await db.execute(stmt)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("[%s] Failed to record usage for device %s: %s", request_id, device_id, e)
            await db.rollback()
            return False
        return True

    async def record_error(
        self,
        db: AsyncSession,
        device_id: uuid.UUID,
        request_id: str,
        mode: str,
        provider: Optional[str],
        api_key_id: Optional[str],
        error_code: str,
        latency_ms: int,
        image_hash: Optional[str] = None,
    ) -> bool:
        """Inserts an error log row; errors do not count toward daily_usage."""
        try:
            db.add(RequestLog(
                device_id=device_id,
                request_id=request_id,
                mode=mode,
                image_hash=image_hash,
                provider_used=provider,
                api_key_id=api_key_id,
                status="error",
                latency_ms=latency_ms,
                error_code=error_code,
            ))
            # Committed now: the failing request's session is rolled back after
            await db.commit()
        except SQLAlchemyError as e:
            logger.error("[%s] Failed to record error for device %s: %s", request_id, device_id, e)
            await db.rollback()
            return False
        return True

    async def purge_old_request_logs(
        self, db: AsyncSession, retention_days: int = REQUEST_LOG_RETENTION_DAYS
    ) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        try:
            result = await db.execute(delete(RequestLog).where(RequestLog.created_at < cutoff))
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "purge_request_logs", "error": str(e)})
        deleted = result.rowcount or 0
        logger.info("Purged %d request logs older than %s", deleted, cutoff.date())
        return deleted

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_usage(self, device_uuid: str, tier: str) -> Dict[str, Any]:
        """Today's quota standing, from the same counter admission uses."""
        used = await self.limiter.get_daily_usage(device_uuid)
        return {
            "daily": {
                "used": used,
                "limit": settings.daily_limit_for(tier),
                "reset_at": clock.to_iso(clock.next_utc_midnight()),
            },
            "tier": tier,
            "subscription_status": "active" if tier == "premium" else "none",
            "upgrade_url": settings.upgrade_url if tier == "free" else None,
        }

    async def get_usage_stats(
        self,
        db: AsyncSession,
        device_id: uuid.UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Totals, per-mode and per-day breakdown over an inclusive date range."""
        end = end_date or clock.utc_today()
        start = start_date or (end - timedelta(days=DEFAULT_STATS_DAYS - 1))
        range_start = datetime.combine(start, datetime.min.time(), tzinfo=timezone.utc)
        range_end = datetime.combine(end + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)

        try:
            daily_rows = (await db.execute(
                select(DailyUsage.usage_date, DailyUsage.request_count, DailyUsage.tokens_used)
                .where(
                    DailyUsage.device_id == device_id,
                    DailyUsage.usage_date >= start,
                    DailyUsage.usage_date <= end,
                )
                .order_by(DailyUsage.usage_date)
            )).all()

            mode_rows = (await db.execute(
                select(RequestLog.mode, func.count(RequestLog.id))
                .where(
                    RequestLog.device_id == device_id,
                    RequestLog.status == "success",
                    RequestLog.created_at >= range_start,
                    RequestLog.created_at < range_end,
                )
                .group_by(RequestLog.mode)
            )).all()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "get_usage_stats", "error": str(e)})

        return {
            "start_date": start,
            "end_date": end,
            "total_requests": sum(r[1] for r in daily_rows),
            "total_tokens": sum(r[2] for r in daily_rows),
            "by_mode": {mode: int(count) for mode, count in mode_rows},
            "by_date": [
                {"date": d, "requests": count, "tokens": tokens}
                for d, count, tokens in daily_rows
            ],
        }

    async def export_device_data(self, db: AsyncSession, device: Device) -> Dict[str, Any]:
        """Everything held about a device, for a data-access request."""
        try:
            usage_rows = (await db.execute(
                select(DailyUsage.usage_date, DailyUsage.request_count, DailyUsage.tokens_used)
                .where(DailyUsage.device_id == device.id)
                .order_by(DailyUsage.usage_date)
            )).all()
            logs = (await db.execute(
                select(RequestLog)
                .where(RequestLog.device_id == device.id)
                .order_by(RequestLog.created_at.desc())
            )).scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "export_device_data", "error": str(e)})

        return {
            "device": {
                "device_uuid": device.device_uuid,
                "platform": device.platform,
                "app_version": device.app_version,
                "tier": device.tier,
                "subscription_id": device.subscription_id,
                "created_at": device.created_at,
                "last_seen_at": device.last_seen_at,
            },
            "usage_history": [
                {"date": d, "requests": count, "tokens": tokens}
                for d, count, tokens in usage_rows
            ],
            "request_history": list(logs),
            "data_retention": {
                "request_logs": f"{REQUEST_LOG_RETENTION_DAYS} days",
                "daily_usage": "until account deletion",
                "cached_results": f"{settings.cache_image_ttl_days} days, keyed by image hash only",
            },
            "exported_at": datetime.now(timezone.utc),
        }


usage_service = UsageService(rate_limiter)
