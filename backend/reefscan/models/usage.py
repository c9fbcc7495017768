"""
ReefScan Gateway — Usage SQLAlchemy Models
===========================================

What:  `request_logs` (one row per analysis that reached a provider decision)
       and `daily_usage` (per-device per-day rollup).
Why:   Redis counters expire; these tables are the durable accounting used
       by usage stats, the metrics dashboard and data export.

Query Patterns:
    - Stats for a device over a date range → idx_request_logs_device_created
    - Dashboard aggregates over the last 24h → idx_request_logs_created_at
    - Daily totals → daily_usage primary key (device_id, date)
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Date, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from reefscan.database import Base


class RequestLog(Base):
    """A single analysis attempt and how it was served."""

    __tablename__ = "request_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )

    request_id: Mapped[str] = mapped_column(String(128), nullable=False)
    mode: Mapped[str] = mapped_column(String(32), nullable=False)
    image_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # What: gemini, openai, or cache
    provider_used: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    api_key_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # What: success or error
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tokens_input: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tokens_output: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_request_logs_device_created", "device_id", created_at.desc()),
        Index("idx_request_logs_created_at", created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<RequestLog(request_id='{self.request_id}', status='{self.status}', "
            f"provider='{self.provider_used}')>"
        )


class DailyUsage(Base):
    """Per-device per-UTC-day request and token totals."""

    __tablename__ = "daily_usage"

    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("devices.id", ondelete="CASCADE"),
        primary_key=True,
    )
    usage_date: Mapped[date] = mapped_column("date", Date, primary_key=True)
    request_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    tokens_used: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
