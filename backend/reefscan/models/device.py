"""
ReefScan Gateway — Device SQLAlchemy Model
===========================================

What:  ORM model for the `devices` table: one row per installed app.
Why:   The device is the unit of identity, quota and revocation. There are
       no user accounts; a client-generated UUID identifies the install.
How:   Mapped/mapped_column declarations; Alembic migration 001 mirrors them.

Table Design Rationale:
    - device_uuid: the client's UUID, unique; `id` is our own surrogate key
      so request logs survive a client regenerating its UUID format
    - token_version: bumped on revoke, tier change and block; every token
      embeds the version it was minted with, so a bump invalidates them all
    - tier: 'free' | 'premium', copied into access tokens
    - metadata: free-form JSON for support notes
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from reefscan.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Device(Base):
    """
    A registered app install.

    Lifecycle:
        1. Created on first /v1/auth/register (tier=free, token_version=1)
        2. last_seen_at/app_version refreshed on every re-registration
        3. token_version bumped on revoke, tier change or block
        4. Deleted only by account erasure (cascades to request_logs)
    """

    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    device_uuid: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Client-generated install identifier",
    )

    platform: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="ios or android",
    )

    app_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    last_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    token_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default=text("1"),
        comment="Incremented to invalidate every outstanding token",
    )

    tier: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="free",
        server_default=text("'free'"),
        comment="Subscription tier: free, premium",
    )

    subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    is_blocked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )

    block_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes; the column keeps the name
    extra_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    __table_args__ = (
        Index("idx_devices_tier", "tier"),
    )

    @property
    def subscription_status(self) -> str:
        return "active" if self.tier == "premium" else "none"

    def __repr__(self) -> str:
        return (
            f"<Device(device_uuid='{self.device_uuid}', tier='{self.tier}', "
            f"token_version={self.token_version})>"
        )
