"""Create devices, request_logs and daily_usage tables

Revision ID: 001
Revises: None
Create Date: 2025-01-10 00:00:00.000000+00:00

What:  Initial schema of the gateway: registered devices, per-request logs
       and the per-day usage rollup.
How:   PostgreSQL-specific types: UUID keys (gen_random_uuid()), JSONB,
       TIMESTAMP WITH TIME ZONE.

Rollback: downgrade() drops all three tables (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("device_uuid", sa.String(64), nullable=False, comment="Client-generated install identifier"),
        sa.Column("platform", sa.String(16), nullable=False, comment="ios or android"),
        sa.Column("app_version", sa.String(32), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "last_seen_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "token_version",
            sa.Integer(),
            server_default=sa.text("1"),
            nullable=False,
            comment="Incremented to invalidate every outstanding token",
        ),
        sa.Column(
            "tier",
            sa.String(16),
            server_default=sa.text("'free'"),
            nullable=False,
            comment="Subscription tier: free, premium",
        ),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("block_reason", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_uuid", name="uq_devices_device_uuid"),
    )
    op.create_index("idx_devices_tier", "devices", ["tier"])

    op.create_table(
        "request_logs",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", sa.String(128), nullable=False),
        sa.Column("mode", sa.String(32), nullable=False),
        sa.Column("image_hash", sa.String(64), nullable=True),
        sa.Column("provider_used", sa.String(32), nullable=True, comment="gemini, openai or cache"),
        sa.Column("api_key_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, comment="success or error"),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("tokens_input", sa.Integer(), nullable=True),
        sa.Column("tokens_output", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
    )
    # Per-device history pages and stats ranges
    op.create_index(
        "idx_request_logs_device_created",
        "request_logs",
        ["device_id", sa.text("created_at DESC")],
    )
    # Dashboard aggregates over recent traffic
    op.create_index(
        "idx_request_logs_created_at",
        "request_logs",
        [sa.text("created_at DESC")],
    )

    op.create_table(
        "daily_usage",
        sa.Column("device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("request_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("tokens_used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.PrimaryKeyConstraint("device_id", "date"),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
    )


def downgrade() -> None:
    """Drops all gateway tables; every device and usage record is lost."""
    op.drop_table("daily_usage")
    op.drop_index("idx_request_logs_created_at", table_name="request_logs")
    op.drop_index("idx_request_logs_device_created", table_name="request_logs")
    op.drop_table("request_logs")
    op.drop_index("idx_devices_tier", table_name="devices")
    op.drop_table("devices")
