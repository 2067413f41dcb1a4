"""Create accrual engine tables.

Revision ID: 0001_accrual_engine
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "0001_accrual_engine"
down_revision = None
branch_labels = None
depends_on = None

INTERVAL_VALUES = ("hourly", "daily")
STATUS_VALUES = ("active", "completed", "cancelled")


def upgrade() -> None:
    op.create_table(
        "investment",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("engine_id", sa.Integer(), nullable=True),
        sa.Column("engine_name", sa.String(length=128), nullable=True),
        sa.Column("principal", sa.Numeric(20, 8), nullable=False),
        sa.Column("daily_rate", sa.Numeric(12, 8), nullable=False),
        sa.Column("interval", sa.Enum(*INTERVAL_VALUES, name="accrual_interval"), nullable=False),
        sa.Column("total_periods", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_accrual_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_accrued", sa.Numeric(20, 8), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(*STATUS_VALUES, name="investment_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_investment_status_end_time", "investment", ["status", "end_time"])
    op.create_index("ix_investment_owner", "investment", ["owner_id"])

    op.create_table(
        "payout_event",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "investment_id",
            sa.Integer(),
            sa.ForeignKey("investment.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("accrual_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(20, 8), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("investment_id", "accrual_time", name="uq_payout_event_investment_time"),
    )
    op.create_index("ix_payout_event_accrual_time", "payout_event", ["accrual_time"])

    op.create_table(
        "account_balance",
        sa.Column("owner_id", sa.String(length=64), primary_key=True),
        sa.Column("balance", sa.Numeric(20, 8), nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Numeric(20, 8), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "engine_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_engine_outbox_status", "engine_outbox", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_engine_outbox_status", table_name="engine_outbox")
    op.drop_table("engine_outbox")
    op.drop_table("account_balance")
    op.drop_index("ix_payout_event_accrual_time", table_name="payout_event")
    op.drop_table("payout_event")
    op.drop_index("ix_investment_owner", table_name="investment")
    op.drop_index("ix_investment_status_end_time", table_name="investment")
    op.drop_table("investment")
    sa.Enum(name="investment_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="accrual_interval").drop(op.get_bind(), checkfirst=True)
