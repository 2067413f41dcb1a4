"""Investment positions and their recorded payout events."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from minehub.models import IntervalType, InvestmentStatus, utcnow


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class InvestmentRecord(Base):
    """Purchased position: frozen terms plus the accrual state."""

    __tablename__ = "investment"
    __table_args__ = (
        Index("ix_investment_status_end_time", "status", "end_time"),
        Index("ix_investment_owner", "owner_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    engine_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    engine_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    principal: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(12, 8), nullable=False)
    interval: Mapped[IntervalType] = mapped_column(
        Enum(IntervalType, name="accrual_interval", values_callable=_enum_values),
        nullable=False,
    )
    total_periods: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accrual_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_accrued: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    status: Mapped[InvestmentStatus] = mapped_column(
        Enum(InvestmentStatus, name="investment_status", values_callable=_enum_values),
        nullable=False,
        default=InvestmentStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    payouts: Mapped[list["PayoutEventRecord"]] = relationship(back_populates="investment")


class PayoutEventRecord(Base):
    """One payout per (investment, accrual boundary); never updated."""

    __tablename__ = "payout_event"
    __table_args__ = (
        UniqueConstraint("investment_id", "accrual_time", name="uq_payout_event_investment_time"),
        Index("ix_payout_event_accrual_time", "accrual_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    investment_id: Mapped[int] = mapped_column(
        ForeignKey("investment.id", ondelete="CASCADE"), nullable=False
    )
    accrual_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    investment: Mapped[InvestmentRecord] = relationship(back_populates="payouts")


__all__ = ["InvestmentRecord", "PayoutEventRecord"]
