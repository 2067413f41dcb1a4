"""Domain models used by the mining-engine accrual engine."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

AMOUNT_PLACES = Decimal("0.00000001")
HOURS_PER_DAY = 24


def utcnow() -> datetime:
    """Return the current instant as an aware UTC datetime."""

    return datetime.now(timezone.utc)


class IntervalType(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def length(self) -> timedelta:
        """Length of one payout period."""

        if self is IntervalType.HOURLY:
            return timedelta(hours=1)
        return timedelta(days=1)


class InvestmentStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InsertOutcome(str, enum.Enum):
    """Result of an idempotent payout insert."""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class EngineTemplate:
    """Offer definition a purchase snapshots its terms from.

    ``daily_earning_rate`` is a percentage (``2.4`` means 2.4% per day).
    """

    name: str
    daily_earning_rate: Decimal
    interval: IntervalType = IntervalType.DAILY
    duration_days: Optional[int] = None
    duration_hours: Optional[int] = None
    is_active: bool = True
    id: Optional[int] = None


@dataclass(frozen=True)
class NewInvestment:
    """Terms of a freshly purchased position, before it gets an id."""

    owner_id: str
    principal: Decimal
    daily_rate: Decimal
    interval: IntervalType
    total_periods: int
    start_time: datetime
    engine_id: Optional[int] = None
    engine_name: Optional[str] = None

    @property
    def end_time(self) -> datetime:
        return self.start_time + self.total_periods * self.interval.length


@dataclass(frozen=True)
class Investment:
    """Fully typed snapshot of a purchased position.

    Terms are frozen at purchase; ``daily_rate`` is a fraction applied to the
    principal once per day (hourly positions receive 1/24 of it per hour).
    """

    id: int
    owner_id: str
    principal: Decimal
    daily_rate: Decimal
    interval: IntervalType
    total_periods: int
    start_time: datetime
    end_time: datetime
    last_accrual_time: Optional[datetime] = None
    total_accrued: Decimal = Decimal("0")
    status: InvestmentStatus = InvestmentStatus.ACTIVE
    engine_id: Optional[int] = None
    engine_name: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is InvestmentStatus.ACTIVE


@dataclass(frozen=True)
class PayoutEvent:
    """One recorded payout; ``(investment_id, accrual_time)`` is unique."""

    investment_id: int
    accrual_time: datetime
    amount: Decimal
    created_at: datetime = field(default_factory=utcnow)
    note: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class DuePeriod:
    """A period boundary that is due and the amount it pays."""

    index: int
    accrual_time: datetime
    amount: Decimal


@dataclass(frozen=True)
class AccrualPlan:
    """Output of the accrual calculator for one investment at one instant."""

    investment_id: int
    due: tuple[DuePeriod, ...]
    next_boundary: Optional[datetime]

    @property
    def total_amount(self) -> Decimal:
        return sum((period.amount for period in self.due), Decimal("0"))

    def __len__(self) -> int:
        return len(self.due)
