"""Accrual calculator: which payout periods are due for an investment."""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from .models import (
    AMOUNT_PLACES,
    HOURS_PER_DAY,
    AccrualPlan,
    DuePeriod,
    IntervalType,
    Investment,
)


def interval_length(interval: IntervalType) -> timedelta:
    return IntervalType(interval).length


def period_amount(principal: Decimal, daily_rate: Decimal, interval: IntervalType) -> Decimal:
    """Return the payout for a single period, rounded to 8 decimal places.

    ``daily_rate`` is a fraction of the principal paid per day; hourly
    positions receive one twenty-fourth of it each hour.
    """

    amount = Decimal(principal) * Decimal(daily_rate)
    if IntervalType(interval) is IntervalType.HOURLY:
        amount = amount / HOURS_PER_DAY
    return amount.quantize(AMOUNT_PLACES, rounding=ROUND_HALF_UP)


def boundary_at(investment: Investment, index: int) -> datetime:
    """Exact instant at which period ``index`` (1-based) becomes due."""

    return investment.start_time + index * interval_length(investment.interval)


def expected_periods_elapsed(investment: Investment, now: datetime) -> int:
    """Number of boundaries that are ``<= min(now, end_time)``."""

    if investment.total_periods <= 0:
        return 0
    cutoff = min(now, investment.end_time)
    if cutoff < investment.start_time:
        return 0
    elapsed = (cutoff - investment.start_time) // interval_length(investment.interval)
    return min(int(elapsed), investment.total_periods)


def first_pending_index(investment: Investment) -> int:
    """Index of the first boundary after ``last_accrual_time``."""

    if investment.last_accrual_time is None:
        return 1
    recorded = (investment.last_accrual_time - investment.start_time) // interval_length(
        investment.interval
    )
    return max(int(recorded), 0) + 1


def compute_accruals(investment: Investment, now: datetime) -> AccrualPlan:
    """Return the due-but-unrecorded periods and the next future boundary.

    Boundaries are ``start_time + k * L`` for ``k`` in ``1..total_periods``;
    nothing is ever rounded to the wall clock. The range of due indices is
    derived arithmetically so a long outage costs no more than one run.
    """

    if investment.total_periods <= 0:
        return AccrualPlan(investment_id=investment.id, due=(), next_boundary=None)

    amount = period_amount(investment.principal, investment.daily_rate, investment.interval)
    first = first_pending_index(investment)
    last_due = expected_periods_elapsed(investment, now)

    due: List[DuePeriod] = [
        DuePeriod(index=k, accrual_time=boundary_at(investment, k), amount=amount)
        for k in range(first, last_due + 1)
    ]

    next_index = max(first, last_due + 1)
    next_boundary: Optional[datetime] = None
    if next_index <= investment.total_periods:
        next_boundary = boundary_at(investment, next_index)

    return AccrualPlan(investment_id=investment.id, due=tuple(due), next_boundary=next_boundary)


__all__ = [
    "boundary_at",
    "compute_accruals",
    "expected_periods_elapsed",
    "first_pending_index",
    "interval_length",
    "period_amount",
]
