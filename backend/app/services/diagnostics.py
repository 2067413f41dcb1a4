"""Read-only reconciliation, health and activity reporting for the ledger."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from app.config import AppSettings
from app.ledger.base import ZERO, Ledger, PayoutActivity, as_utc
from minehub.accrual import compute_accruals, expected_periods_elapsed, period_amount
from minehub.models import AMOUNT_PLACES, DuePeriod, IntervalType, Investment, PayoutEvent, utcnow

logger = logging.getLogger(__name__)

TIMEFRAMES: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
RECENT_EVENT_LIMIT = 10
TOP_ENGINE_LIMIT = 5


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True)
class DiagnosticsConfig:
    tolerance_periods: int = 1
    degraded_threshold: int = 10
    critical_threshold: int = 50

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "DiagnosticsConfig":
        return cls(
            tolerance_periods=settings.behind_schedule_tolerance_periods,
            degraded_threshold=settings.degraded_behind_threshold,
            critical_threshold=settings.critical_behind_threshold,
        )


@dataclass(frozen=True)
class BehindSchedule:
    investment_id: int
    owner_id: str
    interval: IntervalType
    expected_periods: int
    recorded_periods: int
    missing_periods: int
    missing_amount: Decimal
    last_accrual_time: Optional[datetime]
    matured: bool


@dataclass(frozen=True)
class ConservationMismatch:
    investment_id: int
    total_accrued: Decimal
    events_total: Decimal

    @property
    def difference(self) -> Decimal:
        return self.total_accrued - self.events_total


@dataclass
class HealthReport:
    status: HealthStatus
    checked_at: datetime
    active_count: int = 0
    matured_active_count: int = 0
    behind_schedule: list[BehindSchedule] = field(default_factory=list)
    conservation_mismatches: list[ConservationMismatch] = field(default_factory=list)

    @property
    def behind_schedule_count(self) -> int:
        return len(self.behind_schedule)


@dataclass
class InvestmentDiagnostics:
    investment: Investment
    checked_at: datetime
    expected_periods: int
    recorded_periods: int
    recorded_total: Decimal
    period_amount: Decimal
    due: list[DuePeriod]
    next_boundary: Optional[datetime]
    recent_events: list[PayoutEvent]

    @property
    def missing_periods(self) -> int:
        return max(self.expected_periods - self.recorded_periods, 0)

    @property
    def conservation_ok(self) -> bool:
        return self.investment.total_accrued == self.recorded_total


@dataclass
class IntervalActivity:
    interval: IntervalType
    events: int = 0
    investments: int = 0
    owners: int = 0
    total_amount: Decimal = ZERO
    average_amount: Decimal = ZERO
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


@dataclass(frozen=True)
class HourlyBucket:
    hour: int
    events: int
    total_amount: Decimal


@dataclass(frozen=True)
class EngineActivity:
    engine_name: Optional[str]
    interval: IntervalType
    events: int
    owners: int
    total_amount: Decimal


@dataclass
class ActivitySummary:
    timeframe: str
    start: datetime
    end: datetime
    total_events: int
    total_amount: Decimal
    by_interval: list[IntervalActivity]
    hourly_distribution: list[HourlyBucket]
    top_engines: list[EngineActivity] = field(default_factory=list)


@dataclass
class OwnerSummary:
    """Earnings position of one owner across all of their investments."""

    owner_id: str
    checked_at: datetime
    balance: Decimal
    total_earnings: Decimal
    active_investments: list[Investment]
    payout_count: int
    payout_total: Decimal
    last_payout_time: Optional[datetime]
    today_earnings: Decimal
    last_7_days_earnings: Decimal
    recent_payouts: list[PayoutActivity]

    @property
    def active_count(self) -> int:
        return len(self.active_investments)


def classify(behind: int, mismatches: int, config: DiagnosticsConfig) -> HealthStatus:
    if mismatches or behind > config.critical_threshold:
        return HealthStatus.CRITICAL
    if behind > config.degraded_threshold:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_PLACES)


class AccrualDiagnostics:
    """Audit the ledger independently of the accrual write path.

    Nothing here writes; every method only reads and reports, so it can run
    on any cadence alongside the scheduler.
    """

    def __init__(
        self,
        ledger: Ledger,
        config: DiagnosticsConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._ledger = ledger
        self._config = config or DiagnosticsConfig()
        self._clock = clock

    @property
    def config(self) -> DiagnosticsConfig:
        return self._config

    async def audit(self, now: datetime | None = None) -> HealthReport:
        now = as_utc(now) if now is not None else self._clock()
        investments = await self._ledger.list_active_investments(now)
        totals = await self._ledger.payout_totals(inv.id for inv in investments)

        behind: list[BehindSchedule] = []
        mismatches: list[ConservationMismatch] = []
        matured = 0
        for investment in investments:
            recorded = totals.get(investment.id)
            recorded_count = recorded.count if recorded else 0
            recorded_total = recorded.total_amount if recorded else ZERO
            is_matured = investment.end_time <= now
            matured += int(is_matured)

            expected = expected_periods_elapsed(investment, now)
            missing = expected - recorded_count
            if missing > self._config.tolerance_periods:
                amount = period_amount(investment.principal, investment.daily_rate, investment.interval)
                behind.append(
                    BehindSchedule(
                        investment_id=investment.id,
                        owner_id=investment.owner_id,
                        interval=investment.interval,
                        expected_periods=expected,
                        recorded_periods=recorded_count,
                        missing_periods=missing,
                        missing_amount=amount * missing,
                        last_accrual_time=investment.last_accrual_time,
                        matured=is_matured,
                    )
                )
            if _quantize(investment.total_accrued) != _quantize(recorded_total):
                mismatches.append(
                    ConservationMismatch(
                        investment_id=investment.id,
                        total_accrued=investment.total_accrued,
                        events_total=recorded_total,
                    )
                )

        status = classify(len(behind), len(mismatches), self._config)
        if status is not HealthStatus.HEALTHY:
            logger.warning(
                "Accrual audit %s: %s behind schedule, %s conservation mismatch(es)",
                status.value,
                len(behind),
                len(mismatches),
            )
        else:
            logger.info("Accrual audit healthy across %s active investment(s)", len(investments))
        return HealthReport(
            status=status,
            checked_at=now,
            active_count=len(investments),
            matured_active_count=matured,
            behind_schedule=behind,
            conservation_mismatches=mismatches,
        )

    async def inspect_investment(
        self, investment_id: int, now: datetime | None = None
    ) -> InvestmentDiagnostics | None:
        now = as_utc(now) if now is not None else self._clock()
        investment = await self._ledger.get_investment(investment_id)
        if investment is None:
            return None
        events = await self._ledger.list_payout_events(investment_id)
        plan = compute_accruals(investment, now)
        return InvestmentDiagnostics(
            investment=investment,
            checked_at=now,
            expected_periods=expected_periods_elapsed(investment, now),
            recorded_periods=len(events),
            recorded_total=sum((e.amount for e in events), ZERO),
            period_amount=period_amount(investment.principal, investment.daily_rate, investment.interval),
            due=list(plan.due) if investment.is_active else [],
            next_boundary=plan.next_boundary if investment.is_active else None,
            recent_events=list(reversed(events[-RECENT_EVENT_LIMIT:])),
        )

    async def activity_summary(self, now: datetime | None = None, timeframe: str = "24h") -> ActivitySummary:
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe '{timeframe}'; expected one of {', '.join(TIMEFRAMES)}")
        end = as_utc(now) if now is not None else self._clock()
        start = end - TIMEFRAMES[timeframe]
        activity = await self._ledger.payout_events_between(start, end)

        per_interval: dict[IntervalType, list] = defaultdict(list)
        hours: dict[int, list] = defaultdict(list)
        for item in activity:
            per_interval[item.interval].append(item)
            hours[item.accrual_time.hour].append(item.amount)

        by_interval = []
        for interval in IntervalType:
            items = per_interval.get(interval, [])
            if not items:
                continue
            total = sum((i.amount for i in items), ZERO)
            by_interval.append(
                IntervalActivity(
                    interval=interval,
                    events=len(items),
                    investments=len({i.investment_id for i in items}),
                    owners=len({i.owner_id for i in items}),
                    total_amount=total,
                    average_amount=_quantize(total / len(items)),
                    earliest=min(i.accrual_time for i in items),
                    latest=max(i.accrual_time for i in items),
                )
            )

        distribution = [
            HourlyBucket(hour=hour, events=len(amounts), total_amount=sum(amounts, ZERO))
            for hour, amounts in sorted(hours.items())
        ]
        return ActivitySummary(
            timeframe=timeframe,
            start=start,
            end=end,
            total_events=len(activity),
            total_amount=sum((i.amount for i in activity), ZERO),
            by_interval=by_interval,
            hourly_distribution=distribution,
            top_engines=_top_engines(activity),
        )

    async def owner_summary(self, owner_id: str, now: datetime | None = None) -> OwnerSummary:
        """Balances, active positions and recent payouts for one owner."""

        now = as_utc(now) if now is not None else self._clock()
        balance, total_earnings = await self._ledger.account_balance(owner_id)
        active = [inv for inv in await self._ledger.list_active_investments(now) if inv.owner_id == owner_id]
        payouts = [p for p in await self._ledger.payout_events_for_owner(owner_id) if p.accrual_time <= now]

        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)
        return OwnerSummary(
            owner_id=owner_id,
            checked_at=now,
            balance=balance,
            total_earnings=total_earnings,
            active_investments=active,
            payout_count=len(payouts),
            payout_total=sum((p.amount for p in payouts), ZERO),
            last_payout_time=payouts[-1].accrual_time if payouts else None,
            today_earnings=sum((p.amount for p in payouts if p.accrual_time >= today), ZERO),
            last_7_days_earnings=sum((p.amount for p in payouts if p.accrual_time >= week_ago), ZERO),
            recent_payouts=list(reversed(payouts[-RECENT_EVENT_LIMIT:])),
        )


def _top_engines(activity: list[PayoutActivity], limit: int = TOP_ENGINE_LIMIT) -> list[EngineActivity]:
    grouped: dict[tuple[Optional[str], IntervalType], list[PayoutActivity]] = defaultdict(list)
    for item in activity:
        grouped[(item.engine_name, item.interval)].append(item)

    engines = [
        EngineActivity(
            engine_name=engine_name,
            interval=interval,
            events=len(items),
            owners=len({i.owner_id for i in items}),
            total_amount=sum((i.amount for i in items), ZERO),
        )
        for (engine_name, interval), items in grouped.items()
    ]
    engines.sort(key=lambda e: (-e.total_amount, e.engine_name or "", e.interval.value))
    return engines[:limit]


__all__ = [
    "AccrualDiagnostics",
    "ActivitySummary",
    "BehindSchedule",
    "ConservationMismatch",
    "DiagnosticsConfig",
    "EngineActivity",
    "HealthReport",
    "HealthStatus",
    "HourlyBucket",
    "IntervalActivity",
    "InvestmentDiagnostics",
    "OwnerSummary",
    "TIMEFRAMES",
    "classify",
]
