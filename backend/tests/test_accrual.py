from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from minehub.accrual import (
    compute_accruals,
    expected_periods_elapsed,
    first_pending_index,
    period_amount,
)
from minehub.models import IntervalType, Investment

T = datetime(2024, 1, 1, 16, 0, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


def build_investment(**overrides) -> Investment:
    values = dict(
        id=1,
        owner_id="owner-1",
        principal=Decimal("1000"),
        daily_rate=Decimal("0.024"),
        interval=IntervalType.HOURLY,
        total_periods=24,
        start_time=T,
    )
    values.update(overrides)
    values.setdefault(
        "end_time",
        values["start_time"] + values["total_periods"] * IntervalType(values["interval"]).length,
    )
    return Investment(**values)


def test_catch_up_returns_every_missed_hour():
    investment = build_investment()

    plan = compute_accruals(investment, T + 5 * HOUR)

    assert [p.accrual_time for p in plan.due] == [T + k * HOUR for k in range(1, 6)]
    assert [p.index for p in plan.due] == [1, 2, 3, 4, 5]
    assert all(p.amount == Decimal("1.00000000") for p in plan.due)
    assert plan.total_amount == Decimal("5")
    assert plan.next_boundary == T + 6 * HOUR


def test_daily_boundaries_follow_purchase_time_not_midnight():
    investment = build_investment(interval=IntervalType.DAILY, total_periods=3, daily_rate=Decimal("0.02"))

    plan = compute_accruals(investment, T + 30 * DAY)

    assert [p.accrual_time for p in plan.due] == [
        datetime(2024, 1, 2, 16, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 3, 16, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 4, 16, 0, tzinfo=timezone.utc),
    ]
    assert all(p.amount == Decimal("20.00000000") for p in plan.due)
    assert plan.next_boundary is None


def test_before_start_nothing_is_due():
    investment = build_investment()

    plan = compute_accruals(investment, T - 10 * HOUR)

    assert plan.due == ()
    assert plan.next_boundary == T + HOUR


def test_boundary_equal_to_now_is_due():
    investment = build_investment()

    plan = compute_accruals(investment, T + HOUR)

    assert [p.accrual_time for p in plan.due] == [T + HOUR]
    assert plan.next_boundary == T + 2 * HOUR


def test_resumes_after_last_accrual_time():
    investment = build_investment(last_accrual_time=T + 2 * HOUR, total_accrued=Decimal("2"))

    plan = compute_accruals(investment, T + 5 * HOUR + timedelta(minutes=30))

    assert [p.index for p in plan.due] == [3, 4, 5]
    assert first_pending_index(investment) == 3


def test_never_overshoots_end_time():
    investment = build_investment(total_periods=2)

    plan = compute_accruals(investment, T + 365 * DAY)

    assert len(plan) == 2
    assert max(p.accrual_time for p in plan.due) == investment.end_time
    assert plan.next_boundary is None


def test_fully_recorded_investment_has_nothing_due():
    investment = build_investment(total_periods=2, last_accrual_time=T + 2 * HOUR)

    plan = compute_accruals(investment, T + 3 * HOUR)

    assert plan.due == ()
    assert plan.next_boundary is None


def test_zero_period_investment_is_empty():
    investment = build_investment(total_periods=0)

    plan = compute_accruals(investment, T + DAY)

    assert plan.due == ()
    assert plan.next_boundary is None


def test_hourly_scenario_amounts_and_boundaries():
    investment = build_investment(
        principal=Decimal("500"), daily_rate=Decimal("0.12"), total_periods=2
    )

    early = compute_accruals(investment, T + timedelta(minutes=30))
    assert early.due == ()
    assert early.next_boundary == T + HOUR

    first = compute_accruals(investment, T + timedelta(hours=1, minutes=5))
    assert [(p.accrual_time, p.amount) for p in first.due] == [(T + HOUR, Decimal("2.50000000"))]
    assert first.next_boundary == T + 2 * HOUR


def test_amount_is_rounded_half_up_to_eight_places():
    assert period_amount(Decimal("100"), Decimal("0.01"), IntervalType.HOURLY) == Decimal("0.04166667")
    assert period_amount(Decimal("3"), Decimal("0.000000005"), IntervalType.DAILY) == Decimal("0.00000002")
    assert period_amount(Decimal("250"), Decimal("0.015"), IntervalType.DAILY) == Decimal("3.75000000")


def test_same_inputs_give_same_plan():
    investment = build_investment(last_accrual_time=T + HOUR)
    now = T + 7 * HOUR + timedelta(minutes=12)

    assert compute_accruals(investment, now) == compute_accruals(investment, now)


def test_expected_periods_elapsed_is_clamped():
    investment = build_investment(total_periods=4)

    assert expected_periods_elapsed(investment, T - HOUR) == 0
    assert expected_periods_elapsed(investment, T + 2 * HOUR + timedelta(minutes=59)) == 2
    assert expected_periods_elapsed(investment, T + 100 * HOUR) == 4
