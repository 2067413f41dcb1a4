from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.ledger import InMemoryLedger
from app.services.alerts import ALERT_EVENT
from app.services.diagnostics import AccrualDiagnostics, HealthStatus
from app.services.errors import RunInProgressError, UnknownRunClassError
from app.services.recorder import EarningsRecorder
from app.services.scheduler import MANUAL_TRIGGER_EVENT, AccrualScheduler, RunTrigger
from minehub.models import IntervalType, Investment, InvestmentStatus

T = datetime(2024, 5, 10, 8, 0, tzinfo=timezone.utc)
NOW = T + timedelta(hours=3, minutes=20)
HOUR = timedelta(hours=1)


def build_investment(investment_id: int, **overrides) -> Investment:
    values = dict(
        id=investment_id,
        owner_id=f"owner-{investment_id}",
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


def fixed_clock():
    return NOW


class GatedRecorder(EarningsRecorder):
    """Blocks inside ``record`` until released."""

    def __init__(self, ledger):
        super().__init__(ledger, clock=fixed_clock)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def record(self, investment_id, now=None):
        self.entered.set()
        await self.release.wait()
        return await super().record(investment_id, now)


class FailingRecorder(EarningsRecorder):
    def __init__(self, ledger, failing_ids=None):
        super().__init__(ledger, clock=fixed_clock)
        self.failing_ids = failing_ids

    async def record(self, investment_id, now=None):
        if self.failing_ids is None or investment_id in self.failing_ids:
            raise RuntimeError(f"storage error for {investment_id}")
        return await super().record(investment_id, now)


class BrokenListingLedger(InMemoryLedger):
    async def list_active_investments(self, now, *, interval=None, matured=None):
        raise ConnectionError("database unreachable")


def _scheduler(ledger, recorder=None, **kwargs) -> AccrualScheduler:
    return AccrualScheduler(ledger, recorder, clock=fixed_clock, **kwargs)


@pytest.mark.asyncio
async def test_hourly_batch_records_in_flight_and_matured():
    ledger = InMemoryLedger(
        [
            build_investment(1),
            build_investment(2, total_periods=2),
            build_investment(3, interval=IntervalType.DAILY, total_periods=30),
        ]
    )
    scheduler = _scheduler(ledger)

    result = await scheduler.run_batch("hourly")

    assert result.trigger is RunTrigger.MANUAL
    assert result.processed == 2
    assert result.failed == 0
    assert result.completed == 1
    assert result.periods_recorded == 5
    assert result.total_amount == Decimal("5")
    assert (await ledger.get_investment(2)).status is InvestmentStatus.COMPLETED
    assert (await ledger.get_investment(3)).last_accrual_time is None
    state = scheduler.state("hourly")
    assert not state.running
    assert state.last_result is result
    assert state.consecutive_errors == 0


@pytest.mark.asyncio
async def test_overlapping_triggers_are_guarded():
    ledger = InMemoryLedger([build_investment(1)])
    recorder = GatedRecorder(ledger)
    scheduler = _scheduler(ledger, recorder)

    first = asyncio.create_task(scheduler.run_scheduled("hourly"))
    await recorder.entered.wait()
    assert scheduler.state("hourly").running

    assert await scheduler.run_scheduled("hourly") is None
    assert scheduler.state("hourly").skipped_triggers == 1
    with pytest.raises(RunInProgressError):
        await scheduler.run_batch("hourly")

    dry = await scheduler.run_batch("hourly", dry_run=True)
    assert dry.dry_run and dry.would_process == 1

    forced = asyncio.create_task(scheduler.run_batch("hourly", force=True))
    await asyncio.sleep(0)
    assert scheduler.state("hourly").active_runs == 2

    recorder.release.set()
    first_result, forced_result = await asyncio.gather(first, forced)

    assert forced_result.trigger is RunTrigger.FORCED
    assert first_result.periods_recorded + forced_result.periods_recorded == 3
    assert len(await ledger.list_payout_events(1)) == 3
    assert not scheduler.state("hourly").running


@pytest.mark.asyncio
async def test_other_run_classes_are_not_blocked():
    ledger = InMemoryLedger([build_investment(1)])
    recorder = GatedRecorder(ledger)
    scheduler = _scheduler(ledger, recorder)

    hourly = asyncio.create_task(scheduler.run_scheduled("hourly"))
    await recorder.entered.wait()

    daily = await scheduler.run_scheduled("daily")
    assert daily is not None
    assert daily.processed == 0

    recorder.release.set()
    await hourly


@pytest.mark.asyncio
async def test_dry_run_never_records():
    ledger = InMemoryLedger([build_investment(1), build_investment(2)])
    scheduler = _scheduler(ledger)

    result = await scheduler.run_batch("hourly", dry_run=True)

    assert result.would_process == 2
    assert result.processed == 0
    assert await ledger.list_payout_events(1) == []
    assert scheduler.state("hourly").total_runs == 0


@pytest.mark.asyncio
async def test_one_failing_investment_does_not_fail_the_run():
    ledger = InMemoryLedger([build_investment(1), build_investment(2), build_investment(3)])
    scheduler = _scheduler(ledger, FailingRecorder(ledger, failing_ids={2}))

    result = await scheduler.run_batch("hourly")

    assert result.processed == 3
    assert result.failed == 1
    assert result.periods_recorded == 6
    failed = [d for d in result.details if d.status == "failed"]
    assert [d.investment_id for d in failed] == [2]
    assert "storage error" in failed[0].error
    assert result.succeeded
    assert scheduler.state("hourly").consecutive_errors == 0


@pytest.mark.asyncio
async def test_consecutive_failures_escalate_and_reset():
    ledger = InMemoryLedger([build_investment(1)])
    recorder = FailingRecorder(ledger)
    scheduler = _scheduler(ledger, recorder, consecutive_error_threshold=3)

    for _ in range(2):
        await scheduler.run_scheduled("hourly")
    assert scheduler.state("hourly").consecutive_errors == 2
    assert scheduler.alerts.recent() == []

    await scheduler.run_scheduled("hourly")
    state = scheduler.state("hourly")
    assert state.consecutive_errors == 3
    assert "failed" in state.last_error
    assert [a.kind for a in scheduler.alerts.recent()] == ["consecutive_failures"]
    assert len(await ledger.list_outbox_events(ALERT_EVENT)) == 1

    recorder.failing_ids = set()
    await scheduler.run_scheduled("hourly")
    assert scheduler.state("hourly").consecutive_errors == 0


@pytest.mark.asyncio
async def test_listing_failure_counts_as_failed_run():
    scheduler = _scheduler(BrokenListingLedger([build_investment(1)]))

    result = await scheduler.run_batch("daily")

    assert result.error == "database unreachable"
    assert not result.succeeded
    assert scheduler.state("daily").consecutive_errors == 1
    assert not scheduler.state("daily").running


@pytest.mark.asyncio
async def test_maintenance_closes_matured_and_audits():
    ledger = InMemoryLedger(
        [
            build_investment(1),
            build_investment(2, total_periods=2),
            build_investment(3, interval=IntervalType.DAILY, total_periods=1, start_time=T - timedelta(days=2)),
        ]
    )
    diagnostics = AccrualDiagnostics(ledger, clock=fixed_clock)
    scheduler = _scheduler(ledger, diagnostics=diagnostics)

    result = await scheduler.run_batch("maintenance")

    assert sorted(d.investment_id for d in result.details) == [2, 3]
    assert result.completed == 2
    assert (await ledger.get_investment(1)).last_accrual_time is None
    assert result.health is not None
    assert result.health.status is HealthStatus.HEALTHY
    assert result.health.behind_schedule_count == 1


@pytest.mark.asyncio
async def test_trigger_single_writes_audit_event():
    ledger = InMemoryLedger([build_investment(1)])
    scheduler = _scheduler(ledger)

    result = await scheduler.trigger_single(1, requested_by="ops@minehub")

    assert result.periods_recorded == 3
    events = await ledger.list_outbox_events(MANUAL_TRIGGER_EVENT)
    assert len(events) == 1
    assert events[0].payload["requested_by"] == "ops@minehub"
    assert events[0].payload["total_amount"] == "3.00000000"


@pytest.mark.asyncio
async def test_unknown_run_class_is_rejected():
    scheduler = _scheduler(InMemoryLedger())

    with pytest.raises(UnknownRunClassError):
        await scheduler.run_batch("weekly")
    with pytest.raises(UnknownRunClassError):
        scheduler.state("weekly")
