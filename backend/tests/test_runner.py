from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.config import AppSettings
from app.ledger import InMemoryLedger
from app.services.alerts import OperatorAlerts
from app.services.diagnostics import AccrualDiagnostics, DiagnosticsConfig
from app.services.recorder import EarningsRecorder
from app.services.runner import Cadence, PeriodicRunner, default_cadences, next_tick
from app.services.scheduler import AccrualScheduler
from minehub.models import IntervalType, Investment

T = datetime(2024, 5, 10, 8, 0, tzinfo=timezone.utc)
NOW = T + timedelta(minutes=20)
NAIROBI = "Africa/Nairobi"


def _investment(investment_id: int = 1) -> Investment:
    return Investment(
        id=investment_id,
        owner_id="owner-1",
        principal=Decimal("1000"),
        daily_rate=Decimal("0.024"),
        interval=IntervalType.HOURLY,
        total_periods=24,
        start_time=T - timedelta(hours=3),
        end_time=T + timedelta(hours=21),
    )


def fixed_clock():
    return NOW


class SlowRecorder(EarningsRecorder):
    def __init__(self, ledger, gate: asyncio.Event):
        super().__init__(ledger, clock=fixed_clock)
        self.gate = gate

    async def record(self, investment_id, now=None):
        await self.gate.wait()
        return await super().record(investment_id, now)


def test_next_tick_aligns_to_local_midnight():
    # 08:20 UTC is 11:20 in Nairobi (UTC+3).
    assert next_tick(NOW, 3600, tz=NAIROBI) == datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)
    assert next_tick(NOW, 86400, tz=NAIROBI) == datetime(2024, 5, 10, 21, 0, tzinfo=timezone.utc)
    assert next_tick(NOW, 86400, 7200, tz=NAIROBI) == datetime(2024, 5, 10, 23, 0, tzinfo=timezone.utc)


def test_next_tick_is_strictly_after_now():
    on_tick = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)

    assert next_tick(on_tick, 3600) == on_tick + timedelta(hours=1)


def test_next_tick_before_offset_fires_same_local_day():
    # 01:00 local, maintenance offset lands at 02:00 local.
    early = datetime(2024, 5, 9, 22, 0, tzinfo=timezone.utc)

    assert next_tick(early, 86400, 7200, tz=NAIROBI) == datetime(2024, 5, 9, 23, 0, tzinfo=timezone.utc)


def test_default_cadences_follow_settings():
    settings = AppSettings(hourly_run_interval_seconds=1800, maintenance_run_offset_seconds=3600)

    cadences = default_cadences(settings)

    assert [c.run_class for c in cadences] == ["hourly", "daily", "maintenance"]
    assert cadences[0].interval_seconds == 1800
    assert cadences[2].offset_seconds == 3600


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_runs():
    ledger = InMemoryLedger([_investment()])
    gate = asyncio.Event()
    scheduler = AccrualScheduler(ledger, SlowRecorder(ledger, gate), clock=fixed_clock)
    runner = PeriodicRunner(scheduler, [], shutdown_grace_seconds=5)

    task = runner.fire("hourly")
    await asyncio.sleep(0)
    assert runner.inflight == 1
    assert scheduler.state("hourly").running

    stopping = asyncio.create_task(runner.stop())
    await asyncio.sleep(0)
    gate.set()
    await stopping

    assert task.done() and not task.cancelled()
    assert runner.inflight == 0
    assert len(await ledger.list_payout_events(1)) == 3
    assert scheduler.state("hourly").total_runs == 1


@pytest.mark.asyncio
async def test_stop_cancels_runs_after_grace_period():
    ledger = InMemoryLedger([_investment()])
    scheduler = AccrualScheduler(ledger, SlowRecorder(ledger, asyncio.Event()), clock=fixed_clock)
    runner = PeriodicRunner(scheduler, [], shutdown_grace_seconds=0.01)

    task = runner.fire("hourly")
    await asyncio.sleep(0)
    await runner.stop()

    assert task.cancelled()
    assert scheduler.state("hourly").active_runs == 0
    assert await ledger.list_payout_events(1) == []


@pytest.mark.asyncio
async def test_cadence_loop_fires_on_each_tick():
    ledger = InMemoryLedger([_investment()])
    scheduler = AccrualScheduler(ledger, clock=fixed_clock)
    delays: list[float] = []
    parked = asyncio.Event()

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)
        if len(delays) > 2:
            parked.set()
            await asyncio.Event().wait()

    runner = PeriodicRunner(scheduler, [Cadence("hourly", 3600)], clock=fixed_clock, sleep=fake_sleep)
    runner.start()
    assert runner.running

    await parked.wait()
    await runner.stop()

    assert delays == [2400.0, 2400.0, 2400.0]
    state = scheduler.state("hourly")
    assert state.total_runs + state.skipped_triggers == 2
    assert len(await ledger.list_payout_events(1)) == 3
    assert not runner.running


@pytest.mark.asyncio
async def test_check_health_raises_alert_when_not_healthy():
    ledger = InMemoryLedger([_investment()])
    scheduler = AccrualScheduler(ledger, clock=fixed_clock)
    alerts = OperatorAlerts(ledger, clock=fixed_clock)
    diagnostics = AccrualDiagnostics(ledger, DiagnosticsConfig(degraded_threshold=0), clock=fixed_clock)
    runner = PeriodicRunner(scheduler, [], diagnostics=diagnostics, alerts=alerts)

    await runner.check_health()
    assert [a.kind for a in alerts.recent()] == ["health_check"]
    assert alerts.recent()[0].details["behind_schedule"] == 1

    await scheduler.run_batch("hourly")
    await runner.check_health()
    assert len(alerts.recent()) == 1


@pytest.mark.asyncio
async def test_check_health_without_diagnostics_is_a_no_op():
    ledger = InMemoryLedger([_investment()])
    scheduler = AccrualScheduler(ledger, clock=fixed_clock)
    alerts = OperatorAlerts(ledger, clock=fixed_clock)
    runner = PeriodicRunner(scheduler, [], alerts=alerts)

    await runner.check_health()

    assert alerts.recent() == []
