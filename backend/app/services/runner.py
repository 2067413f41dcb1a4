"""Cadence layer that fires scheduled runs and periodic health checks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable
from zoneinfo import ZoneInfo

from app.config import AppSettings
from app.services.alerts import OperatorAlerts
from app.services.diagnostics import AccrualDiagnostics, HealthStatus
from app.services.scheduler import AccrualScheduler
from minehub.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cadence:
    run_class: str
    interval_seconds: int
    offset_seconds: int = 0


def default_cadences(settings: AppSettings) -> list[Cadence]:
    return [
        Cadence("hourly", settings.hourly_run_interval_seconds),
        Cadence("daily", settings.daily_run_interval_seconds),
        Cadence(
            "maintenance",
            settings.maintenance_run_interval_seconds,
            settings.maintenance_run_offset_seconds,
        ),
    ]


def next_tick(now: datetime, interval_seconds: int, offset_seconds: int = 0, tz: str = "UTC") -> datetime:
    """First tick strictly after ``now`` on the grid ``local midnight + offset + k * interval``.

    The grid is anchored in ``tz`` so a daily cadence fires at local midnight;
    the returned instant is UTC.
    """

    interval = timedelta(seconds=interval_seconds)
    local = now.astimezone(ZoneInfo(tz))
    anchor = local.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(seconds=offset_seconds)
    anchor_utc = anchor.astimezone(timezone.utc)
    steps = (now - anchor_utc) // interval + 1
    return anchor_utc + steps * interval


class PeriodicRunner:
    """Drive ``AccrualScheduler.run_scheduled`` on wall-clock cadences.

    Every tick is spawned as its own task so a slow run never delays the
    timer; overlap is left to the scheduler's per-run-class guard.
    """

    def __init__(
        self,
        scheduler: AccrualScheduler,
        cadences: Iterable[Cadence],
        *,
        diagnostics: AccrualDiagnostics | None = None,
        alerts: OperatorAlerts | None = None,
        health_check_interval_seconds: int = 21600,
        timezone_name: str = "UTC",
        shutdown_grace_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._scheduler = scheduler
        self._cadences = list(cadences)
        self._diagnostics = diagnostics
        self._alerts = alerts or scheduler.alerts
        self._health_interval = health_check_interval_seconds
        self._tz = timezone_name
        self._grace = shutdown_grace_seconds
        self._clock = clock
        self._sleep = sleep
        self._loops: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._stopping = False

    @classmethod
    def from_settings(
        cls,
        scheduler: AccrualScheduler,
        settings: AppSettings,
        diagnostics: AccrualDiagnostics | None = None,
    ) -> "PeriodicRunner":
        return cls(
            scheduler,
            default_cadences(settings),
            diagnostics=diagnostics,
            health_check_interval_seconds=settings.health_check_interval_seconds,
            timezone_name=settings.scheduler_timezone,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
        )

    @property
    def running(self) -> bool:
        return bool(self._loops) and not self._stopping

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def start(self) -> None:
        if self._loops:
            return
        self._stopping = False
        for cadence in self._cadences:
            self._loops.append(asyncio.create_task(self._cadence_loop(cadence), name=f"cadence:{cadence.run_class}"))
        if self._diagnostics is not None:
            self._loops.append(asyncio.create_task(self._health_loop(), name="cadence:health"))
        logger.info(
            "Scheduler started (%s) in %s",
            ", ".join(f"{c.run_class}/{c.interval_seconds}s" for c in self._cadences),
            self._tz,
        )

    async def stop(self) -> None:
        """Stop the timers, then give in-flight runs the grace period to finish."""

        self._stopping = True
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        if self._inflight:
            logger.info("Waiting up to %.0fs for %s in-flight run(s)", self._grace, len(self._inflight))
            _, pending = await asyncio.wait(set(self._inflight), timeout=self._grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %s run(s) still in flight after grace period", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    def fire(self, run_class: str) -> asyncio.Task:
        """Spawn one scheduled run for ``run_class`` as a tracked task."""

        task = asyncio.create_task(self._run_tick(run_class), name=f"run:{run_class}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_tick(self, run_class: str) -> None:
        try:
            await self._scheduler.run_scheduled(run_class)
        except Exception:  # noqa: BLE001 - keep the timer alive
            logger.exception("Scheduled run for %s raised", run_class)

    async def _cadence_loop(self, cadence: Cadence) -> None:
        while not self._stopping:
            now = self._clock()
            due = next_tick(now, cadence.interval_seconds, cadence.offset_seconds, self._tz)
            await self._sleep(max((due - now).total_seconds(), 0.0))
            if self._stopping:
                return
            self.fire(cadence.run_class)

    async def _health_loop(self) -> None:
        while not self._stopping:
            await self._sleep(self._health_interval)
            if self._stopping:
                return
            await self.check_health()

    async def check_health(self) -> None:
        if self._diagnostics is None:
            logger.warning("Health check skipped: runner has no diagnostics configured")
            return
        try:
            report = await self._diagnostics.audit()
        except Exception:  # noqa: BLE001 - a failed audit should not stop the loop
            logger.exception("Periodic health check failed")
            return
        if report.status is not HealthStatus.HEALTHY:
            await self._alerts.raise_alert(
                "health_check",
                f"Periodic health check reported {report.status.value}",
                behind_schedule=report.behind_schedule_count,
                matured_active=report.matured_active_count,
                conservation_mismatches=len(report.conservation_mismatches),
            )


__all__ = ["Cadence", "PeriodicRunner", "default_cadences", "next_tick"]
