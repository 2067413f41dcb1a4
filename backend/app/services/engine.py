"""Facade wiring the recorder, scheduler and diagnostics over one ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from app.config import AppSettings, get_settings
from app.ledger.base import Ledger
from app.services.alerts import OperatorAlerts
from app.services.diagnostics import (
    AccrualDiagnostics,
    ActivitySummary,
    DiagnosticsConfig,
    HealthReport,
    HealthStatus,
    InvestmentDiagnostics,
    OwnerSummary,
)
from app.services.investments import open_investment
from app.services.recorder import EarningsRecorder
from app.services.runner import PeriodicRunner
from app.services.scheduler import (
    DEFAULT_RUN_CLASSES,
    AccrualScheduler,
    BatchResult,
    RunClassConfig,
    RunState,
)
from minehub.models import EngineTemplate, IntervalType, Investment, utcnow

logger = logging.getLogger(__name__)


@dataclass
class EngineHealth:
    status: HealthStatus
    report: HealthReport
    jobs: dict[str, RunState]
    failing_run_classes: list[str] = field(default_factory=list)

    @property
    def behind_schedule_count(self) -> int:
        return self.report.behind_schedule_count

    @property
    def last_run_timestamps(self) -> dict[str, Optional[datetime]]:
        return {name: state.last_finished_at for name, state in self.jobs.items()}


class AccrualEngine:
    """Entry point used by the API, the cadence runner and operator scripts."""

    def __init__(
        self,
        ledger: Ledger,
        settings: AppSettings | None = None,
        *,
        run_classes: Iterable[RunClassConfig] = DEFAULT_RUN_CLASSES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self._clock = clock
        self.alerts = OperatorAlerts(ledger, clock=clock)
        self.recorder = EarningsRecorder(ledger, clock=clock)
        self.diagnostics = AccrualDiagnostics(
            ledger, DiagnosticsConfig.from_settings(self.settings), clock=clock
        )
        self.scheduler = AccrualScheduler(
            ledger,
            self.recorder,
            run_classes=run_classes,
            diagnostics=self.diagnostics,
            alerts=self.alerts,
            max_concurrency=self.settings.max_concurrency,
            consecutive_error_threshold=self.settings.consecutive_error_threshold,
            slow_run_warning_seconds=self.settings.slow_run_warning_seconds,
            clock=clock,
        )

    async def run_scheduled(self, run_class: str) -> BatchResult | None:
        return await self.scheduler.run_scheduled(run_class)

    async def run_batch(
        self,
        run_class: str,
        *,
        force: bool = False,
        dry_run: bool = False,
        interval_filter: IntervalType | None = None,
    ) -> BatchResult:
        return await self.scheduler.run_batch(
            run_class, force=force, dry_run=dry_run, interval_filter=interval_filter
        )

    async def trigger_single(self, investment_id: int, requested_by: str | None = None) -> BatchResult:
        return await self.scheduler.trigger_single(investment_id, requested_by=requested_by)

    def job_status(self) -> dict[str, RunState]:
        return self.scheduler.job_status()

    async def get_health(self, now: datetime | None = None) -> EngineHealth:
        """Ledger audit combined with run-class error streaks."""

        report = await self.diagnostics.audit(now)
        jobs = self.job_status()
        failing = [
            name for name, state in jobs.items() if state.consecutive_errors >= self.scheduler.error_threshold
        ]
        status = report.status
        if failing and status is HealthStatus.HEALTHY:
            status = HealthStatus.DEGRADED
        return EngineHealth(status=status, report=report, jobs=jobs, failing_run_classes=failing)

    async def inspect_investment(self, investment_id: int, now: datetime | None = None) -> InvestmentDiagnostics | None:
        return await self.diagnostics.inspect_investment(investment_id, now)

    async def activity_summary(self, timeframe: str = "24h", now: datetime | None = None) -> ActivitySummary:
        return await self.diagnostics.activity_summary(now, timeframe)

    async def owner_summary(self, owner_id: str, now: datetime | None = None) -> OwnerSummary:
        return await self.diagnostics.owner_summary(owner_id, now)

    async def open_investment(
        self,
        template: EngineTemplate,
        owner_id: str,
        principal: Decimal,
        purchased_at: datetime | None = None,
    ) -> Investment:
        return await open_investment(self.ledger, template, owner_id, principal, purchased_at or self._clock())

    def build_runner(self) -> PeriodicRunner:
        return PeriodicRunner.from_settings(self.scheduler, self.settings, self.diagnostics)


__all__ = ["AccrualEngine", "EngineHealth"]
