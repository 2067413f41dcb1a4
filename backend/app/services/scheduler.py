"""Batch orchestration of the earnings recorder per run-class."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from opentelemetry import metrics, trace

from app.ledger.base import ZERO, Ledger
from app.services.alerts import OperatorAlerts
from app.services.diagnostics import AccrualDiagnostics, HealthReport, HealthStatus
from app.services.errors import RunInProgressError, UnknownRunClassError
from app.services.recorder import EarningsRecorder, RecordResult
from minehub.models import IntervalType, Investment, utcnow

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)
_periods_recorded = meter.create_counter(
    "accrual.periods_recorded", unit="1", description="Payout periods newly recorded"
)
_amount_recorded = meter.create_counter(
    "accrual.amount_recorded", description="Sum of newly recorded payout amounts"
)
_investment_failures = meter.create_counter(
    "accrual.investment_failures", unit="1", description="Investments whose accrual raised"
)

MANUAL_TRIGGER_EVENT = "engine.manual_trigger"
SINGLE_RUN_CLASS = "single"


class RunScope(str, Enum):
    ALL = "all"
    MATURED_ONLY = "matured_only"


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    FORCED = "forced"


@dataclass(frozen=True)
class RunClassConfig:
    """A named batch category with its own overlap guard."""

    name: str
    interval: Optional[IntervalType] = None
    scope: RunScope = RunScope.ALL
    audit: bool = False
    description: str = ""


DEFAULT_RUN_CLASSES: tuple[RunClassConfig, ...] = (
    RunClassConfig("hourly", IntervalType.HOURLY, description="Hourly-interval investments"),
    RunClassConfig("daily", IntervalType.DAILY, description="Daily-interval investments"),
    RunClassConfig(
        "maintenance",
        scope=RunScope.MATURED_ONLY,
        audit=True,
        description="Close out matured investments and audit the ledger",
    ),
)


@dataclass
class InvestmentRunDetail:
    investment_id: int
    status: str
    periods_recorded: int = 0
    total_amount: Decimal = ZERO
    completed: bool = False
    next_boundary: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    run_class: str
    trigger: RunTrigger
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    would_process: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    completed: int = 0
    periods_recorded: int = 0
    total_amount: Decimal = ZERO
    details: list[InvestmentRunDetail] = field(default_factory=list)
    health: Optional[HealthReport] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        """False when listing failed or every attempted investment raised."""

        if self.error is not None:
            return False
        return not (self.failed and self.failed == self.processed)

    def add(self, detail: InvestmentRunDetail) -> None:
        self.details.append(detail)
        self.processed += 1
        if detail.status == "failed":
            self.failed += 1
            return
        if detail.status == "skipped":
            self.skipped += 1
        self.periods_recorded += detail.periods_recorded
        self.total_amount += detail.total_amount
        self.completed += int(detail.completed)


@dataclass
class RunState:
    name: str
    active_runs: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_result: Optional[BatchResult] = None
    last_error: Optional[str] = None
    consecutive_errors: int = 0
    total_runs: int = 0
    skipped_triggers: int = 0

    @property
    def running(self) -> bool:
        return self.active_runs > 0


def _detail_from(result: RecordResult) -> InvestmentRunDetail:
    return InvestmentRunDetail(
        investment_id=result.investment_id,
        status="skipped" if result.skipped else "recorded",
        periods_recorded=result.periods_recorded,
        total_amount=result.total_amount,
        completed=result.completed,
        next_boundary=result.next_boundary,
    )


class AccrualScheduler:
    """Run the recorder over active investments, one guard per run-class.

    Scheduled triggers that land while their run-class is busy are dropped;
    the next tick catches up because the calculator derives every missed
    boundary. Manual triggers are rejected instead, unless forced.
    """

    def __init__(
        self,
        ledger: Ledger,
        recorder: EarningsRecorder | None = None,
        *,
        run_classes: Iterable[RunClassConfig] = DEFAULT_RUN_CLASSES,
        diagnostics: AccrualDiagnostics | None = None,
        alerts: OperatorAlerts | None = None,
        max_concurrency: int = 4,
        consecutive_error_threshold: int = 3,
        slow_run_warning_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._ledger = ledger
        self._clock = clock
        self._recorder = recorder or EarningsRecorder(ledger, clock=clock)
        self._run_classes = {config.name: config for config in run_classes}
        self._states = {name: RunState(name=name) for name in self._run_classes}
        self._diagnostics = diagnostics
        self._alerts = alerts or OperatorAlerts(ledger, clock=clock)
        self._max_concurrency = max(1, max_concurrency)
        self.error_threshold = consecutive_error_threshold
        self._slow_run_warning_seconds = slow_run_warning_seconds

    @property
    def run_classes(self) -> dict[str, RunClassConfig]:
        return dict(self._run_classes)

    @property
    def alerts(self) -> OperatorAlerts:
        return self._alerts

    def state(self, run_class: str) -> RunState:
        if run_class not in self._states:
            raise UnknownRunClassError(run_class)
        return self._states[run_class]

    def job_status(self) -> dict[str, RunState]:
        return dict(self._states)

    async def run_scheduled(self, run_class: str) -> BatchResult | None:
        """Cadence entry point; returns ``None`` when the trigger was dropped."""

        config = self._config(run_class)
        state = self._states[run_class]
        if state.running:
            state.skipped_triggers += 1
            logger.info("Run class %s still running; skipping scheduled trigger", run_class)
            return None
        return await self._execute(config, RunTrigger.SCHEDULED)

    async def run_batch(
        self,
        run_class: str,
        *,
        force: bool = False,
        dry_run: bool = False,
        interval_filter: IntervalType | None = None,
    ) -> BatchResult:
        config = self._config(run_class)
        if dry_run:
            return await self._dry_run(config, interval_filter)
        state = self._states[run_class]
        if state.running and not force:
            raise RunInProgressError(run_class)
        if state.running:
            logger.warning("Forcing run class %s while another run is in flight", run_class)
        trigger = RunTrigger.FORCED if force else RunTrigger.MANUAL
        return await self._execute(config, trigger, interval_filter)

    async def trigger_single(self, investment_id: int, *, requested_by: str | None = None) -> BatchResult:
        now = self._clock()
        result = BatchResult(run_class=SINGLE_RUN_CLASS, trigger=RunTrigger.MANUAL, started_at=now)
        with tracer.start_as_current_span("accrual.batch") as span:
            span.set_attribute("accrual.run_class", SINGLE_RUN_CLASS)
            span.set_attribute("accrual.investment_id", investment_id)
            result.add(await self._record_one(investment_id, now))
        result.finished_at = self._clock()

        if requested_by:
            detail = result.details[0]
            try:
                async with self._ledger.transaction() as tx:
                    await tx.enqueue_event(
                        MANUAL_TRIGGER_EVENT,
                        {
                            "investment_id": investment_id,
                            "requested_by": requested_by,
                            "status": detail.status,
                            "periods_recorded": detail.periods_recorded,
                            "total_amount": detail.total_amount,
                            "triggered_at": now,
                        },
                    )
            except Exception:  # noqa: BLE001 - the payout itself already committed
                logger.exception("Failed to record manual trigger audit for investment %s", investment_id)
        logger.info(
            "Manual trigger for investment %s by %s: %s period(s), %s",
            investment_id,
            requested_by or "system",
            result.periods_recorded,
            result.total_amount,
        )
        return result

    # Internals

    def _config(self, run_class: str) -> RunClassConfig:
        try:
            return self._run_classes[run_class]
        except KeyError:
            raise UnknownRunClassError(run_class) from None

    async def _dry_run(self, config: RunClassConfig, interval_filter: IntervalType | None) -> BatchResult:
        now = self._clock()
        matured = True if config.scope is RunScope.MATURED_ONLY else None
        count = await self._ledger.count_active_investments(
            now, interval=interval_filter or config.interval, matured=matured
        )
        logger.info("Dry run for %s: %s investment(s) would be processed", config.name, count)
        return BatchResult(
            run_class=config.name,
            trigger=RunTrigger.MANUAL,
            started_at=now,
            finished_at=self._clock(),
            dry_run=True,
            would_process=count,
        )

    async def _execute(
        self,
        config: RunClassConfig,
        trigger: RunTrigger,
        interval_filter: IntervalType | None = None,
    ) -> BatchResult:
        state = self._states[config.name]
        # Taken before the first await so concurrent callers see the guard.
        state.active_runs += 1
        now = self._clock()
        state.last_started_at = now
        result = BatchResult(run_class=config.name, trigger=trigger, started_at=now)
        logger.info("Starting %s run for %s", trigger.value, config.name)

        try:
            with tracer.start_as_current_span("accrual.batch") as span:
                span.set_attribute("accrual.run_class", config.name)
                span.set_attribute("accrual.trigger", trigger.value)
                try:
                    await self._process_run(config, result, now, interval_filter)
                except Exception as exc:  # noqa: BLE001 - recorded on the run state
                    logger.exception("Run %s failed before completing", config.name)
                    result.error = str(exc) or exc.__class__.__name__
                    span.record_exception(exc)
                span.set_attribute("accrual.processed", result.processed)
                span.set_attribute("accrual.failed", result.failed)
                span.set_attribute("accrual.periods_recorded", result.periods_recorded)
        finally:
            state.active_runs -= 1
            result.finished_at = self._clock()

        await self._finish(state, result)
        return result

    async def _process_run(
        self,
        config: RunClassConfig,
        result: BatchResult,
        now: datetime,
        interval_filter: IntervalType | None,
    ) -> None:
        interval = interval_filter or config.interval
        if config.scope is RunScope.ALL:
            in_flight = await self._ledger.list_active_investments(now, interval=interval, matured=False)
            await self._process(in_flight, now, result)
        matured = await self._ledger.list_active_investments(now, interval=interval, matured=True)
        await self._process(matured, now, result)

        if config.audit and self._diagnostics is not None:
            report = await self._diagnostics.audit(now)
            result.health = report
            if report.status is not HealthStatus.HEALTHY:
                await self._alerts.raise_alert(
                    "ledger_health",
                    f"Ledger audit reported {report.status.value}",
                    behind_schedule=report.behind_schedule_count,
                    conservation_mismatches=len(report.conservation_mismatches),
                )

    async def _process(self, investments: Sequence[Investment], now: datetime, result: BatchResult) -> None:
        if not investments:
            return
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(investment: Investment) -> InvestmentRunDetail:
            async with semaphore:
                return await self._record_one(investment.id, now)

        for detail in await asyncio.gather(*(_bounded(inv) for inv in investments)):
            result.add(detail)

    async def _record_one(self, investment_id: int, now: datetime) -> InvestmentRunDetail:
        try:
            recorded = await self._recorder.record(investment_id, now)
        except Exception as exc:  # noqa: BLE001 - isolated per investment
            logger.exception("Accrual failed for investment %s", investment_id)
            _investment_failures.add(1)
            return InvestmentRunDetail(
                investment_id=investment_id,
                status="failed",
                error=str(exc) or exc.__class__.__name__,
            )
        if recorded.periods_recorded:
            _periods_recorded.add(recorded.periods_recorded)
            _amount_recorded.add(float(recorded.total_amount))
        return _detail_from(recorded)

    async def _finish(self, state: RunState, result: BatchResult) -> None:
        state.last_finished_at = result.finished_at
        state.last_result = result
        state.total_runs += 1

        if result.duration_seconds > self._slow_run_warning_seconds:
            logger.warning(
                "Run %s took %.1fs (threshold %.0fs)",
                state.name,
                result.duration_seconds,
                self._slow_run_warning_seconds,
            )

        if result.succeeded:
            state.consecutive_errors = 0
            logger.info(
                "Finished %s: processed=%s skipped=%s failed=%s completed=%s periods=%s amount=%s in %.2fs",
                state.name,
                result.processed,
                result.skipped,
                result.failed,
                result.completed,
                result.periods_recorded,
                result.total_amount,
                result.duration_seconds,
            )
            return

        state.consecutive_errors += 1
        state.last_error = result.error or f"all {result.failed} investment(s) failed"
        logger.error(
            "Run %s failed (%s consecutive): %s",
            state.name,
            state.consecutive_errors,
            state.last_error,
        )
        if state.consecutive_errors >= self.error_threshold:
            await self._alerts.raise_alert(
                "consecutive_failures",
                f"Run class {state.name} failed {state.consecutive_errors} times in a row",
                run_class=state.name,
                consecutive_errors=state.consecutive_errors,
                last_error=state.last_error,
            )


__all__ = [
    "AccrualScheduler",
    "BatchResult",
    "DEFAULT_RUN_CLASSES",
    "InvestmentRunDetail",
    "MANUAL_TRIGGER_EVENT",
    "RunClassConfig",
    "RunScope",
    "RunState",
    "RunTrigger",
    "SINGLE_RUN_CLASS",
]
