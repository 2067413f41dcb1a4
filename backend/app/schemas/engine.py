"""Pydantic schemas for the accrual engine endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from app.services.diagnostics import HealthStatus
from app.services.scheduler import RunTrigger
from minehub.models import IntervalType, InvestmentStatus


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class InvestmentRunDetailSchema(_FromAttributes):
    investment_id: int
    status: str
    periods_recorded: int
    total_amount: Decimal
    completed: bool
    next_boundary: datetime | None = None
    error: str | None = None


class BehindScheduleSchema(_FromAttributes):
    investment_id: int
    owner_id: str
    interval: IntervalType
    expected_periods: int
    recorded_periods: int
    missing_periods: int
    missing_amount: Decimal
    last_accrual_time: datetime | None = None
    matured: bool


class ConservationMismatchSchema(_FromAttributes):
    investment_id: int
    total_accrued: Decimal
    events_total: Decimal
    difference: Decimal


class HealthReportSchema(_FromAttributes):
    status: HealthStatus
    checked_at: datetime
    active_count: int
    matured_active_count: int
    behind_schedule_count: int
    behind_schedule: list[BehindScheduleSchema]
    conservation_mismatches: list[ConservationMismatchSchema]


class BatchResultSchema(_FromAttributes):
    run_class: str
    trigger: RunTrigger
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float
    dry_run: bool
    would_process: int
    processed: int
    skipped: int
    failed: int
    completed: int
    periods_recorded: int
    total_amount: Decimal
    details: list[InvestmentRunDetailSchema]
    health: HealthReportSchema | None = None
    error: str | None = None


class RunStateSchema(_FromAttributes):
    name: str
    running: bool
    active_runs: int
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    consecutive_errors: int
    total_runs: int
    skipped_triggers: int
    last_result: BatchResultSchema | None = None


class EngineHealthSchema(_FromAttributes):
    status: HealthStatus
    behind_schedule_count: int
    last_run_timestamps: dict[str, datetime | None]
    failing_run_classes: list[str]
    report: HealthReportSchema


class InvestmentSchema(_FromAttributes):
    id: int
    owner_id: str
    engine_name: str | None = None
    principal: Decimal
    daily_rate: Decimal
    interval: IntervalType
    total_periods: int
    start_time: datetime
    end_time: datetime
    last_accrual_time: datetime | None = None
    total_accrued: Decimal
    status: InvestmentStatus


class PayoutEventSchema(_FromAttributes):
    investment_id: int
    accrual_time: datetime
    amount: Decimal
    created_at: datetime
    note: str | None = None


class DuePeriodSchema(_FromAttributes):
    index: int
    accrual_time: datetime
    amount: Decimal


class InvestmentDiagnosticsSchema(_FromAttributes):
    investment: InvestmentSchema
    checked_at: datetime
    expected_periods: int
    recorded_periods: int
    missing_periods: int
    recorded_total: Decimal
    conservation_ok: bool
    period_amount: Decimal
    due: list[DuePeriodSchema]
    next_boundary: datetime | None = None
    recent_events: list[PayoutEventSchema]


class IntervalActivitySchema(_FromAttributes):
    interval: IntervalType
    events: int
    investments: int
    owners: int
    total_amount: Decimal
    average_amount: Decimal
    earliest: datetime | None = None
    latest: datetime | None = None


class HourlyBucketSchema(_FromAttributes):
    hour: int
    events: int
    total_amount: Decimal


class EngineActivitySchema(_FromAttributes):
    engine_name: str | None = None
    interval: IntervalType
    events: int
    owners: int
    total_amount: Decimal


class ActivitySummarySchema(_FromAttributes):
    timeframe: str
    start: datetime
    end: datetime
    total_events: int
    total_amount: Decimal
    by_interval: list[IntervalActivitySchema]
    hourly_distribution: list[HourlyBucketSchema]
    top_engines: list[EngineActivitySchema]


class OwnerPayoutSchema(_FromAttributes):
    investment_id: int
    engine_name: str | None = None
    interval: IntervalType
    accrual_time: datetime
    amount: Decimal


class OwnerSummarySchema(_FromAttributes):
    owner_id: str
    checked_at: datetime
    balance: Decimal
    total_earnings: Decimal
    active_count: int
    active_investments: list[InvestmentSchema]
    payout_count: int
    payout_total: Decimal
    last_payout_time: datetime | None = None
    today_earnings: Decimal
    last_7_days_earnings: Decimal
    recent_payouts: list[OwnerPayoutSchema]


__all__ = [
    "ActivitySummarySchema",
    "BatchResultSchema",
    "BehindScheduleSchema",
    "ConservationMismatchSchema",
    "DuePeriodSchema",
    "EngineActivitySchema",
    "EngineHealthSchema",
    "HealthReportSchema",
    "HourlyBucketSchema",
    "IntervalActivitySchema",
    "InvestmentDiagnosticsSchema",
    "InvestmentRunDetailSchema",
    "InvestmentSchema",
    "OwnerPayoutSchema",
    "OwnerSummarySchema",
    "PayoutEventSchema",
    "RunStateSchema",
]
