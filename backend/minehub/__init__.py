"""Core package for the mining-engine accrual domain."""

from .accrual import compute_accruals, expected_periods_elapsed, period_amount
from .models import (
    AccrualPlan,
    DuePeriod,
    EngineTemplate,
    InsertOutcome,
    IntervalType,
    Investment,
    InvestmentStatus,
    NewInvestment,
    PayoutEvent,
)

__all__ = [
    "AccrualPlan",
    "DuePeriod",
    "EngineTemplate",
    "InsertOutcome",
    "IntervalType",
    "Investment",
    "InvestmentStatus",
    "NewInvestment",
    "PayoutEvent",
    "compute_accruals",
    "expected_periods_elapsed",
    "period_amount",
]
