"""Pydantic schema exports."""

from .engine import (
    ActivitySummarySchema,
    BatchResultSchema,
    EngineHealthSchema,
    InvestmentDiagnosticsSchema,
    OwnerSummarySchema,
    RunStateSchema,
)

__all__ = [
    "ActivitySummarySchema",
    "BatchResultSchema",
    "EngineHealthSchema",
    "InvestmentDiagnosticsSchema",
    "OwnerSummarySchema",
    "RunStateSchema",
]
