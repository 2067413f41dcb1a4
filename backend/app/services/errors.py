"""Exceptions raised by the accrual engine services."""

from __future__ import annotations


class AccrualEngineError(Exception):
    """Base class for accrual engine failures surfaced to callers."""


class RunInProgressError(AccrualEngineError):
    """A manual run was rejected because the run-class is already running."""

    def __init__(self, run_class: str):
        super().__init__(f"Run class '{run_class}' is already running")
        self.run_class = run_class


class UnknownRunClassError(AccrualEngineError, KeyError):
    def __init__(self, run_class: str):
        super().__init__(f"Unknown run class '{run_class}'")
        self.run_class = run_class

    def __str__(self) -> str:
        return str(self.args[0])


__all__ = ["AccrualEngineError", "RunInProgressError", "UnknownRunClassError"]
