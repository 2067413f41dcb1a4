"""Ledger protocol and its SQL and in-memory implementations."""

from .base import Ledger, LedgerTransaction, OutboxEvent, PayoutActivity, PayoutTotals
from .memory import InMemoryLedger
from .sql import SqlLedger

__all__ = [
    "InMemoryLedger",
    "Ledger",
    "LedgerTransaction",
    "OutboxEvent",
    "PayoutActivity",
    "PayoutTotals",
    "SqlLedger",
]
