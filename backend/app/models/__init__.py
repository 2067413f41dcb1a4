"""Database model exports."""

from .account import AccountBalance
from .investment import InvestmentRecord, PayoutEventRecord
from .outbox import EngineOutbox

__all__ = [
    "AccountBalance",
    "EngineOutbox",
    "InvestmentRecord",
    "PayoutEventRecord",
]
