"""Storage contract the accrual engine needs from its ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncContextManager, Iterable, Mapping, Optional, Protocol, Sequence

from minehub.models import (
    InsertOutcome,
    IntervalType,
    Investment,
    InvestmentStatus,
    NewInvestment,
    PayoutEvent,
    utcnow,
)

ZERO = Decimal("0")


@dataclass(frozen=True)
class PayoutTotals:
    """Aggregate of the recorded payouts of one investment."""

    investment_id: int
    count: int = 0
    total_amount: Decimal = ZERO
    latest_accrual_time: Optional[datetime] = None


@dataclass(frozen=True)
class PayoutActivity:
    """A payout event joined with descriptive fields of its investment."""

    investment_id: int
    owner_id: str
    interval: IntervalType
    accrual_time: datetime
    amount: Decimal
    engine_name: Optional[str] = None


@dataclass(frozen=True)
class OutboxEvent:
    event_type: str
    payload: dict[str, Any]
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


class LedgerTransaction(Protocol):
    """Unit of work scoped to a single investment."""

    async def get_investment(self, investment_id: int) -> Investment | None:
        ...

    async def insert_payout_event_if_absent(
        self,
        investment_id: int,
        accrual_time: datetime,
        amount: Decimal,
        note: str | None = None,
    ) -> InsertOutcome:
        ...

    async def update_investment_accrual(
        self,
        investment_id: int,
        *,
        last_accrual_time: datetime | None = None,
        accrued_delta: Decimal = ZERO,
        status: InvestmentStatus | None = None,
    ) -> bool:
        """Add ``accrued_delta`` and move ``last_accrual_time`` forward only.

        Returns whether ``status`` was changed by this call.
        """
        ...

    async def credit_account(self, owner_id: str, amount: Decimal) -> None:
        ...

    async def enqueue_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        ...


class Ledger(Protocol):
    """Durable store of investments and payout events."""

    def transaction(self) -> AsyncContextManager[LedgerTransaction]:
        ...

    async def get_investment(self, investment_id: int) -> Investment | None:
        ...

    async def account_balance(self, owner_id: str) -> tuple[Decimal, Decimal]:
        """Return ``(balance, total_earnings)`` for an owner."""
        ...

    async def list_active_investments(
        self,
        now: datetime,
        *,
        interval: IntervalType | None = None,
        matured: bool | None = None,
    ) -> list[Investment]:
        ...

    async def count_active_investments(
        self,
        now: datetime,
        *,
        interval: IntervalType | None = None,
        matured: bool | None = None,
    ) -> int:
        ...

    async def payout_totals(self, investment_ids: Iterable[int]) -> dict[int, PayoutTotals]:
        ...

    async def list_payout_events(self, investment_id: int) -> list[PayoutEvent]:
        ...

    async def payout_events_between(self, start: datetime, end: datetime) -> list[PayoutActivity]:
        ...

    async def payout_events_for_owner(
        self, owner_id: str, *, since: datetime | None = None
    ) -> list[PayoutActivity]:
        """Payout events of every investment held by ``owner_id``, oldest first."""
        ...

    async def add_investment(self, investment: NewInvestment) -> Investment:
        ...

    async def list_outbox_events(self, event_type: str | None = None) -> list[OutboxEvent]:
        ...


# Normalization

def as_utc(value: datetime | str) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""

    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _field(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def to_investment(row: Any) -> Investment:
    """Map a storage row (ORM object or mapping) to a fully typed ``Investment``."""

    interval = IntervalType(_field(row, "interval"))
    start_time = as_utc(_field(row, "start_time"))
    total_periods = int(_field(row, "total_periods") or 0)
    end_time = _field(row, "end_time")
    last_accrual_time = _field(row, "last_accrual_time")
    status = _field(row, "status") or InvestmentStatus.ACTIVE

    return Investment(
        id=int(_field(row, "id")),
        owner_id=str(_field(row, "owner_id")),
        principal=as_decimal(_field(row, "principal")),
        daily_rate=as_decimal(_field(row, "daily_rate")),
        interval=interval,
        total_periods=total_periods,
        start_time=start_time,
        end_time=as_utc(end_time) if end_time is not None else start_time + total_periods * interval.length,
        last_accrual_time=as_utc(last_accrual_time) if last_accrual_time is not None else None,
        total_accrued=as_decimal(_field(row, "total_accrued")),
        status=InvestmentStatus(status),
        engine_id=_field(row, "engine_id"),
        engine_name=_field(row, "engine_name"),
    )


def to_payout_event(row: Any) -> PayoutEvent:
    created_at = _field(row, "created_at")
    return PayoutEvent(
        id=_field(row, "id"),
        investment_id=int(_field(row, "investment_id")),
        accrual_time=as_utc(_field(row, "accrual_time")),
        amount=as_decimal(_field(row, "amount")),
        created_at=as_utc(created_at) if created_at is not None else utcnow(),
        note=_field(row, "note"),
    )


def json_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Render decimals, datetimes and enums so the payload is JSON serialisable."""

    def _convert(value: Any) -> Any:
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return as_utc(value).isoformat()
        if isinstance(value, (IntervalType, InvestmentStatus)):
            return value.value
        if isinstance(value, Mapping):
            return {str(k): _convert(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_convert(v) for v in value]
        return value

    return {str(k): _convert(v) for k, v in payload.items()}


def chunked(values: Sequence[int], size: int = 500) -> Iterable[Sequence[int]]:
    for offset in range(0, len(values), size):
        yield values[offset : offset + size]


__all__ = [
    "Ledger",
    "LedgerTransaction",
    "OutboxEvent",
    "PayoutActivity",
    "PayoutTotals",
    "ZERO",
    "as_decimal",
    "as_utc",
    "chunked",
    "json_payload",
    "to_investment",
    "to_payout_event",
]
