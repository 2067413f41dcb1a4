"""In-process ledger used by tests, scripts and local experiments."""

from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

from minehub.models import (
    InsertOutcome,
    IntervalType,
    Investment,
    InvestmentStatus,
    NewInvestment,
    PayoutEvent,
    utcnow,
)

from .base import (
    ZERO,
    OutboxEvent,
    PayoutActivity,
    PayoutTotals,
    as_utc,
    json_payload,
)


class InMemoryLedgerTransaction:
    def __init__(self, ledger: InMemoryLedger):
        self._ledger = ledger
        self._undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    async def get_investment(self, investment_id: int) -> Investment | None:
        return await self._ledger.snapshot(investment_id)

    async def insert_payout_event_if_absent(
        self,
        investment_id: int,
        accrual_time: datetime,
        amount: Decimal,
        note: str | None = None,
    ) -> InsertOutcome:
        key = (investment_id, as_utc(accrual_time))
        events = self._ledger._events
        if key in events:
            return InsertOutcome.ALREADY_EXISTS
        events[key] = PayoutEvent(
            id=next(self._ledger._event_ids),
            investment_id=investment_id,
            accrual_time=key[1],
            amount=amount,
            note=note,
        )
        self._undo.append(lambda: events.pop(key, None))
        return InsertOutcome.INSERTED

    async def update_investment_accrual(
        self,
        investment_id: int,
        *,
        last_accrual_time: datetime | None = None,
        accrued_delta: Decimal = ZERO,
        status: InvestmentStatus | None = None,
    ) -> bool:
        investments = self._ledger._investments
        current = investments.get(investment_id)
        if current is None:
            return False
        changes: dict[str, Any] = {}
        if accrued_delta:
            changes["total_accrued"] = current.total_accrued + accrued_delta
        moved_to = None
        if last_accrual_time is not None:
            moved_to = as_utc(last_accrual_time)
            if current.last_accrual_time is None or current.last_accrual_time < moved_to:
                changes["last_accrual_time"] = moved_to
            else:
                moved_to = None
        if status is not None and status is not current.status:
            changes["status"] = status
        if not changes:
            return False
        investments[investment_id] = replace(current, **changes)

        previous_last = current.last_accrual_time
        previous_status = current.status

        def _undo() -> None:
            latest = investments[investment_id]
            restored: dict[str, Any] = {}
            if "total_accrued" in changes:
                restored["total_accrued"] = latest.total_accrued - accrued_delta
            if moved_to is not None and latest.last_accrual_time == moved_to:
                restored["last_accrual_time"] = previous_last
            if "status" in changes:
                restored["status"] = previous_status
            investments[investment_id] = replace(latest, **restored)

        self._undo.append(_undo)
        return "status" in changes

    async def credit_account(self, owner_id: str, amount: Decimal) -> None:
        balances = self._ledger._balances
        balance, earnings = balances.get(owner_id, (ZERO, ZERO))
        balances[owner_id] = (balance + amount, earnings + amount)

        def _undo() -> None:
            current_balance, current_earnings = balances[owner_id]
            balances[owner_id] = (current_balance - amount, current_earnings - amount)

        self._undo.append(_undo)

    async def enqueue_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        outbox = self._ledger._outbox
        event = OutboxEvent(
            id=len(outbox) + 1,
            event_type=event_type,
            payload=json_payload(payload),
            created_at=utcnow(),
        )
        outbox.append(event)
        self._undo.append(lambda: outbox.remove(event))


class InMemoryLedger:
    """Dictionary-backed ledger with per-transaction rollback.

    Writes are applied immediately and recorded in an undo log; if the
    transaction body raises, the undo log is replayed in reverse. Undo steps
    are inverse operations (subtract a delta, drop an inserted key) so a
    concurrent transaction's committed writes survive a rollback.
    """

    transaction_class = InMemoryLedgerTransaction

    def __init__(self, investments: Iterable[Investment] = ()):
        self._investments: dict[int, Investment] = {}
        self._events: dict[tuple[int, datetime], PayoutEvent] = {}
        self._balances: dict[str, tuple[Decimal, Decimal]] = {}
        self._outbox: list[OutboxEvent] = []
        self._ids = itertools.count(1)
        self._event_ids = itertools.count(1)
        for investment in investments:
            self.seed(investment)

    # Test helpers

    def seed(self, investment: Investment) -> Investment:
        self._investments[investment.id] = investment
        self._ids = itertools.count(max(self._investments) + 1)
        return investment

    # Transaction

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryLedgerTransaction"]:
        tx = self.transaction_class(self)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise

    async def snapshot(self, investment_id: int) -> Investment | None:
        """Read the current state of one investment."""

        return self._investments.get(investment_id)

    # Read side

    async def get_investment(self, investment_id: int) -> Investment | None:
        return self._investments.get(investment_id)

    async def account_balance(self, owner_id: str) -> tuple[Decimal, Decimal]:
        return self._balances.get(owner_id, (ZERO, ZERO))

    def _active(
        self,
        now: datetime,
        interval: IntervalType | None,
        matured: bool | None,
    ) -> list[Investment]:
        now = as_utc(now)
        selected = []
        for investment in sorted(self._investments.values(), key=lambda inv: inv.id):
            if investment.status is not InvestmentStatus.ACTIVE:
                continue
            if interval is not None and investment.interval is not IntervalType(interval):
                continue
            if matured is True and investment.end_time > now:
                continue
            if matured is False and investment.end_time <= now:
                continue
            selected.append(investment)
        return selected

    async def list_active_investments(
        self,
        now: datetime,
        *,
        interval: IntervalType | None = None,
        matured: bool | None = None,
    ) -> list[Investment]:
        return self._active(now, interval, matured)

    async def count_active_investments(
        self,
        now: datetime,
        *,
        interval: IntervalType | None = None,
        matured: bool | None = None,
    ) -> int:
        return len(self._active(now, interval, matured))

    async def payout_totals(self, investment_ids: Iterable[int]) -> dict[int, PayoutTotals]:
        wanted = set(investment_ids)
        totals: dict[int, PayoutTotals] = {}
        for event in self._events.values():
            if event.investment_id not in wanted:
                continue
            current = totals.get(event.investment_id) or PayoutTotals(investment_id=event.investment_id)
            latest = current.latest_accrual_time
            totals[event.investment_id] = PayoutTotals(
                investment_id=event.investment_id,
                count=current.count + 1,
                total_amount=current.total_amount + event.amount,
                latest_accrual_time=event.accrual_time if latest is None else max(latest, event.accrual_time),
            )
        return totals

    async def list_payout_events(self, investment_id: int) -> list[PayoutEvent]:
        events = [e for e in self._events.values() if e.investment_id == investment_id]
        return sorted(events, key=lambda e: e.accrual_time)

    def _activity(self, keep: Callable[[PayoutEvent, Investment], bool]) -> list[PayoutActivity]:
        activity = []
        for event in sorted(self._events.values(), key=lambda e: (e.accrual_time, e.investment_id)):
            investment = self._investments.get(event.investment_id)
            if investment is None or not keep(event, investment):
                continue
            activity.append(
                PayoutActivity(
                    investment_id=event.investment_id,
                    owner_id=investment.owner_id,
                    interval=investment.interval,
                    accrual_time=event.accrual_time,
                    amount=event.amount,
                    engine_name=investment.engine_name,
                )
            )
        return activity

    async def payout_events_between(self, start: datetime, end: datetime) -> list[PayoutActivity]:
        start, end = as_utc(start), as_utc(end)
        return self._activity(lambda event, _: start <= event.accrual_time <= end)

    async def payout_events_for_owner(
        self, owner_id: str, *, since: datetime | None = None
    ) -> list[PayoutActivity]:
        floor = as_utc(since) if since is not None else None
        return self._activity(
            lambda event, investment: investment.owner_id == owner_id
            and (floor is None or event.accrual_time >= floor)
        )

    async def add_investment(self, investment: NewInvestment) -> Investment:
        created = Investment(
            id=next(self._ids),
            owner_id=investment.owner_id,
            principal=investment.principal,
            daily_rate=investment.daily_rate,
            interval=investment.interval,
            total_periods=investment.total_periods,
            start_time=as_utc(investment.start_time),
            end_time=as_utc(investment.end_time),
            engine_id=investment.engine_id,
            engine_name=investment.engine_name,
        )
        self._investments[created.id] = created
        return created

    async def list_outbox_events(self, event_type: str | None = None) -> list[OutboxEvent]:
        return [e for e in self._outbox if event_type is None or e.event_type == event_type]


__all__ = ["InMemoryLedger", "InMemoryLedgerTransaction"]
