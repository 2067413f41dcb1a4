"""Async SQLAlchemy implementation of the ledger."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, Mapping

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.db.session import build_session_factory
from app.models import AccountBalance, EngineOutbox, InvestmentRecord, PayoutEventRecord
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
    as_decimal,
    as_utc,
    chunked,
    json_payload,
    to_investment,
    to_payout_event,
)

logger = logging.getLogger(__name__)

_PAYOUT_KEY = ["investment_id", "accrual_time"]


def _dialect_insert(session: AsyncSession):
    """Return the dialect ``insert`` construct that supports ``ON CONFLICT``."""

    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    return None


class SqlLedgerTransaction:
    """Per-investment unit of work bound to one session transaction."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_investment(self, investment_id: int) -> Investment | None:
        stmt = select(InvestmentRecord).where(InvestmentRecord.id == investment_id).with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return to_investment(row) if row is not None else None

    async def insert_payout_event_if_absent(
        self,
        investment_id: int,
        accrual_time: datetime,
        amount: Decimal,
        note: str | None = None,
    ) -> InsertOutcome:
        values = {
            "investment_id": investment_id,
            "accrual_time": as_utc(accrual_time),
            "amount": amount,
            "note": note,
            "created_at": utcnow(),
        }
        insert = _dialect_insert(self._session)
        if insert is not None:
            stmt = (
                insert(PayoutEventRecord.__table__)
                .values(**values)
                .on_conflict_do_nothing(index_elements=_PAYOUT_KEY)
            )
            result = await self._session.execute(stmt)
            return InsertOutcome.INSERTED if result.rowcount == 1 else InsertOutcome.ALREADY_EXISTS

        try:
            async with self._session.begin_nested():
                self._session.add(PayoutEventRecord(**values))
        except IntegrityError:
            return InsertOutcome.ALREADY_EXISTS
        return InsertOutcome.INSERTED

    async def update_investment_accrual(
        self,
        investment_id: int,
        *,
        last_accrual_time: datetime | None = None,
        accrued_delta: Decimal = ZERO,
        status: InvestmentStatus | None = None,
    ) -> bool:
        table = InvestmentRecord.__table__
        now = utcnow()
        if accrued_delta:
            await self._session.execute(
                update(table)
                .where(table.c.id == investment_id)
                .values(total_accrued=table.c.total_accrued + accrued_delta, updated_at=now)
            )
        if last_accrual_time is not None:
            moved_to = as_utc(last_accrual_time)
            await self._session.execute(
                update(table)
                .where(
                    table.c.id == investment_id,
                    or_(table.c.last_accrual_time.is_(None), table.c.last_accrual_time < moved_to),
                )
                .values(last_accrual_time=moved_to, updated_at=now)
            )
        if status is None:
            return False
        result = await self._session.execute(
            update(table)
            .where(table.c.id == investment_id, table.c.status != status)
            .values(status=status, updated_at=now)
        )
        return result.rowcount == 1

    async def credit_account(self, owner_id: str, amount: Decimal) -> None:
        table = AccountBalance.__table__
        now = utcnow()
        insert = _dialect_insert(self._session)
        if insert is not None:
            stmt = insert(table).values(
                owner_id=owner_id, balance=amount, total_earnings=amount, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["owner_id"],
                set_={
                    "balance": table.c.balance + stmt.excluded.balance,
                    "total_earnings": table.c.total_earnings + stmt.excluded.total_earnings,
                    "updated_at": now,
                },
            )
            await self._session.execute(stmt)
            return

        result = await self._session.execute(
            update(table)
            .where(table.c.owner_id == owner_id)
            .values(
                balance=table.c.balance + amount,
                total_earnings=table.c.total_earnings + amount,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            self._session.add(
                AccountBalance(owner_id=owner_id, balance=amount, total_earnings=amount, updated_at=now)
            )

    async def enqueue_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        self._session.add(EngineOutbox(event_type=event_type, payload=json_payload(payload), created_at=utcnow()))


class SqlLedger:
    """Ledger backed by the ``investment`` and ``payout_event`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "SqlLedger":
        return cls(build_session_factory(engine))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlLedgerTransaction]:
        async with self._session_factory() as session:
            async with session.begin():
                yield SqlLedgerTransaction(session)

    async def get_investment(self, investment_id: int) -> Investment | None:
        async with self._session_factory() as session:
            row = await session.get(InvestmentRecord, investment_id)
            return to_investment(row) if row is not None else None

    async def account_balance(self, owner_id: str) -> tuple[Decimal, Decimal]:
        async with self._session_factory() as session:
            row = await session.get(AccountBalance, owner_id)
        if row is None:
            return ZERO, ZERO
        return as_decimal(row.balance), as_decimal(row.total_earnings)

    def _active_filter(
        self,
        stmt: Select,
        now: datetime,
        interval: IntervalType | None,
        matured: bool | None,
    ) -> Select:
        stmt = stmt.where(InvestmentRecord.status == InvestmentStatus.ACTIVE)
        if interval is not None:
            stmt = stmt.where(InvestmentRecord.interval == IntervalType(interval))
        if matured is True:
            stmt = stmt.where(InvestmentRecord.end_time <= as_utc(now))
        elif matured is False:
            stmt = stmt.where(InvestmentRecord.end_time > as_utc(now))
        return stmt

    async def list_active_investments(
        self,
        now: datetime,
        *,
        interval: IntervalType | None = None,
        matured: bool | None = None,
    ) -> list[Investment]:
        stmt = self._active_filter(select(InvestmentRecord), now, interval, matured)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt.order_by(InvestmentRecord.id))).scalars().all()
        return [to_investment(row) for row in rows]

    async def count_active_investments(
        self,
        now: datetime,
        *,
        interval: IntervalType | None = None,
        matured: bool | None = None,
    ) -> int:
        stmt = self._active_filter(select(func.count(InvestmentRecord.id)), now, interval, matured)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def payout_totals(self, investment_ids: Iterable[int]) -> dict[int, PayoutTotals]:
        ids = sorted(set(investment_ids))
        totals: dict[int, PayoutTotals] = {}
        if not ids:
            return totals
        async with self._session_factory() as session:
            for chunk in chunked(ids):
                stmt = (
                    select(
                        PayoutEventRecord.investment_id,
                        func.count(PayoutEventRecord.id),
                        func.sum(PayoutEventRecord.amount),
                        func.max(PayoutEventRecord.accrual_time),
                    )
                    .where(PayoutEventRecord.investment_id.in_(chunk))
                    .group_by(PayoutEventRecord.investment_id)
                )
                for investment_id, count, total, latest in (await session.execute(stmt)).all():
                    totals[investment_id] = PayoutTotals(
                        investment_id=investment_id,
                        count=int(count),
                        total_amount=as_decimal(total),
                        latest_accrual_time=as_utc(latest) if latest is not None else None,
                    )
        return totals

    async def list_payout_events(self, investment_id: int) -> list[PayoutEvent]:
        stmt = (
            select(PayoutEventRecord)
            .where(PayoutEventRecord.investment_id == investment_id)
            .order_by(PayoutEventRecord.accrual_time)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [to_payout_event(row) for row in rows]

    async def _activity(self, *criteria: Any) -> list[PayoutActivity]:
        stmt = (
            select(
                PayoutEventRecord.investment_id,
                InvestmentRecord.owner_id,
                InvestmentRecord.interval,
                PayoutEventRecord.accrual_time,
                PayoutEventRecord.amount,
                InvestmentRecord.engine_name,
            )
            .join(InvestmentRecord, InvestmentRecord.id == PayoutEventRecord.investment_id)
            .where(*criteria)
            .order_by(PayoutEventRecord.accrual_time, PayoutEventRecord.investment_id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [
            PayoutActivity(
                investment_id=investment_id,
                owner_id=owner_id,
                interval=IntervalType(interval),
                accrual_time=as_utc(accrual_time),
                amount=as_decimal(amount),
                engine_name=engine_name,
            )
            for investment_id, owner_id, interval, accrual_time, amount, engine_name in rows
        ]

    async def payout_events_between(self, start: datetime, end: datetime) -> list[PayoutActivity]:
        return await self._activity(PayoutEventRecord.accrual_time.between(as_utc(start), as_utc(end)))

    async def payout_events_for_owner(
        self, owner_id: str, *, since: datetime | None = None
    ) -> list[PayoutActivity]:
        criteria = [InvestmentRecord.owner_id == owner_id]
        if since is not None:
            criteria.append(PayoutEventRecord.accrual_time >= as_utc(since))
        return await self._activity(*criteria)

    async def add_investment(self, investment: NewInvestment) -> Investment:
        record = InvestmentRecord(
            owner_id=investment.owner_id,
            engine_id=investment.engine_id,
            engine_name=investment.engine_name,
            principal=investment.principal,
            daily_rate=investment.daily_rate,
            interval=investment.interval,
            total_periods=investment.total_periods,
            start_time=as_utc(investment.start_time),
            end_time=as_utc(investment.end_time),
            total_accrued=ZERO,
            status=InvestmentStatus.ACTIVE,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(record)
                await session.flush()
                created = to_investment(record)
        logger.info("Opened investment %s for owner %s", created.id, created.owner_id)
        return created

    async def list_outbox_events(self, event_type: str | None = None) -> list[OutboxEvent]:
        stmt = select(EngineOutbox).order_by(EngineOutbox.id)
        if event_type is not None:
            stmt = stmt.where(EngineOutbox.event_type == event_type)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            OutboxEvent(
                id=row.id,
                event_type=row.event_type,
                payload=dict(row.payload),
                status=row.status,
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ]


__all__ = ["SqlLedger", "SqlLedgerTransaction"]
