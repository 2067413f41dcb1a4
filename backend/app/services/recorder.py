"""Earnings recorder: applies due periods to the ledger exactly once."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable

from app.ledger.base import ZERO, Ledger, as_utc
from minehub.accrual import compute_accruals
from minehub.models import DuePeriod, InsertOutcome, Investment, InvestmentStatus, utcnow

logger = logging.getLogger(__name__)

COMPLETED_EVENT = "investment.completed"


class RecordOutcome(str, Enum):
    RECORDED = "recorded"
    SKIPPED_NOT_FOUND = "skipped_not_found"
    SKIPPED_INACTIVE = "skipped_inactive"


@dataclass
class RecordResult:
    """What one recorder invocation did for one investment."""

    investment_id: int
    outcome: RecordOutcome
    periods_recorded: int = 0
    total_amount: Decimal = ZERO
    duplicates: int = 0
    completed: bool = False
    last_accrual_time: datetime | None = None
    next_boundary: datetime | None = None

    @property
    def skipped(self) -> bool:
        return self.outcome is not RecordOutcome.RECORDED


def _payout_note(investment: Investment, period: DuePeriod) -> str:
    label = investment.engine_name or f"investment {investment.id}"
    return f"{investment.interval.value} payout {period.index}/{investment.total_periods} for {label}"


class EarningsRecorder:
    """Turn the calculator's due periods into durable ledger state.

    Each call runs in one ledger transaction: the investment is re-read (and
    row-locked where the store supports it), the plan is recomputed from that
    fresh state, and every insert, total, balance credit and outbox event for
    the investment commits or rolls back together.
    """

    def __init__(self, ledger: Ledger, clock: Callable[[], datetime] = utcnow):
        self._ledger = ledger
        self._clock = clock

    async def record(self, investment_id: int, now: datetime | None = None) -> RecordResult:
        now = as_utc(now) if now is not None else self._clock()

        async with self._ledger.transaction() as tx:
            investment = await tx.get_investment(investment_id)
            if investment is None:
                logger.info("Investment %s not found; skipping", investment_id)
                return RecordResult(investment_id=investment_id, outcome=RecordOutcome.SKIPPED_NOT_FOUND)
            if not investment.is_active:
                logger.debug("Investment %s is %s; skipping", investment_id, investment.status.value)
                return RecordResult(
                    investment_id=investment_id,
                    outcome=RecordOutcome.SKIPPED_INACTIVE,
                    last_accrual_time=investment.last_accrual_time,
                )

            plan = compute_accruals(investment, now)
            inserted = 0
            duplicates = 0
            inserted_total = ZERO
            last_inserted: datetime | None = None

            for period in plan.due:
                outcome = await tx.insert_payout_event_if_absent(
                    investment.id,
                    period.accrual_time,
                    period.amount,
                    _payout_note(investment, period),
                )
                if outcome is InsertOutcome.INSERTED:
                    inserted += 1
                    inserted_total += period.amount
                    last_inserted = period.accrual_time
                else:
                    duplicates += 1
                    logger.debug(
                        "Payout for investment %s at %s already recorded",
                        investment.id,
                        period.accrual_time.isoformat(),
                    )

            matured = now >= investment.end_time
            completed = False
            if inserted or matured:
                completed = await tx.update_investment_accrual(
                    investment.id,
                    last_accrual_time=last_inserted,
                    accrued_delta=inserted_total,
                    status=InvestmentStatus.COMPLETED if matured else None,
                )
            if inserted_total:
                await tx.credit_account(investment.owner_id, inserted_total)
            if completed:
                await tx.enqueue_event(
                    COMPLETED_EVENT,
                    {
                        "investment_id": investment.id,
                        "owner_id": investment.owner_id,
                        "engine_name": investment.engine_name,
                        "total_periods": investment.total_periods,
                        "total_accrued": investment.total_accrued + inserted_total,
                        "end_time": investment.end_time,
                        "completed_at": now,
                    },
                )

        if inserted:
            logger.info(
                "Recorded %s period(s) totalling %s for investment %s",
                inserted,
                inserted_total,
                investment.id,
            )
        if completed:
            logger.info("Investment %s completed at %s", investment.id, now.isoformat())

        return RecordResult(
            investment_id=investment.id,
            outcome=RecordOutcome.RECORDED,
            periods_recorded=inserted,
            total_amount=inserted_total,
            duplicates=duplicates,
            completed=completed,
            last_accrual_time=last_inserted or investment.last_accrual_time,
            next_boundary=plan.next_boundary,
        )


__all__ = ["COMPLETED_EVENT", "EarningsRecorder", "RecordOutcome", "RecordResult"]
