"""Opening investments from engine templates."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from app.ledger.base import Ledger, as_decimal, as_utc
from minehub.models import EngineTemplate, IntervalType, Investment, NewInvestment, utcnow

DEFAULT_HOURLY_PERIODS = 24
DEFAULT_DAILY_PERIODS = 365


def snapshot_terms(
    template: EngineTemplate,
    owner_id: str,
    principal: Decimal,
    purchased_at: datetime,
) -> NewInvestment:
    """Freeze a template's terms onto a new position.

    The template's ``daily_earning_rate`` is a percentage; the position keeps
    it as a fraction and never looks at the template again.
    """

    if not template.is_active:
        raise ValueError(f"Engine template '{template.name}' is not active")
    principal = as_decimal(principal)
    if principal <= 0:
        raise ValueError("Principal must be positive")
    rate = as_decimal(template.daily_earning_rate)
    if rate < 0:
        raise ValueError("Daily earning rate cannot be negative")

    interval = IntervalType(template.interval)
    if interval is IntervalType.HOURLY:
        periods = template.duration_hours if template.duration_hours is not None else DEFAULT_HOURLY_PERIODS
    else:
        periods = template.duration_days if template.duration_days is not None else DEFAULT_DAILY_PERIODS
    if periods <= 0:
        raise ValueError("Engine duration must be positive")

    return NewInvestment(
        owner_id=owner_id,
        principal=principal,
        daily_rate=rate / Decimal(100),
        interval=interval,
        total_periods=int(periods),
        start_time=as_utc(purchased_at),
        engine_id=template.id,
        engine_name=template.name,
    )


async def open_investment(
    ledger: Ledger,
    template: EngineTemplate,
    owner_id: str,
    principal: Decimal,
    purchased_at: datetime | None = None,
) -> Investment:
    terms = snapshot_terms(template, owner_id, principal, purchased_at or utcnow())
    return await ledger.add_investment(terms)


__all__ = ["DEFAULT_DAILY_PERIODS", "DEFAULT_HOURLY_PERIODS", "open_investment", "snapshot_terms"]
