"""Operator alerts raised by the scheduler and health checks."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque

from app.ledger.base import Ledger
from minehub.models import utcnow

logger = logging.getLogger(__name__)

ALERT_EVENT = "engine.alert"


@dataclass(frozen=True)
class OperatorAlert:
    kind: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utcnow)


class OperatorAlerts:
    """Log alerts at ERROR, keep the latest ones and publish them to the outbox.

    Publishing happens in its own ledger transaction. A failing sink is logged
    and never propagates into the run that raised the alert.
    """

    def __init__(
        self,
        ledger: Ledger | None = None,
        *,
        history: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._ledger = ledger
        self._clock = clock
        self._recent: Deque[OperatorAlert] = deque(maxlen=history)

    def recent(self) -> list[OperatorAlert]:
        return list(self._recent)

    async def raise_alert(self, kind: str, message: str, **details: Any) -> OperatorAlert:
        alert = OperatorAlert(kind=kind, message=message, details=details, raised_at=self._clock())
        self._recent.append(alert)
        logger.error("Operator alert [%s]: %s %s", kind, message, details or "")
        if self._ledger is None:
            return alert
        try:
            async with self._ledger.transaction() as tx:
                await tx.enqueue_event(
                    ALERT_EVENT,
                    {"kind": kind, "message": message, "details": details, "raised_at": alert.raised_at},
                )
        except Exception:  # noqa: BLE001 - alerting must not break the caller
            logger.exception("Failed to publish operator alert %s", kind)
        return alert


__all__ = ["ALERT_EVENT", "OperatorAlert", "OperatorAlerts"]
