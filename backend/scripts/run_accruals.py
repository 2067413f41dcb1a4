"""Run an accrual batch, or trigger a single investment, from the command line."""

from __future__ import annotations

import argparse
import asyncio

from app.config import get_settings
from app.core.logging import setup_logging
from app.core.telemetry import setup_telemetry, shutdown_telemetry
from app.db.session import dispose_engine, get_engine, get_session_factory
from app.ledger import SqlLedger
from app.services.engine import AccrualEngine
from app.services.errors import AccrualEngineError
from minehub.models import IntervalType


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_telemetry(None, settings, engine=get_engine())
    engine = AccrualEngine(SqlLedger(get_session_factory()), settings)
    try:
        if args.investment is not None:
            result = await engine.trigger_single(args.investment, requested_by=args.requested_by)
        else:
            interval = IntervalType(args.interval) if args.interval else None
            result = await engine.run_batch(
                args.run_class,
                force=args.force,
                dry_run=args.dry_run,
                interval_filter=interval,
            )
    except AccrualEngineError as exc:
        print(f"Rejected: {exc}")
        return 1
    finally:
        await dispose_engine()
        shutdown_telemetry()

    if result.dry_run:
        print(f"[dry-run] {result.run_class}: {result.would_process} investment(s) would be processed")
        return 0
    print(
        f"{result.run_class}: processed={result.processed} skipped={result.skipped} "
        f"failed={result.failed} completed={result.completed} "
        f"periods={result.periods_recorded} amount={result.total_amount} "
        f"({result.duration_seconds:.2f}s)"
    )
    for detail in result.details:
        if detail.status == "failed":
            print(f"  investment {detail.investment_id} failed: {detail.error}")
    return 0 if result.succeeded else 2


def main() -> None:
    parser = argparse.ArgumentParser(description="Record due mining payouts")
    parser.add_argument("--run-class", default="hourly", help="hourly, daily or maintenance")
    parser.add_argument("--investment", type=int, help="Trigger a single investment instead of a batch")
    parser.add_argument("--requested-by", default=None, help="Operator name recorded with a single trigger")
    parser.add_argument("--interval", choices=[i.value for i in IntervalType])
    parser.add_argument("--force", action="store_true", help="Bypass the run-class overlap guard")
    parser.add_argument("--dry-run", action="store_true", help="Only count the investments that would run")
    args = parser.parse_args()
    setup_logging(get_settings().log_level)
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
