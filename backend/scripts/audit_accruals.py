"""Print the ledger health report and any investments behind schedule."""

from __future__ import annotations

import argparse
import asyncio

from app.config import get_settings
from app.core.logging import setup_logging
from app.db.session import dispose_engine, get_session_factory
from app.ledger import SqlLedger
from app.services.diagnostics import AccrualDiagnostics, DiagnosticsConfig, HealthStatus


async def _run(limit: int, timeframe: str | None) -> int:
    settings = get_settings()
    diagnostics = AccrualDiagnostics(SqlLedger(get_session_factory()), DiagnosticsConfig.from_settings(settings))
    try:
        report = await diagnostics.audit()
        summary = await diagnostics.activity_summary(timeframe=timeframe) if timeframe else None
    finally:
        await dispose_engine()

    print(
        f"Status: {report.status.value} | active={report.active_count} "
        f"matured-but-active={report.matured_active_count} "
        f"behind={report.behind_schedule_count} mismatches={len(report.conservation_mismatches)}"
    )
    for item in report.behind_schedule[:limit]:
        print(
            f"  #{item.investment_id} ({item.interval.value}) expected={item.expected_periods} "
            f"recorded={item.recorded_periods} missing={item.missing_periods} "
            f"amount={item.missing_amount} last={item.last_accrual_time or '-'}"
            + (" matured" if item.matured else "")
        )
    if report.behind_schedule_count > limit:
        print(f"  ... {report.behind_schedule_count - limit} more")
    for mismatch in report.conservation_mismatches:
        print(
            f"  #{mismatch.investment_id} total_accrued={mismatch.total_accrued} "
            f"events={mismatch.events_total} diff={mismatch.difference}"
        )
    if summary is not None:
        print(f"Activity ({summary.timeframe}): {summary.total_events} event(s), {summary.total_amount}")
        for row in summary.by_interval:
            print(
                f"  {row.interval.value}: events={row.events} investments={row.investments} "
                f"owners={row.owners} total={row.total_amount} avg={row.average_amount}"
            )
    return 0 if report.status is HealthStatus.HEALTHY else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit recorded payouts against the schedule")
    parser.add_argument("--limit", type=int, default=20, help="Max behind-schedule rows to print")
    parser.add_argument("--timeframe", choices=["24h", "7d", "30d", "90d"], default=None)
    args = parser.parse_args()
    setup_logging(get_settings().log_level)
    raise SystemExit(asyncio.run(_run(args.limit, args.timeframe)))


if __name__ == "__main__":
    main()
