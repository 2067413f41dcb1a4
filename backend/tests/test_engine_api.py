import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal

from httpx import ASGITransport, AsyncClient

from app.config import AppSettings
from app.ledger import InMemoryLedger
from app.main import create_app
from app.services.scheduler import MANUAL_TRIGGER_EVENT
from minehub.models import IntervalType, Investment, utcnow

TOKEN = "internal-secret"
AUTH = {"X-Internal-Token": TOKEN}


def _ledger() -> InMemoryLedger:
    now = utcnow()
    hourly_start = now - timedelta(hours=3, minutes=10)
    daily_start = now - timedelta(days=2, hours=1)
    return InMemoryLedger(
        [
            Investment(
                id=1,
                owner_id="owner-1",
                principal=Decimal("1000"),
                daily_rate=Decimal("0.024"),
                interval=IntervalType.HOURLY,
                total_periods=24,
                start_time=hourly_start,
                end_time=hourly_start + timedelta(hours=24),
                engine_name="Antminer S19",
            ),
            Investment(
                id=2,
                owner_id="owner-2",
                principal=Decimal("500"),
                daily_rate=Decimal("0.02"),
                interval=IntervalType.DAILY,
                total_periods=30,
                start_time=daily_start,
                end_time=daily_start + timedelta(days=30),
            ),
        ]
    )


def _client(ledger: InMemoryLedger, **overrides):
    settings = AppSettings(internal_auth_token=TOKEN, scheduler_enabled=False, telemetry_enabled=False, **overrides)
    app = create_app(settings=settings, ledger=ledger)

    @asynccontextmanager
    async def _manager():
        async with app.router.lifespan_context(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test", headers=AUTH) as client:
                yield app, client

    return _manager


def test_engine_routes_require_internal_token():
    client_manager = _client(_ledger())

    async def _scenario():
        async with client_manager() as (_, api_client):
            missing = await api_client.get("/engine/jobs", headers={"X-Internal-Token": ""})
            assert missing.status_code == 401

            wrong = await api_client.post("/engine/runs/hourly", headers={"X-Internal-Token": "nope"})
            assert wrong.status_code == 401

            liveness = await api_client.get("/health", headers={"X-Internal-Token": ""})
            assert liveness.status_code == 200
            assert liveness.json()["status"] == "ok"
            assert liveness.json()["scheduler_running"] is False

    asyncio.run(_scenario())


def test_run_batch_records_due_periods():
    ledger = _ledger()
    client_manager = _client(ledger)

    async def _scenario():
        async with client_manager() as (_, api_client):
            dry = await api_client.post("/engine/runs/daily", params={"dry_run": "true"})
            assert dry.status_code == 200
            assert dry.json()["dry_run"] is True
            assert dry.json()["would_process"] == 1
            assert await ledger.list_payout_events(2) == []

            response = await api_client.post("/engine/runs/hourly")
            assert response.status_code == 200
            payload = response.json()
            assert payload["trigger"] == "manual"
            assert payload["processed"] == 1
            assert payload["periods_recorded"] == 3
            assert Decimal(payload["total_amount"]) == Decimal("3")
            assert payload["details"][0]["investment_id"] == 1
            assert payload["details"][0]["status"] == "recorded"

            again = await api_client.post("/engine/runs/hourly")
            assert again.json()["periods_recorded"] == 0

            unknown = await api_client.post("/engine/runs/weekly")
            assert unknown.status_code == 404

    asyncio.run(_scenario())


def test_busy_run_class_conflicts_unless_forced():
    client_manager = _client(_ledger())

    async def _scenario():
        async with client_manager() as (app, api_client):
            state = app.state.engine.scheduler.state("daily")
            state.active_runs = 1
            try:
                busy = await api_client.post("/engine/runs/daily")
                assert busy.status_code == 409

                forced = await api_client.post("/engine/runs/daily", params={"force": "true"})
                assert forced.status_code == 200
                assert forced.json()["trigger"] == "forced"
                assert forced.json()["periods_recorded"] == 2
            finally:
                state.active_runs = 0

    asyncio.run(_scenario())


def test_trigger_single_investment():
    ledger = _ledger()
    client_manager = _client(ledger)

    async def _scenario():
        async with client_manager() as (_, api_client):
            missing = await api_client.post("/engine/investments/99/trigger")
            assert missing.status_code == 404

            response = await api_client.post(
                "/engine/investments/2/trigger", params={"requested_by": "ops@minehub"}
            )
            assert response.status_code == 200
            assert response.json()["run_class"] == "single"
            assert response.json()["periods_recorded"] == 2

            events = await ledger.list_outbox_events(MANUAL_TRIGGER_EVENT)
            assert [e.payload["requested_by"] for e in events] == ["ops@minehub"]
            assert await ledger.account_balance("owner-2") == (Decimal("20"), Decimal("20"))

    asyncio.run(_scenario())


def test_health_jobs_and_diagnostics():
    client_manager = _client(_ledger(), behind_schedule_tolerance_periods=1, degraded_behind_threshold=1)

    async def _scenario():
        async with client_manager() as (_, api_client):
            health = await api_client.get("/engine/health")
            assert health.status_code == 200
            assert health.json()["status"] == "degraded"
            assert health.json()["behind_schedule_count"] == 2

            await api_client.post("/engine/runs/hourly")
            await api_client.post("/engine/runs/daily")

            health = await api_client.get("/engine/health")
            assert health.json()["status"] == "healthy"
            assert health.json()["report"]["conservation_mismatches"] == []
            assert health.json()["last_run_timestamps"]["hourly"] is not None

            jobs = await api_client.get("/engine/jobs")
            assert [job["name"] for job in jobs.json()] == ["hourly", "daily", "maintenance"]
            assert jobs.json()[0]["total_runs"] == 1
            assert jobs.json()[0]["running"] is False

            diagnostics = await api_client.get("/engine/investments/1/diagnostics")
            assert diagnostics.status_code == 200
            body = diagnostics.json()
            assert body["expected_periods"] == 3
            assert body["recorded_periods"] == 3
            assert body["conservation_ok"] is True
            assert len(body["recent_events"]) == 3
            assert body["due"] == []

            missing = await api_client.get("/engine/investments/99/diagnostics")
            assert missing.status_code == 404

    asyncio.run(_scenario())


def test_analytics_timeframes():
    client_manager = _client(_ledger())

    async def _scenario():
        async with client_manager() as (_, api_client):
            await api_client.post("/engine/runs/hourly")
            await api_client.post("/engine/runs/daily")

            day = await api_client.get("/engine/analytics")
            assert day.status_code == 200
            assert day.json()["timeframe"] == "24h"
            assert day.json()["total_events"] == 4

            week = await api_client.get("/engine/analytics", params={"timeframe": "7d"})
            assert week.json()["total_events"] == 5
            assert {row["interval"] for row in week.json()["by_interval"]} == {"hourly", "daily"}

            invalid = await api_client.get("/engine/analytics", params={"timeframe": "1y"})
            assert invalid.status_code == 400

    asyncio.run(_scenario())


def test_owner_summary_route():
    client_manager = _client(_ledger())

    async def _scenario():
        async with client_manager() as (_, api_client):
            await api_client.post("/engine/runs/hourly")

            response = await api_client.get("/engine/owners/owner-1/summary")
            assert response.status_code == 200
            body = response.json()
            assert body["owner_id"] == "owner-1"
            assert body["active_count"] == 1
            assert body["payout_count"] == 3
            assert Decimal(body["total_earnings"]) == Decimal("3")
            assert [p["engine_name"] for p in body["recent_payouts"]] == ["Antminer S19"] * 3

            analytics = await api_client.get("/engine/analytics")
            assert analytics.json()["top_engines"][0]["engine_name"] == "Antminer S19"

            empty = await api_client.get("/engine/owners/owner-9/summary")
            assert empty.status_code == 200
            assert empty.json()["payout_count"] == 0
            assert empty.json()["last_payout_time"] is None

            unauthorized = await api_client.get(
                "/engine/owners/owner-1/summary", headers={"X-Internal-Token": "nope"}
            )
            assert unauthorized.status_code == 401

    asyncio.run(_scenario())
