"""FastAPI application entrypoint.

Run with ``uvicorn app.main:create_app --factory``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from app.api.routes import api_router
from app.config import AppSettings, get_settings
from app.core.logging import setup_logging
from app.core.telemetry import setup_telemetry, shutdown_telemetry
from app.db.init import init_database
from app.db.session import dispose_engine, get_engine, get_session_factory
from app.ledger import Ledger, SqlLedger
from app.services.engine import AccrualEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings: AppSettings = app.state.settings
    if app.state.owns_database:
        await init_database(get_engine())

    runner = None
    if settings.scheduler_enabled:
        runner = app.state.engine.build_runner()
        runner.start()
    app.state.runner = runner
    try:
        yield
    finally:
        if runner is not None:
            await runner.stop()
        if app.state.owns_database:
            await dispose_engine()
        shutdown_telemetry()


def create_app(settings: AppSettings | None = None, ledger: Ledger | None = None) -> FastAPI:
    """Build the service; an injected ``ledger`` skips schema setup and engine disposal."""

    settings = settings or get_settings()
    setup_logging(settings.log_level)
    owns_database = ledger is None
    if ledger is None:
        ledger = SqlLedger(get_session_factory())

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    app.state.settings = settings
    app.state.owns_database = owns_database
    app.state.engine = AccrualEngine(ledger, settings)
    app.state.runner = None
    setup_telemetry(app, settings, engine=get_engine() if owns_database else None)
    logger.info("Accrual engine configuration: %s", settings.dict_for_logging())

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, object]:
        """Liveness probe."""

        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_enabled": settings.scheduler_enabled,
            "scheduler_running": bool(app.state.runner and app.state.runner.running),
        }

    app.include_router(api_router)
    return app


__all__ = ["create_app"]
