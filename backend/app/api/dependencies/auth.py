"""Shared FastAPI dependencies for the engine routes."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from app.config import AppSettings, get_settings
from app.services.engine import AccrualEngine


def get_app_settings(request: Request) -> AppSettings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_accrual_engine(request: Request) -> AccrualEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Accrual engine not ready")
    return engine


def verify_internal_token(
    x_internal_token: str | None = Header(default=None),
    settings: AppSettings = Depends(get_app_settings),
) -> None:
    if settings.internal_auth_token is None:
        return
    if x_internal_token != settings.internal_auth_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


InternalAuth = Depends(verify_internal_token)


__all__ = ["InternalAuth", "get_accrual_engine", "get_app_settings", "verify_internal_token"]
