"""Route registration helpers."""

from __future__ import annotations

from fastapi import APIRouter

from .engine import router as engine_router

api_router = APIRouter()
api_router.include_router(engine_router, prefix="/engine", tags=["engine"])

__all__ = ["api_router"]
