"""Operational endpoints for running and inspecting the accrual engine."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies.auth import InternalAuth, get_accrual_engine
from app.schemas import (
    ActivitySummarySchema,
    BatchResultSchema,
    EngineHealthSchema,
    InvestmentDiagnosticsSchema,
    OwnerSummarySchema,
    RunStateSchema,
)
from app.services.engine import AccrualEngine
from app.services.errors import RunInProgressError, UnknownRunClassError
from minehub.models import IntervalType

router = APIRouter(dependencies=[InternalAuth])


@router.post("/runs/{run_class}", response_model=BatchResultSchema)
async def post_run(
    run_class: str,
    force: bool = False,
    dry_run: bool = False,
    interval: IntervalType | None = None,
    engine: AccrualEngine = Depends(get_accrual_engine),
) -> BatchResultSchema:
    """Run a batch now; rejected with 409 while the run-class is busy unless forced."""

    try:
        result = await engine.run_batch(run_class, force=force, dry_run=dry_run, interval_filter=interval)
    except UnknownRunClassError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RunInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return BatchResultSchema.model_validate(result)


@router.post("/investments/{investment_id}/trigger", response_model=BatchResultSchema)
async def post_trigger(
    investment_id: int,
    requested_by: str | None = Query(default=None, max_length=64),
    engine: AccrualEngine = Depends(get_accrual_engine),
) -> BatchResultSchema:
    if await engine.ledger.get_investment(investment_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Investment not found")
    result = await engine.trigger_single(investment_id, requested_by=requested_by)
    return BatchResultSchema.model_validate(result)


@router.get("/health", response_model=EngineHealthSchema)
async def get_health(engine: AccrualEngine = Depends(get_accrual_engine)) -> EngineHealthSchema:
    return EngineHealthSchema.model_validate(await engine.get_health())


@router.get("/jobs", response_model=list[RunStateSchema])
async def get_jobs(engine: AccrualEngine = Depends(get_accrual_engine)) -> list[RunStateSchema]:
    return [RunStateSchema.model_validate(state) for state in engine.job_status().values()]


@router.get("/investments/{investment_id}/diagnostics", response_model=InvestmentDiagnosticsSchema)
async def get_investment_diagnostics(
    investment_id: int,
    engine: AccrualEngine = Depends(get_accrual_engine),
) -> InvestmentDiagnosticsSchema:
    diagnostics = await engine.inspect_investment(investment_id)
    if diagnostics is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Investment not found")
    return InvestmentDiagnosticsSchema.model_validate(diagnostics)


@router.get("/analytics", response_model=ActivitySummarySchema)
async def get_analytics(
    timeframe: str = "24h",
    engine: AccrualEngine = Depends(get_accrual_engine),
) -> ActivitySummarySchema:
    try:
        summary = await engine.activity_summary(timeframe)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ActivitySummarySchema.model_validate(summary)


@router.get("/owners/{owner_id}/summary", response_model=OwnerSummarySchema)
async def get_owner_summary(
    owner_id: str,
    engine: AccrualEngine = Depends(get_accrual_engine),
) -> OwnerSummarySchema:
    return OwnerSummarySchema.model_validate(await engine.owner_summary(owner_id))


__all__ = ["router"]
