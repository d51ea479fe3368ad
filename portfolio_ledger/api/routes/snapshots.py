"""Performance snapshot endpoints."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...schemas import (
    ComputeResultSchema,
    ComputeSnapshotsRequest,
    PerformanceSummarySchema,
    SnapshotSchema,
    SnapshotTriggerRequest,
)
from ...services.events import SnapshotTrigger
from ...services.snapshots import SnapshotInProgressError, SnapshotService, summarize
from ...services.types import PerformanceSnapshot
from ..dependencies import InternalAuth, get_snapshot_service

router = APIRouter(dependencies=[InternalAuth])


def _result(portfolio_id: str, snapshots: list[PerformanceSnapshot]) -> ComputeResultSchema:
    return ComputeResultSchema(
        portfolio_id=portfolio_id,
        computed=len(snapshots),
        first_date=snapshots[0].date if snapshots else None,
        last_date=snapshots[-1].date if snapshots else None,
    )


def _conflict(exc: SnapshotInProgressError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.post("/portfolios/{portfolio_id}/snapshots/compute", response_model=ComputeResultSchema)
async def compute_snapshots(
    portfolio_id: str,
    payload: ComputeSnapshotsRequest,
    service: SnapshotService = Depends(get_snapshot_service),
) -> ComputeResultSchema:
    try:
        snapshots = await service.compute_snapshots(portfolio_id, payload.from_date, payload.to_date)
    except SnapshotInProgressError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _result(portfolio_id, snapshots)


@router.post("/portfolios/{portfolio_id}/snapshots/recompute", response_model=ComputeResultSchema)
async def recompute_all(
    portfolio_id: str,
    service: SnapshotService = Depends(get_snapshot_service),
) -> ComputeResultSchema:
    try:
        snapshots = await service.recompute_all(portfolio_id)
    except SnapshotInProgressError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _result(portfolio_id, snapshots)


@router.post("/portfolios/{portfolio_id}/snapshots/trigger", response_model=ComputeResultSchema)
async def handle_trigger(
    portfolio_id: str,
    payload: SnapshotTriggerRequest,
    service: SnapshotService = Depends(get_snapshot_service),
) -> ComputeResultSchema:
    try:
        event = SnapshotTrigger(
            type=payload.type,
            portfolio_id=portfolio_id,
            date=payload.date,
            old_date=payload.old_date,
            new_date=payload.new_date,
        )
        snapshots = await service.handle_trigger(event)
    except SnapshotInProgressError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _result(portfolio_id, snapshots)


@router.get("/portfolios/{portfolio_id}/snapshots", response_model=list[SnapshotSchema])
async def get_snapshots(
    portfolio_id: str,
    start: date = Query(..., description="Inclusive start date"),
    end: date = Query(..., description="Inclusive end date"),
    aggregate: bool = Query(default=False, description="Downsample long ranges for charting"),
    service: SnapshotService = Depends(get_snapshot_service),
) -> list[SnapshotSchema]:
    try:
        if aggregate:
            snapshots = await service.get_aggregated_snapshots(portfolio_id, start, end)
        else:
            snapshots = await service.get_snapshots(portfolio_id, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [SnapshotSchema.model_validate(s) for s in snapshots]


@router.get("/portfolios/{portfolio_id}/snapshots/latest", response_model=SnapshotSchema)
async def get_latest_snapshot(
    portfolio_id: str,
    service: SnapshotService = Depends(get_snapshot_service),
) -> SnapshotSchema:
    snapshot = await service.get_latest_snapshot(portfolio_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No snapshots for portfolio")
    return SnapshotSchema.model_validate(snapshot)


@router.get("/portfolios/{portfolio_id}/snapshots/summary", response_model=PerformanceSummarySchema)
async def get_summary(
    portfolio_id: str,
    start: date = Query(...),
    end: date = Query(...),
    service: SnapshotService = Depends(get_snapshot_service),
) -> PerformanceSummarySchema:
    try:
        snapshots = await service.get_snapshots(portfolio_id, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PerformanceSummarySchema.model_validate(summarize(snapshots))


@router.get("/portfolios/{portfolio_id}/snapshots/status")
async def get_status(
    portfolio_id: str,
    service: SnapshotService = Depends(get_snapshot_service),
) -> dict[str, bool]:
    return {
        "needs_computation": await service.needs_computation(portfolio_id),
        "computing": service.is_computing(portfolio_id),
    }


@router.delete("/portfolios/{portfolio_id}/snapshots", status_code=status.HTTP_200_OK)
async def delete_snapshots(
    portfolio_id: str,
    service: SnapshotService = Depends(get_snapshot_service),
) -> dict[str, int]:
    try:
        deleted = await service.delete_snapshots(portfolio_id)
    except SnapshotInProgressError as exc:
        raise _conflict(exc) from exc
    return {"deleted": deleted}
