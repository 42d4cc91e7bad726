# cycle_engine/api/v1/routers/cycles.py
"""
Cycle endpoints for the cycle engine API (v1).

Endpoints:
    POST /cycles/run - Run the daily cycle check now
    POST /cycles/retention/purge - Run the snapshot retention purge
    GET /cycles/{tenant_id}/status - Status of the tenant's current (or given) cycle
    GET /cycles/{tenant_id}/history - Recent cycle statuses
    GET /cycles/{tenant_id}/snapshots - Recent snapshots
    GET /cycles/{tenant_id}/snapshots/{cycle_number} - One snapshot
    GET /cycles/{tenant_id}/snapshots/{cycle_number}/comparison - Change vs. previous snapshot
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ....errors import ConfigurationError, InvalidCycleConfigError, RetentionPurgeError
from ....dependencies import get_engine
from ....models import Snapshot, SnapshotComparison
from ....services.cycle_period import calculate_cycle_period
from ....services.engine import CycleEngine
from ..models import CycleStatusResponse, PurgeRequest, RunCycleCheckRequest

router = APIRouter(prefix="/cycles", tags=["Cycles"])

logger = logging.getLogger("cycle_engine.api.cycles")


# =========================================================================
# BATCH OPERATIONS
# =========================================================================


@router.post(
    "/run",
    summary="Run daily cycle check",
    description="Collect telemetry for every tenant whose cycle starts on the given (or current) UTC date.",
)
async def run_cycle_check(
    request: Optional[RunCycleCheckRequest] = Body(default=None),
    engine: CycleEngine = Depends(get_engine),
) -> Dict[str, Any]:
    as_of = request.as_of if request else None
    try:
        summary = await engine.orchestrator.run(as_of)
    except ConfigurationError as e:
        logger.error(f"Cycle check aborted: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return summary.to_response()


@router.post(
    "/retention/purge",
    summary="Purge expired snapshots",
    description="Delete snapshots older than the retention window whose cycles are finished.",
)
async def purge_snapshots(
    request: Optional[PurgeRequest] = Body(default=None),
    engine: CycleEngine = Depends(get_engine),
) -> Dict[str, Any]:
    request = request or PurgeRequest()
    try:
        return await engine.store.purge_expired(
            retention_days=request.retention_days,
            dry_run=request.dry_run,
        )
    except RetentionPurgeError as e:
        logger.error(f"Retention purge failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


# =========================================================================
# TENANT CYCLES
# =========================================================================


@router.get(
    "/{tenant_id}/status",
    response_model=CycleStatusResponse,
    response_model_by_alias=True,
    summary="Get cycle status",
)
async def get_cycle_status(
    tenant_id: str,
    cycle: Optional[int] = Query(default=None, description="Cycle number (defaults to the current cycle)"),
    engine: CycleEngine = Depends(get_engine),
) -> CycleStatusResponse:
    if cycle is None:
        try:
            config = await engine.config_repository.get(tenant_id)
        except ConfigurationError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        except InvalidCycleConfigError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
        if config is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown tenant {tenant_id}")
        cycle = calculate_cycle_period(config.cycle_anchor_date, config.cycle_length_days).cycle_number

    cycle_status = await engine.tracker.get(tenant_id, cycle)
    if cycle_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No status for {tenant_id} cycle {cycle}",
        )
    return CycleStatusResponse.from_status(cycle_status, engine.tracker.is_failed_terminal(cycle_status))


@router.get(
    "/{tenant_id}/history",
    response_model=List[CycleStatusResponse],
    response_model_by_alias=True,
    summary="List recent cycle statuses",
)
async def get_cycle_history(
    tenant_id: str,
    limit: int = Query(default=12, ge=1, le=104),
    engine: CycleEngine = Depends(get_engine),
) -> List[CycleStatusResponse]:
    statuses = await engine.tracker.history(tenant_id, limit)
    return [
        CycleStatusResponse.from_status(s, engine.tracker.is_failed_terminal(s)) for s in statuses
    ]


@router.get(
    "/{tenant_id}/snapshots",
    response_model=List[Snapshot],
    summary="List recent snapshots",
)
async def list_snapshots(
    tenant_id: str,
    limit: int = Query(default=12, ge=1, le=104),
    engine: CycleEngine = Depends(get_engine),
) -> List[Snapshot]:
    return await engine.store.list_for_tenant(tenant_id, limit)


@router.get(
    "/{tenant_id}/snapshots/{cycle_number}",
    response_model=Snapshot,
    summary="Get one snapshot",
)
async def get_snapshot(
    tenant_id: str,
    cycle_number: int,
    engine: CycleEngine = Depends(get_engine),
) -> Snapshot:
    snapshot = await engine.store.get(tenant_id, cycle_number)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No snapshot for {tenant_id} cycle {cycle_number}",
        )
    return snapshot


@router.get(
    "/{tenant_id}/snapshots/{cycle_number}/comparison",
    response_model=SnapshotComparison,
    response_model_by_alias=True,
    summary="Compare a snapshot with the previous cycle",
)
async def compare_snapshot(
    tenant_id: str,
    cycle_number: int,
    engine: CycleEngine = Depends(get_engine),
) -> SnapshotComparison:
    comparison = await engine.store.compare_with_previous(tenant_id, cycle_number)
    if comparison is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No snapshot for {tenant_id} cycle {cycle_number}",
        )
    return comparison
