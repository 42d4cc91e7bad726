"""
Celery tasks driving the async cycle engine.

Each task builds its own ``CycleEngine`` inside ``asyncio.run`` so the
database engine and HTTP client are bound to that task's event loop and
disposed before it ends.
"""
import asyncio
import logging
from datetime import date
from typing import Any, Dict, Optional

from .celery_app import app as celery_app
from .services.engine import CycleEngine

logger = logging.getLogger("cycle_engine.tasks")


# ============================================================================
# DAILY CYCLE CHECK
# ============================================================================

@celery_app.task(bind=True, name="cycle_engine.tasks.run_daily_cycle_check")
def run_daily_cycle_check(self, as_of: Optional[str] = None) -> Dict[str, Any]:
    """
    Collect telemetry for every tenant whose cycle starts today.

    Args:
        as_of: Optional ISO date to evaluate instead of today

    Returns:
        Batch summary (camelCase keys):
        {
            "tenantsProcessed": int,
            "results": [{"tenantId": str, "success": bool, ...}],
            "timestamp": str
        }

    Raises:
        ConfigurationError: If configuration or status storage is unreachable
    """
    now = date.fromisoformat(as_of) if as_of else None
    try:
        summary = asyncio.run(_run_daily_cycle_check(now))
    except Exception as e:
        logger.error(f"Daily cycle check failed: {e}")
        raise

    failed = summary.get("failedCount", 0)
    if failed:
        logger.warning(f"Daily cycle check finished with {failed} failed tenant(s)")
    return summary


async def _run_daily_cycle_check(now: Optional[date]) -> Dict[str, Any]:
    async with CycleEngine.build() as engine:
        summary = await engine.orchestrator.run(now)
        return summary.to_response()


# ============================================================================
# RETENTION PURGE
# ============================================================================

@celery_app.task(bind=True, name="cycle_engine.tasks.purge_expired_snapshots_task")
def purge_expired_snapshots_task(self, dry_run: Optional[bool] = None) -> Dict[str, Any]:
    """
    Delete expired snapshots of finished cycles.

    Args:
        dry_run: Report without deleting (defaults to config)

    Returns:
        Dict with purge statistics
    """
    try:
        result = asyncio.run(_purge_expired_snapshots(dry_run))
    except Exception as e:
        logger.error(f"Snapshot retention purge failed: {e}")
        raise

    logger.info(
        f"Snapshot retention purge: {result['deleted_count']} deleted, "
        f"{result['skipped_count']} kept"
    )
    return result


async def _purge_expired_snapshots(dry_run: Optional[bool]) -> Dict[str, Any]:
    async with CycleEngine.build() as engine:
        return await engine.orchestrator.purge(dry_run=dry_run)
