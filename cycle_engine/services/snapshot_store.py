# ============================================================================
# Cycle Engine - Snapshot Store
# ============================================================================
"""
Durable storage and retention for cycle telemetry snapshots.

This service handles:
- Insert-only persistence keyed by (tenant_id, cycle_number)
- Lookup of a single snapshot and a tenant's recent snapshots
- Cycle-over-cycle comparison (member growth, activity change)
- Retention purge that never removes evidence of an unfinished cycle

Retention Policy:
    A snapshot older than ``snapshot_retention_days`` is deleted only when
    its cycle status is ``complete`` or failed-terminal (failed with no
    attempts left). Snapshots of cycles that may still be resumed, or that
    have no status row at all, are kept and counted as skipped.

Usage:
    store = SnapshotStore(database, tracker)

    created = await store.persist(snapshot)
    result = await store.purge_expired(dry_run=True)
    print(f"Would delete {result['would_delete_count']} snapshots")
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..config import settings
from ..database.models import CycleSnapshotRecord, CycleStatusRecord, utcnow
from ..errors import RetentionPurgeError
from ..models import CycleState, CycleStatus, Snapshot, SnapshotComparison
from .cycle_status_tracker import CycleStatusTracker
from .database_service import DatabaseService

logger = logging.getLogger("cycle_engine.services.snapshot_store")


def _member_counts(snapshot: Snapshot) -> tuple:
    """(total, active) members, preferring member tracking over the member list."""
    tracking = snapshot.data.get("member_tracking") or {}
    members = snapshot.data.get("members") or {}
    info = snapshot.data.get("corporation_info") or {}
    total = members.get("total") or tracking.get("total") or info.get("member_count") or 0
    active = tracking.get("active") or 0
    return int(total), int(active)


def compare_snapshots(current: Snapshot, previous: Optional[Snapshot]) -> SnapshotComparison:
    """
    Compare a snapshot with the one from an earlier cycle.

    With no previous snapshot every delta is zero. Growth percent is zero
    when the previous member count is zero.
    """
    if previous is None:
        return SnapshotComparison(tenant_id=current.tenant_id, current_cycle=current.cycle_number)

    current_total, current_active = _member_counts(current)
    previous_total, previous_active = _member_counts(previous)
    growth = current_total - previous_total

    return SnapshotComparison(
        tenant_id=current.tenant_id,
        current_cycle=current.cycle_number,
        previous_cycle=previous.cycle_number,
        member_growth=growth,
        member_growth_percent=round(growth / previous_total * 100, 2) if previous_total else 0.0,
        activity_change=current_active - previous_active,
    )


class SnapshotStore:
    """
    Persistence and retention for ``cycle_snapshots``.

    Attributes:
        database: DatabaseService providing sessions
        tracker: Status tracker, used to decide whether a cycle is finished
    """

    def __init__(self, database: DatabaseService, tracker: CycleStatusTracker):
        self.database = database
        self.tracker = tracker
        self.settings = settings

    async def persist(self, snapshot: Snapshot) -> bool:
        """
        Insert a snapshot unless one already exists for its cycle.

        Returns:
            True if inserted, False if a snapshot for the cycle was already
            stored (the stored one is left untouched)
        """
        payload = snapshot.model_dump(mode="json")
        try:
            async with self.database.get_session() as session:
                session.add(
                    CycleSnapshotRecord(
                        tenant_id=snapshot.tenant_id,
                        cycle_number=snapshot.cycle_number,
                        collected_at=snapshot.collected_at,
                        data=payload["data"],
                        errors=payload["errors"],
                        categories_requested=payload["categories_requested"],
                        incomplete=snapshot.incomplete,
                    )
                )
        except IntegrityError:
            logger.info(
                f"Snapshot for {snapshot.tenant_id} cycle {snapshot.cycle_number} already stored, keeping it"
            )
            return False

        logger.info(
            f"Stored snapshot for {snapshot.tenant_id} cycle {snapshot.cycle_number} "
            f"({snapshot.categories_collected} categories, {snapshot.error_count} errors)"
        )
        return True

    async def get(self, tenant_id: str, cycle_number: int) -> Optional[Snapshot]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CycleSnapshotRecord).where(
                    and_(
                        CycleSnapshotRecord.tenant_id == tenant_id,
                        CycleSnapshotRecord.cycle_number == cycle_number,
                    )
                )
            )
            record = result.scalar_one_or_none()
            return Snapshot.model_validate(record) if record else None

    async def list_for_tenant(self, tenant_id: str, limit: int = 12) -> List[Snapshot]:
        """Most recent cycles first."""
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CycleSnapshotRecord)
                .where(CycleSnapshotRecord.tenant_id == tenant_id)
                .order_by(CycleSnapshotRecord.cycle_number.desc())
                .limit(limit)
            )
            return [Snapshot.model_validate(r) for r in result.scalars().all()]

    async def get_previous(self, tenant_id: str, cycle_number: int) -> Optional[Snapshot]:
        """Latest snapshot stored for a cycle before ``cycle_number``."""
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CycleSnapshotRecord)
                .where(
                    and_(
                        CycleSnapshotRecord.tenant_id == tenant_id,
                        CycleSnapshotRecord.cycle_number < cycle_number,
                    )
                )
                .order_by(CycleSnapshotRecord.cycle_number.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return Snapshot.model_validate(record) if record else None

    async def compare_with_previous(self, tenant_id: str, cycle_number: int) -> Optional[SnapshotComparison]:
        """
        Compare a stored snapshot with the tenant's previous one.

        Returns:
            SnapshotComparison, or None if the cycle has no snapshot
        """
        current = await self.get(tenant_id, cycle_number)
        if current is None:
            return None
        previous = await self.get_previous(tenant_id, cycle_number)
        return compare_snapshots(current, previous)

    def _is_finished(self, status: Optional[str], attempt_count: Optional[int]) -> bool:
        if status is None:
            return False
        if status == CycleState.COMPLETE.value:
            return True
        row_status = CycleStatus(
            tenant_id="",
            cycle_number=0,
            status=CycleState(status),
            attempt_count=attempt_count or 0,
        )
        return self.tracker.is_failed_terminal(row_status)

    async def purge_expired(
        self,
        retention_days: Optional[int] = None,
        now: Optional[datetime] = None,
        dry_run: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Delete expired snapshots of finished cycles.

        Args:
            retention_days: Window in days (defaults to config)
            now: Reference time, naive UTC (defaults to now)
            dry_run: If True, only report what would be deleted (defaults to config)

        Returns:
            Dictionary with purge statistics

        Raises:
            RetentionPurgeError: If the store cannot be read or written

        Example:
            >>> result = await store.purge_expired(dry_run=True)
            >>> print(f"Would delete {result['would_delete_count']} snapshots")
        """
        if retention_days is None:
            retention_days = self.settings.snapshot_retention_days
        if dry_run is None:
            dry_run = self.settings.purge_dry_run

        start_time = utcnow()
        reference = now or start_time
        cutoff = reference - timedelta(days=retention_days)
        logger.info(f"Starting snapshot retention purge (cutoff={cutoff.isoformat()}, dry_run={dry_run})")

        try:
            async with self.database.get_session() as session:
                result = await session.execute(
                    select(
                        CycleSnapshotRecord.id,
                        CycleSnapshotRecord.tenant_id,
                        CycleSnapshotRecord.cycle_number,
                        CycleStatusRecord.status,
                        CycleStatusRecord.attempt_count,
                    )
                    .outerjoin(
                        CycleStatusRecord,
                        and_(
                            CycleStatusRecord.tenant_id == CycleSnapshotRecord.tenant_id,
                            CycleStatusRecord.cycle_number == CycleSnapshotRecord.cycle_number,
                        ),
                    )
                    .where(CycleSnapshotRecord.collected_at < cutoff)
                )
                expired = result.all()
        except SQLAlchemyError as e:
            raise RetentionPurgeError(f"Could not list expired snapshots: {e}") from e

        eligible = []
        skipped_count = 0
        for row in expired:
            if self._is_finished(row.status, row.attempt_count):
                eligible.append(row.id)
            else:
                logger.debug(
                    f"Keeping expired snapshot {row.tenant_id}/{row.cycle_number}: "
                    f"cycle status is {row.status or 'missing'}"
                )
                skipped_count += 1

        deleted_count = 0
        would_delete_count = 0
        batch_size = self.settings.purge_batch_size

        if dry_run:
            would_delete_count = len(eligible)
            logger.info(f"[DRY RUN] Would delete {would_delete_count} snapshots")
        else:
            for i in range(0, len(eligible), batch_size):
                batch = eligible[i:i + batch_size]
                try:
                    async with self.database.get_session() as session:
                        result = await session.execute(
                            delete(CycleSnapshotRecord)
                            .where(CycleSnapshotRecord.id.in_(batch))
                            .execution_options(synchronize_session=False)
                        )
                        deleted_count += result.rowcount
                except SQLAlchemyError as e:
                    raise RetentionPurgeError(
                        f"Snapshot purge failed after deleting {deleted_count}: {e}"
                    ) from e

        end_time = utcnow()
        duration = (end_time - start_time).total_seconds()

        stats = {
            "dry_run": dry_run,
            "retention_days": retention_days,
            "cutoff": cutoff.isoformat(),
            "total_expired": len(expired),
            "deleted_count": deleted_count,
            "would_delete_count": would_delete_count,
            "skipped_count": skipped_count,
            "duration_seconds": duration,
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
        }
        logger.info(
            f"Retention purge completed: {deleted_count} deleted, {would_delete_count} would delete, "
            f"{skipped_count} kept for unfinished cycles ({duration:.2f}s)"
        )
        return stats
