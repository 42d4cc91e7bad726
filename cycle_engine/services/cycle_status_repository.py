"""
Persistence for per-(tenant, cycle) status rows.

Every mutation is a conditional UPDATE keyed on the row's ``version``
column; there is no blind read-modify-write path. Creation is an
insert-if-absent resolved by the (tenant_id, cycle_number) unique key, so
two invocations racing on the same cycle end up sharing one row.

Each call runs in its own short session and commits before returning, so
other processes observe the new version immediately.
"""

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..database.models import CycleStatusRecord, utcnow
from ..errors import ConcurrentUpdateError, StatusNotFoundError
from ..models import CycleState, CycleStatus
from .database_service import DatabaseService

logger = logging.getLogger("cycle_engine.services.cycle_status_repository")


class CycleStatusRepository:
    """Get / create / conditional-update access to ``cycle_statuses``."""

    def __init__(self, database: DatabaseService):
        self.database = database

    async def get(self, tenant_id: str, cycle_number: int) -> Optional[CycleStatus]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CycleStatusRecord).where(
                    and_(
                        CycleStatusRecord.tenant_id == tenant_id,
                        CycleStatusRecord.cycle_number == cycle_number,
                    )
                )
            )
            record = result.scalar_one_or_none()
            return CycleStatus.model_validate(record) if record else None

    async def get_many(
        self,
        keys: Iterable[Tuple[str, int]],
    ) -> Dict[Tuple[str, int], CycleStatus]:
        """
        Fetch several rows in one query.

        Args:
            keys: (tenant_id, cycle_number) pairs

        Returns:
            Mapping from key to status for the rows that exist
        """
        keys = list(keys)
        if not keys:
            return {}

        conditions = [
            and_(
                CycleStatusRecord.tenant_id == tenant_id,
                CycleStatusRecord.cycle_number == cycle_number,
            )
            for tenant_id, cycle_number in keys
        ]
        async with self.database.get_session() as session:
            result = await session.execute(select(CycleStatusRecord).where(or_(*conditions)))
            return {
                (r.tenant_id, r.cycle_number): CycleStatus.model_validate(r)
                for r in result.scalars().all()
            }

    async def create_if_absent(
        self,
        tenant_id: str,
        cycle_number: int,
        cycle_start_date: Optional[date] = None,
        cycle_end_date: Optional[date] = None,
    ) -> Tuple[CycleStatus, bool]:
        """
        Insert an idle row unless one exists.

        Returns:
            Tuple of (status, created)
        """
        existing = await self.get(tenant_id, cycle_number)
        if existing:
            return existing, False

        now = utcnow()
        try:
            async with self.database.get_session() as session:
                session.add(
                    CycleStatusRecord(
                        tenant_id=tenant_id,
                        cycle_number=cycle_number,
                        status=CycleState.IDLE.value,
                        progress=0,
                        version=1,
                        attempt_count=0,
                        degraded=False,
                        cycle_start_date=cycle_start_date,
                        cycle_end_date=cycle_end_date,
                        created_at=now,
                        updated_at=now,
                        last_transition_at=now,
                    )
                )
        except IntegrityError:
            # Another invocation created it between our read and insert
            logger.debug(f"Status row for {tenant_id}/{cycle_number} created concurrently")
            status = await self.get(tenant_id, cycle_number)
            if status is None:
                raise
            return status, False

        status = await self.get(tenant_id, cycle_number)
        if status is None:
            raise StatusNotFoundError(f"Status row for {tenant_id}/{cycle_number} vanished after insert")
        logger.info(f"Created cycle status for {tenant_id} cycle {cycle_number}")
        return status, True

    async def conditional_update(
        self,
        tenant_id: str,
        cycle_number: int,
        expected_version: int,
        values: Dict[str, Any],
    ) -> CycleStatus:
        """
        Apply ``values`` only if the row is still at ``expected_version``.

        The version is incremented in the same statement.

        Raises:
            ConcurrentUpdateError: If the row moved on since it was read
            StatusNotFoundError: If the row does not exist
        """
        async with self.database.get_session() as session:
            result = await session.execute(
                update(CycleStatusRecord)
                .where(
                    and_(
                        CycleStatusRecord.tenant_id == tenant_id,
                        CycleStatusRecord.cycle_number == cycle_number,
                        CycleStatusRecord.version == expected_version,
                    )
                )
                .values(**values, version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount

        if updated == 0:
            current = await self.get(tenant_id, cycle_number)
            if current is None:
                raise StatusNotFoundError(f"No cycle status for {tenant_id} cycle {cycle_number}")
            raise ConcurrentUpdateError(
                f"Cycle status for {tenant_id} cycle {cycle_number} is at version "
                f"{current.version}, expected {expected_version}"
            )

        status = await self.get(tenant_id, cycle_number)
        if status is None:
            raise StatusNotFoundError(f"No cycle status for {tenant_id} cycle {cycle_number}")
        return status

    async def history(self, tenant_id: str, limit: int = 12) -> List[CycleStatus]:
        """Most recent cycles first."""
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CycleStatusRecord)
                .where(CycleStatusRecord.tenant_id == tenant_id)
                .order_by(CycleStatusRecord.cycle_number.desc())
                .limit(limit)
            )
            return [CycleStatus.model_validate(r) for r in result.scalars().all()]
