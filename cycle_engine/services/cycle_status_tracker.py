"""
Cycle status state machine.

Wraps ``CycleStatusRepository`` with the rules that keep a cycle's row
consistent under retries and overlapping invocations:

- Only edges of the state machine are accepted.
- Progress flags are monotonic; a patch that clears a set flag is rejected.
- A stage can only be entered once the flags it depends on are set
  (``complete`` needs all four).
- Writes are compare-and-swap on the row version. The version a caller
  observed can be passed as ``expected_version`` so that two invocations
  that both saw an idle row cannot both claim it.

State Machine:
    idle → collecting → analyzing → synthesizing → reporting → complete
    idle|collecting|analyzing|synthesizing|reporting → failed
    failed → <resume stage>   (stage after the highest set flag)

Usage:
    tracker = CycleStatusTracker(status_repository)
    status = await tracker.get_or_create("98000001", 12, period)
    status = await tracker.transition(
        "98000001", 12, CycleState.COLLECTING, expected_version=status.version
    )
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Union

from ..config import settings
from ..database.models import utcnow
from ..errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    ProgressRegressionError,
    StatusNotFoundError,
)
from ..models import PROGRESS_FIELDS, CycleProgress, CycleState, CycleStatus
from .cycle_period import CyclePeriod
from .cycle_status_repository import CycleStatusRepository

logger = logging.getLogger("cycle_engine.services.cycle_status")

ProgressPatch = Union[Mapping[str, bool], CycleProgress, None]

ALLOWED_TRANSITIONS: Dict[CycleState, FrozenSet[CycleState]] = {
    CycleState.IDLE: frozenset({CycleState.COLLECTING, CycleState.FAILED}),
    CycleState.COLLECTING: frozenset({CycleState.ANALYZING, CycleState.FAILED}),
    CycleState.ANALYZING: frozenset({CycleState.SYNTHESIZING, CycleState.FAILED}),
    CycleState.SYNTHESIZING: frozenset({CycleState.REPORTING, CycleState.FAILED}),
    CycleState.REPORTING: frozenset({CycleState.COMPLETE, CycleState.FAILED}),
    CycleState.FAILED: frozenset({
        CycleState.COLLECTING,
        CycleState.ANALYZING,
        CycleState.SYNTHESIZING,
        CycleState.REPORTING,
    }),
    CycleState.COMPLETE: frozenset(),
}

# Flags that must be set (after the patch) to enter a stage
STAGE_REQUIREMENTS: Dict[CycleState, CycleProgress] = {
    CycleState.ANALYZING: CycleProgress.ESI_COLLECTED,
    CycleState.SYNTHESIZING: CycleProgress.ESI_COLLECTED | CycleProgress.ANALYSIS_COMPLETE,
    CycleState.REPORTING: (
        CycleProgress.ESI_COLLECTED | CycleProgress.ANALYSIS_COMPLETE | CycleProgress.SYNTHESIS_COMPLETE
    ),
    CycleState.COMPLETE: CycleProgress.ALL,
}

WORKING_STATES = frozenset({
    CycleState.COLLECTING,
    CycleState.ANALYZING,
    CycleState.SYNTHESIZING,
    CycleState.REPORTING,
})


def resume_state(progress: Union[int, CycleProgress]) -> CycleState:
    """Stage that follows the highest set progress flag."""
    flags = CycleProgress(progress)
    if not flags & CycleProgress.ESI_COLLECTED:
        return CycleState.COLLECTING
    if not flags & CycleProgress.ANALYSIS_COMPLETE:
        return CycleState.ANALYZING
    if not flags & CycleProgress.SYNTHESIS_COMPLETE:
        return CycleState.SYNTHESIZING
    if not flags & CycleProgress.REPORT_GENERATED:
        return CycleState.REPORTING
    return CycleState.COMPLETE


def merge_progress(current: Union[int, CycleProgress], patch: ProgressPatch) -> CycleProgress:
    """
    Apply a progress patch without ever clearing a flag.

    Args:
        current: Flags stored on the row
        patch: Mapping of field name → bool, or flags to set

    Raises:
        ProgressRegressionError: If the patch sets a true flag to False
        ValueError: On an unknown field name
    """
    merged = CycleProgress(current)
    if patch is None:
        return merged
    if isinstance(patch, CycleProgress):
        return merged | patch

    for name, value in patch.items():
        flag = PROGRESS_FIELDS.get(name)
        if flag is None:
            raise ValueError(f"Unknown progress field: {name}")
        if value:
            merged |= flag
        elif merged & flag:
            raise ProgressRegressionError(f"Progress flag '{name}' is already set and cannot be cleared")
    return merged


def _check_version(current: CycleStatus, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != current.version:
        raise ConcurrentUpdateError(
            f"Cycle status for {current.tenant_id} cycle {current.cycle_number} is at version "
            f"{current.version}, expected {expected_version}"
        )


class CycleStatusTracker:
    """
    State machine over persisted cycle status rows.

    Attributes:
        repository: Status persistence
        clock: Returns the current naive UTC time (injectable for tests)
    """

    def __init__(
        self,
        repository: CycleStatusRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.clock = clock

    async def get(self, tenant_id: str, cycle_number: int) -> Optional[CycleStatus]:
        return await self.repository.get(tenant_id, cycle_number)

    async def get_or_create(
        self,
        tenant_id: str,
        cycle_number: int,
        period: Optional[CyclePeriod] = None,
    ) -> CycleStatus:
        """
        Return the status row for the cycle, creating an idle one if needed.

        Args:
            tenant_id: Tenant identifier
            cycle_number: Cycle index
            period: Optional period, used to stamp start/end dates on creation
        """
        status, _created = await self.repository.create_if_absent(
            tenant_id,
            cycle_number,
            cycle_start_date=period.cycle_start_date if period else None,
            cycle_end_date=period.cycle_end_date if period else None,
        )
        return status

    async def transition(
        self,
        tenant_id: str,
        cycle_number: int,
        new_status: CycleState,
        progress_patch: ProgressPatch = None,
        *,
        expected_version: Optional[int] = None,
        error: Optional[str] = None,
        degraded: Optional[bool] = None,
    ) -> CycleStatus:
        """
        Move a cycle to ``new_status`` with a conditional write.

        Args:
            tenant_id: Tenant identifier
            cycle_number: Cycle index
            new_status: Target state
            progress_patch: Flags to set alongside the status change
            expected_version: Version the caller observed; defaults to the
                version read here
            error: Error summary (stored on ``failed``)
            degraded: Set the degraded marker (never cleared once set)

        Returns:
            Updated CycleStatus

        Raises:
            StatusNotFoundError: No row for the key
            ConcurrentUpdateError: Row changed since ``expected_version``
            InvalidTransitionError: Edge not allowed or stage prerequisites missing
            ProgressRegressionError: Patch would clear a set flag
        """
        new_status = CycleState(new_status)
        current = await self.repository.get(tenant_id, cycle_number)
        if current is None:
            raise StatusNotFoundError(f"No cycle status for {tenant_id} cycle {cycle_number}")

        _check_version(current, expected_version)
        version = current.version

        if new_status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(
                f"Cannot move {tenant_id} cycle {cycle_number} from "
                f"{current.status.value} to {new_status.value}"
            )

        merged = merge_progress(current.progress, progress_patch)

        if current.status == CycleState.FAILED:
            expected_stage = resume_state(current.progress)
            if new_status != expected_stage:
                raise InvalidTransitionError(
                    f"Failed cycle {tenant_id}/{cycle_number} must resume at "
                    f"{expected_stage.value}, not {new_status.value}"
                )

        required = STAGE_REQUIREMENTS.get(new_status)
        if required is not None and (merged & required) != required:
            raise InvalidTransitionError(
                f"Cannot enter {new_status.value} for {tenant_id} cycle {cycle_number}: "
                f"progress {merged!r} lacks {required!r}"
            )

        now = self.clock()
        values = {
            "status": new_status.value,
            "progress": int(merged),
            "updated_at": now,
            "last_transition_at": now,
        }
        if new_status == CycleState.FAILED:
            values["last_error"] = error or "unknown error"
        elif error is not None:
            values["last_error"] = error
        if degraded:
            values["degraded"] = True
        # A new attempt starts whenever work begins from idle or failed
        if new_status in WORKING_STATES and current.status in (CycleState.IDLE, CycleState.FAILED):
            values["attempt_count"] = current.attempt_count + 1

        status = await self.repository.conditional_update(tenant_id, cycle_number, version, values)
        logger.info(
            f"Cycle {tenant_id}/{cycle_number}: {current.status.value} → {new_status.value} "
            f"(v{status.version})"
        )
        return status

    async def mark_failed(
        self,
        tenant_id: str,
        cycle_number: int,
        error: str,
        expected_version: Optional[int] = None,
    ) -> Optional[CycleStatus]:
        """
        Record a failed attempt, keeping every set progress flag.

        With ``expected_version`` the write only applies to that version of
        the row and raises ConcurrentUpdateError otherwise. No-op (returns
        the row) when the cycle is already failed or complete.
        """
        current = await self.repository.get(tenant_id, cycle_number)
        if current is None:
            logger.warning(f"Cannot mark {tenant_id}/{cycle_number} failed: no status row")
            return None
        _check_version(current, expected_version)
        if current.status in (CycleState.FAILED, CycleState.COMPLETE):
            return current
        return await self.transition(
            tenant_id,
            cycle_number,
            CycleState.FAILED,
            expected_version=current.version,
            error=error,
        )

    def is_claim_stale(self, status: CycleStatus, now: Optional[datetime] = None) -> bool:
        """True when a 'collecting' claim is older than the stale threshold."""
        if status.status != CycleState.COLLECTING or status.last_transition_at is None:
            return False
        now = now or self.clock()
        return now - status.last_transition_at > timedelta(minutes=settings.stale_claim_minutes)

    def is_failed_terminal(self, status: CycleStatus) -> bool:
        """A failed cycle that used up its attempts is not retried again."""
        return (
            status.status == CycleState.FAILED
            and status.attempt_count >= settings.max_cycle_attempts
        )

    async def history(self, tenant_id: str, limit: int = 12):
        return await self.repository.history(tenant_id, limit)
