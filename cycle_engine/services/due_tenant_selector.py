"""
Selection of tenants that need collection today.

A tenant is selected when:
1. its configuration is enabled and valid,
2. today is a cycle boundary for its anchor and length, and
3. the current cycle has not collected telemetry yet and is not
   failed-terminal.

Rule 3 makes the selector idempotent: after a successful run the same
tenants drop out even though their cycle boundary is still "today".
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..errors import ConfigurationError, InvalidCycleConfigError
from ..models import CycleConfig, CycleStatus
from .cycle_config_repository import CycleConfigRepository
from .cycle_period import CyclePeriod, calculate_cycle_period
from .cycle_status_tracker import CycleStatusTracker

logger = logging.getLogger("cycle_engine.services.due_tenant_selector")


@dataclass
class DueTenant:
    config: CycleConfig
    period: CyclePeriod
    status: Optional[CycleStatus] = None

    @property
    def tenant_id(self) -> str:
        return self.config.tenant_id

    @property
    def cycle_number(self) -> int:
        return self.period.cycle_number


@dataclass
class DueSelection:
    due: List[DueTenant] = field(default_factory=list)
    rejected: List[InvalidCycleConfigError] = field(default_factory=list)
    already_collected: int = 0
    checked: int = 0


class DueTenantSelector:
    """Combines configuration, period arithmetic and status to pick due tenants."""

    def __init__(self, config_repository: CycleConfigRepository, tracker: CycleStatusTracker):
        self.config_repository = config_repository
        self.tracker = tracker

    async def select_due(self, now: Optional[Union[date, datetime]] = None) -> DueSelection:
        """
        List tenants requiring action as of ``now``.

        Raises:
            ConfigurationError: If configs or statuses cannot be read
        """
        loaded = await self.config_repository.load_enabled()
        selection = DueSelection(rejected=list(loaded.rejected), checked=len(loaded.configs))

        candidates: List[DueTenant] = []
        for config in loaded.configs:
            period = calculate_cycle_period(config.cycle_anchor_date, config.cycle_length_days, now)
            if period.due_today:
                candidates.append(DueTenant(config=config, period=period))

        if not candidates:
            logger.info(f"No tenants due on {self._as_of(now)} ({selection.checked} checked)")
            return selection

        try:
            statuses = await self.tracker.repository.get_many(
                (c.tenant_id, c.cycle_number) for c in candidates
            )
        except (SQLAlchemyError, OSError, RuntimeError) as e:
            raise ConfigurationError(f"Cycle status store unreachable: {e}") from e

        for candidate in candidates:
            status = statuses.get((candidate.tenant_id, candidate.cycle_number))
            if status is not None:
                if status.esi_collected:
                    selection.already_collected += 1
                    continue
                if self.tracker.is_failed_terminal(status):
                    logger.warning(
                        f"Skipping {candidate.tenant_id} cycle {candidate.cycle_number}: "
                        f"failed after {status.attempt_count} attempts"
                    )
                    continue
            candidate.status = status
            selection.due.append(candidate)

        logger.info(
            f"📅 {len(selection.due)} tenant(s) due on {self._as_of(now)} "
            f"({selection.already_collected} already collected, {len(selection.rejected)} rejected)"
        )
        return selection

    @staticmethod
    def _as_of(now: Optional[Union[date, datetime]]) -> str:
        return now.isoformat() if now is not None else "today"
