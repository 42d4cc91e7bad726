"""
Read-only repository for per-tenant cycle configuration.

Rows are validated into ``CycleConfig`` as they are loaded. A row that
violates its bounds is rejected (never clamped): it is left out of the
returned configs and reported in ``ConfigLoadResult.rejected`` so the
orchestrator can surface it. Store failures raise ``ConfigurationError``.

Usage:
    repo = CycleConfigRepository(database)
    loaded = await repo.load_enabled()
    for config in loaded.configs:
        ...
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database.models import CycleConfiguration
from ..errors import ConfigurationError, InvalidCycleConfigError
from ..models import CycleConfig
from .database_service import DatabaseService

logger = logging.getLogger("cycle_engine.services.cycle_config")


@dataclass
class ConfigLoadResult:
    configs: List[CycleConfig] = field(default_factory=list)
    rejected: List[InvalidCycleConfigError] = field(default_factory=list)


class CycleConfigRepository:
    """
    Read access to the ``cycle_configurations`` table.

    NULL ``cycle_length_days`` / ``categories`` fall back to settings
    defaults before validation.
    """

    def __init__(self, database: DatabaseService):
        self.database = database

    def to_config(self, row: CycleConfiguration) -> CycleConfig:
        """
        Validate one row.

        Raises:
            InvalidCycleConfigError: If any field is out of bounds
        """
        values = {
            "tenant_id": row.tenant_id,
            "enabled": row.enabled,
            "cycle_anchor_date": row.cycle_anchor_date,
            "cycle_length_days": (
                row.cycle_length_days
                if row.cycle_length_days is not None
                else settings.default_cycle_length_days
            ),
            "categories": row.categories if row.categories is not None else list(settings.default_categories),
            "max_concurrent_requests": row.max_concurrent_requests,
            "rate_limit_buffer": row.rate_limit_buffer,
            "retry_attempts": row.retry_attempts,
            "backoff_strategy": row.backoff_strategy,
            "error_threshold": row.error_threshold,
        }
        try:
            return CycleConfig.model_validate(values)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidCycleConfigError(row.tenant_id, problems) from e

    async def load_enabled(self) -> ConfigLoadResult:
        """
        Load and validate every enabled configuration.

        Returns:
            ConfigLoadResult with valid configs and rejected tenants

        Raises:
            ConfigurationError: If the store cannot be read
        """
        try:
            async with self.database.get_session() as session:
                result = await session.execute(
                    select(CycleConfiguration)
                    .where(CycleConfiguration.enabled == True)  # noqa: E712
                    .order_by(CycleConfiguration.tenant_id)
                )
                rows = list(result.scalars().all())
        except (SQLAlchemyError, OSError, RuntimeError) as e:
            raise ConfigurationError(f"Cycle configuration store unreachable: {e}") from e

        loaded = ConfigLoadResult()
        for row in rows:
            try:
                loaded.configs.append(self.to_config(row))
            except InvalidCycleConfigError as e:
                logger.error(str(e))
                loaded.rejected.append(e)

        logger.debug(f"Loaded {len(loaded.configs)} enabled configs ({len(loaded.rejected)} rejected)")
        return loaded

    async def get(self, tenant_id: str) -> Optional[CycleConfig]:
        """
        Get one tenant's configuration regardless of its enabled flag.

        Returns:
            CycleConfig or None if the tenant has no row

        Raises:
            ConfigurationError: If the store cannot be read
            InvalidCycleConfigError: If the row is out of bounds
        """
        try:
            async with self.database.get_session() as session:
                result = await session.execute(
                    select(CycleConfiguration).where(CycleConfiguration.tenant_id == tenant_id)
                )
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError, RuntimeError) as e:
            raise ConfigurationError(f"Cycle configuration store unreachable: {e}") from e

        return self.to_config(row) if row else None
