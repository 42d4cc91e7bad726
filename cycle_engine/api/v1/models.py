"""
Request and response schemas for API v1.

Wire payloads use camelCase keys; Python attributes stay snake_case.
"""

from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...models import CycleStatus


class _V1Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunCycleCheckRequest(_V1Model):
    as_of: Optional[date] = Field(default=None, description="Evaluate this UTC date instead of today")


class PurgeRequest(_V1Model):
    dry_run: Optional[bool] = Field(default=None, description="Report without deleting (defaults to config)")
    retention_days: Optional[int] = Field(default=None, ge=1, description="Override the retention window")


class CycleStatusResponse(_V1Model):
    tenant_id: str
    cycle_number: int
    status: str
    progress: Dict[str, bool]
    version: int
    attempt_count: int
    degraded: bool
    failed_terminal: bool = False
    last_error: Optional[str] = None
    cycle_start_date: Optional[date] = None
    cycle_end_date: Optional[date] = None
    updated_at: Optional[datetime] = None
    last_transition_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: CycleStatus, failed_terminal: bool = False) -> "CycleStatusResponse":
        return cls(
            tenant_id=status.tenant_id,
            cycle_number=status.cycle_number,
            status=status.status.value,
            progress=status.progress_dict(),
            version=status.version,
            attempt_count=status.attempt_count,
            degraded=status.degraded,
            failed_terminal=failed_terminal,
            last_error=status.last_error,
            cycle_start_date=status.cycle_start_date,
            cycle_end_date=status.cycle_end_date,
            updated_at=status.updated_at,
            last_transition_at=status.last_transition_at,
        )


class HealthStatus(_V1Model):
    status: str
    timestamp: datetime
    version: str
    database: Dict[str, Any]


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    timestamp: datetime
