# ============================================================================
# Cycle Engine - Domain Models
# ============================================================================
"""
Pydantic domain models shared by services, tasks and the API.

- CycleState / CycleProgress: the tagged state-machine value
- CycleConfig: validated per-tenant configuration
- CycleStatus: read model of a cycle_statuses row
- Snapshot / SnapshotError: collected telemetry bundle
- TenantResult / BatchSummary: orchestrator output (camelCase on the wire)
"""

from datetime import date, datetime
from enum import Enum, IntFlag
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CycleState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    ANALYZING = "analyzing"
    SYNTHESIZING = "synthesizing"
    REPORTING = "reporting"
    COMPLETE = "complete"
    FAILED = "failed"


class CycleProgress(IntFlag):
    """Monotonic progress bitset stored in ``cycle_statuses.progress``."""

    NONE = 0
    ESI_COLLECTED = 1
    ANALYSIS_COMPLETE = 2
    SYNTHESIS_COMPLETE = 4
    REPORT_GENERATED = 8
    ALL = ESI_COLLECTED | ANALYSIS_COMPLETE | SYNTHESIS_COMPLETE | REPORT_GENERATED


# Patch keys accepted by the tracker, in pipeline order
PROGRESS_FIELDS: Dict[str, CycleProgress] = {
    "esi_collected": CycleProgress.ESI_COLLECTED,
    "analysis_complete": CycleProgress.ANALYSIS_COMPLETE,
    "synthesis_complete": CycleProgress.SYNTHESIS_COMPLETE,
    "report_generated": CycleProgress.REPORT_GENERATED,
}


def progress_to_dict(progress: int) -> Dict[str, bool]:
    flags = CycleProgress(progress)
    return {name: bool(flags & flag) for name, flag in PROGRESS_FIELDS.items()}


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class CycleConfig(BaseModel):
    """
    Validated tenant configuration.

    Out-of-range values raise ``pydantic.ValidationError``; the repository
    turns that into a rejection of the tenant.
    """

    tenant_id: str = Field(min_length=1)
    enabled: bool = True
    cycle_anchor_date: date
    cycle_length_days: int = Field(default=7, ge=1, le=366)
    categories: List[str] = Field(default_factory=list)
    max_concurrent_requests: int = Field(default=5, ge=1, le=20)
    rate_limit_buffer: int = Field(default=80, ge=1, le=100)
    retry_attempts: int = Field(default=3, ge=0, le=10)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    error_threshold: int = Field(default=5, ge=0, le=20)

    class Config:
        from_attributes = True


class CycleStatus(BaseModel):
    """Read model of a cycle status row."""

    tenant_id: str
    cycle_number: int
    status: CycleState
    progress: int = 0
    version: int = 1
    attempt_count: int = 0
    degraded: bool = False
    last_error: Optional[str] = None
    cycle_start_date: Optional[date] = None
    cycle_end_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_transition_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def flags(self) -> CycleProgress:
        return CycleProgress(self.progress)

    @property
    def esi_collected(self) -> bool:
        return bool(self.flags & CycleProgress.ESI_COLLECTED)

    def progress_dict(self) -> Dict[str, bool]:
        return progress_to_dict(self.progress)


class SnapshotError(BaseModel):
    category: str
    message: str


class Snapshot(BaseModel):
    """Telemetry collected for one tenant cycle; may be partial."""

    tenant_id: str
    cycle_number: int
    collected_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    errors: List[SnapshotError] = Field(default_factory=list)
    categories_requested: List[str] = Field(default_factory=list)
    incomplete: bool = False

    class Config:
        from_attributes = True

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def categories_collected(self) -> int:
        return len(self.data)

    def is_degraded(self, error_threshold: int) -> bool:
        return self.error_count > error_threshold


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TenantResult(_WireModel):
    """Outcome of one tenant's unit of work."""

    tenant_id: str
    success: bool
    cycle: Optional[int] = None
    categories_collected: Optional[int] = None
    error_count: Optional[int] = None
    degraded: bool = False
    incomplete: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None


class SnapshotComparison(_WireModel):
    """Cycle-over-cycle change between two snapshots of one tenant."""

    tenant_id: str
    current_cycle: int
    previous_cycle: Optional[int] = None
    member_growth: int = 0
    member_growth_percent: float = 0.0
    activity_change: int = 0


class BatchSummary(_WireModel):
    """Aggregate returned by one orchestrator invocation."""

    tenants_processed: int
    results: List[TenantResult] = Field(default_factory=list)
    timestamp: datetime
    failed_count: int = 0
    degraded_count: int = 0
    skipped_count: int = 0
    retention: Optional[Mapping[str, Any]] = None

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
