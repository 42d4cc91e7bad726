"""
Exception hierarchy for the cycle engine.

Errors are grouped by the boundary that absorbs them:

    ConfigurationError      -> propagates to the caller (run fails)
    InvalidCycleConfigError -> tenant rejected, reported in the batch
    CategoryFetchError      -> absorbed into snapshot.errors
    TenantPipelineError     -> caught at the tenant boundary
    RetentionPurgeError     -> logged, never blocks collection
"""

from typing import Optional


class CycleEngineError(Exception):
    """Base class for all cycle engine errors."""


class ConfigurationError(CycleEngineError):
    """Config source or durable store is unreachable."""


class InvalidCycleConfigError(CycleEngineError):
    """A tenant configuration row violates its documented bounds."""

    def __init__(self, tenant_id: str, message: str):
        super().__init__(f"Invalid cycle configuration for tenant {tenant_id}: {message}")
        self.tenant_id = tenant_id


class CategoryFetchError(CycleEngineError):
    """A single telemetry category could not be fetched."""

    def __init__(
        self,
        category: str,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.category = category
        self.message = message
        self.status_code = status_code
        self.transient = transient
        self.retry_after = retry_after


class TenantPipelineError(CycleEngineError):
    """Failure inside one tenant's unit of work."""


class StatusNotFoundError(TenantPipelineError):
    """No status row exists for the (tenant, cycle) key."""


class InvalidTransitionError(TenantPipelineError):
    """The requested status change is not an edge of the state machine."""


class ProgressRegressionError(TenantPipelineError):
    """A progress patch tried to reset a flag that is already set."""


class ConcurrentUpdateError(TenantPipelineError):
    """The status row changed since it was read (version mismatch)."""


class RetentionPurgeError(CycleEngineError):
    """The retention sweep failed."""
