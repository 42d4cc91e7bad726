# cycle_engine/database/models.py
"""
SQLAlchemy ORM models for cycle engine persistence.

Models:
    - CycleConfiguration: Per-tenant cycle settings (admin-managed, read-only here)
    - CycleStatusRecord: Per-(tenant, cycle) state machine row with CAS version
    - CycleSnapshotRecord: Collected telemetry bundle, one per (tenant, cycle)

All timestamps are naive UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from .base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp used for all stored datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class CycleConfiguration(Base):
    """
    Per-tenant cycle configuration.

    Owned by the admin surface; the engine only reads it. Bounds are not
    enforced by the table, they are validated when rows are loaded so that
    a bad row rejects its tenant instead of being clamped.

    Attributes:
        tenant_id: Corporation identifier (unique)
        enabled: Whether the tenant takes part in scheduling
        cycle_anchor_date: UTC date of cycle 0
        cycle_length_days: Fixed cycle length (NULL = settings default)
        categories: JSON list of telemetry categories (NULL = settings default)
        max_concurrent_requests: In-flight category fetches per tenant
        rate_limit_buffer: Percent of the upstream quota the tenant may use
        retry_attempts: Retries per category on transient failures
        backoff_strategy: "linear" or "exponential"
        error_threshold: Category failures tolerated before a snapshot is degraded
    """

    __tablename__ = "cycle_configurations"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    enabled = Column(Boolean, nullable=False, default=True, index=True)

    cycle_anchor_date = Column(Date, nullable=False)
    cycle_length_days = Column(Integer, nullable=True)
    categories = Column(JSON, nullable=True)

    max_concurrent_requests = Column(Integer, nullable=False, default=5)
    rate_limit_buffer = Column(Integer, nullable=False, default=80)
    retry_attempts = Column(Integer, nullable=False, default=3)
    backoff_strategy = Column(String(20), nullable=False, default="exponential")
    error_threshold = Column(Integer, nullable=False, default=5)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<CycleConfiguration(tenant_id={self.tenant_id}, enabled={self.enabled})>"


class CycleStatusRecord(Base):
    """
    State machine row for one occurrence of a tenant's cycle.

    Never deleted (audit trail). Every write goes through a conditional
    UPDATE keyed on ``version``.

    Status Transitions:
        idle → collecting → analyzing → synthesizing → reporting → complete
        any non-terminal → failed
        failed → collecting | analyzing | synthesizing | reporting
    """

    __tablename__ = "cycle_statuses"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default="idle", index=True)
    progress = Column(Integer, nullable=False, default=0)  # CycleProgress bitset
    version = Column(Integer, nullable=False, default=1)

    cycle_start_date = Column(Date, nullable=True)
    cycle_end_date = Column(Date, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    degraded = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    last_transition_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "cycle_number", name="uq_cycle_statuses_tenant_cycle"),
        Index("ix_cycle_statuses_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<CycleStatusRecord(tenant_id={self.tenant_id}, cycle={self.cycle_number}, "
            f"status={self.status}, version={self.version})>"
        )


class CycleSnapshotRecord(Base):
    """
    Telemetry bundle collected for one tenant cycle.

    Inserted at most once per (tenant_id, cycle_number); removed only by the
    retention sweep.
    """

    __tablename__ = "cycle_snapshots"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)

    collected_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    data = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)  # [{category, message}]
    categories_requested = Column(JSON, nullable=False, default=list)
    incomplete = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "cycle_number", name="uq_cycle_snapshots_tenant_cycle"),
    )

    def __repr__(self) -> str:
        return f"<CycleSnapshotRecord(tenant_id={self.tenant_id}, cycle={self.cycle_number})>"
