# ============================================================================
# Cycle Engine - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for the cycle engine,
including:
- API settings
- Database connection and pooling
- Telemetry (ESI) client, quota and retry settings
- Cycle defaults and orchestration limits
- Snapshot retention policy
- Celery broker and beat schedules

Environment Variables:
    Every field can be overridden by its upper-case name, e.g.
    DATABASE_URL, ESI_BASE_URL, SNAPSHOT_RETENTION_DAYS.

Usage:
    from cycle_engine.config import settings
    window = settings.snapshot_retention_days
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # API SETTINGS
    # =========================================================================
    api_title: str = "Cycle Engine API"
    api_version: str = "1.0.0"
    debug: bool = Field(default=False, description="Enable verbose logging & SQL echo")

    # =========================================================================
    # DATABASE
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/cycle_engine.db",
        description="SQLAlchemy async URL (aiosqlite for dev, asyncpg for prod)",
    )
    db_pool_size: int = Field(default=10, description="PostgreSQL pool size")
    db_max_overflow: int = Field(default=20, description="PostgreSQL pool overflow")
    db_pool_recycle: int = Field(default=3600, description="Seconds before a pooled connection is recycled")

    # =========================================================================
    # TELEMETRY API (ESI)
    # =========================================================================
    esi_base_url: str = Field(default="https://esi.evetech.net/latest", description="Telemetry API base URL")
    esi_user_agent: str = Field(default="cycle-engine/1.0 (corporation telemetry)", description="User-Agent header")
    telemetry_timeout: float = Field(default=30.0, description="Timeout (s) per telemetry request")
    telemetry_quota_requests: int = Field(
        default=150, ge=1, description="Advertised upstream quota (requests per window)"
    )
    telemetry_quota_window_seconds: float = Field(
        default=1.0, gt=0, description="Length of the upstream quota window"
    )
    telemetry_error_limit_floor: int = Field(
        default=10, ge=0, description="Pause when X-ESI-Error-Limit-Remain drops to this value"
    )
    default_categories: List[str] = Field(
        default=["corporation_info", "alliance_history", "members", "member_tracking", "wallets"],
        description="Telemetry categories collected when a tenant lists none",
    )

    # =========================================================================
    # RETRY / BACKOFF
    # =========================================================================
    retry_base_delay: float = Field(default=1.0, ge=0, description="Base backoff delay in seconds")
    retry_max_delay: float = Field(default=30.0, ge=0, description="Backoff delay cap in seconds")

    # =========================================================================
    # CYCLE DEFAULTS
    # =========================================================================
    default_cycle_length_days: int = Field(default=7, ge=1, description="Cycle length when a tenant sets none")
    max_cycle_attempts: int = Field(
        default=3, ge=1, description="Collection attempts before a failed cycle is terminal"
    )
    stale_claim_minutes: int = Field(
        default=60, ge=1, description="Age after which a 'collecting' claim is considered abandoned"
    )

    # =========================================================================
    # ORCHESTRATION
    # =========================================================================
    tenant_concurrency: int = Field(default=4, ge=1, description="Tenants processed in parallel")
    tenant_deadline_seconds: float = Field(
        default=240.0, gt=0, description="Per-tenant collection deadline"
    )

    # =========================================================================
    # RETENTION
    # =========================================================================
    snapshot_retention_days: int = Field(default=365, ge=1, description="Snapshot retention window (52 weekly cycles)")
    purge_after_batch: bool = Field(default=True, description="Run retention purge after each batch")
    purge_batch_size: int = Field(default=500, ge=1, description="Snapshots deleted per statement")
    purge_dry_run: bool = Field(default=False, description="Report purges without deleting")

    # =========================================================================
    # CELERY
    # =========================================================================
    celery_broker_url: str = Field(default="redis://redis:6379/0", description="Celery broker")
    celery_result_backend: str = Field(default="redis://redis:6379/1", description="Celery result backend")
    cycle_check_cron: str = Field(default="0 0 * * *", description="Daily tick (minute hour dom month dow)")
    retention_purge_cron: str = Field(default="0 2 * * *", description="Retention sweep schedule")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance (imported elsewhere)
settings = Settings()
