"""
Celery application setup for the cycle engine.

Broker, result backend and beat schedules come from ``settings`` so workers,
beat and the API share one configuration. Tasks live in cycle_engine.tasks.

Queue Architecture:
- maintenance: the daily cycle check and the retention purge
"""
import logging

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from .config import settings

logger = logging.getLogger("cycle_engine.celery")

app = Celery(
    "cycle_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["cycle_engine.tasks"],
)

app.conf.task_queues = (
    Queue("maintenance", routing_key="maintenance"),
)

app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=1800,
    task_time_limit=2100,
    result_expires=259200,  # 3 days
    task_default_queue="maintenance",
    task_routes={
        "cycle_engine.tasks.run_daily_cycle_check": {"queue": "maintenance"},
        "cycle_engine.tasks.purge_expired_snapshots_task": {"queue": "maintenance"},
    },
)


def parse_cron(expression: str, default: crontab) -> crontab:
    """
    Parse a five-field cron string ("minute hour day month day_of_week").

    Falls back to ``default`` when the string is malformed.
    """
    parts = (expression or "").split()
    if len(parts) != 5:
        logger.warning(f"Invalid cron expression '{expression}', using default")
        return default
    try:
        return crontab(
            minute=parts[0],
            hour=parts[1],
            day_of_month=parts[2],
            month_of_year=parts[3],
            day_of_week=parts[4],
        )
    except ValueError as e:
        logger.warning(f"Invalid cron expression '{expression}': {e}, using default")
        return default


# ============================================================================
# Celery Beat Schedule
# ============================================================================
app.conf.beat_schedule = {
    # One tick per UTC day; tenants whose cycle boundary is today are collected
    "daily-cycle-check": {
        "task": "cycle_engine.tasks.run_daily_cycle_check",
        "schedule": parse_cron(settings.cycle_check_cron, crontab(hour=0, minute=0)),
        "options": {"queue": "maintenance"},
    },
    "purge-expired-snapshots": {
        "task": "cycle_engine.tasks.purge_expired_snapshots_task",
        "schedule": parse_cron(settings.retention_purge_cron, crontab(hour=2, minute=0)),
        "options": {"queue": "maintenance"},
    },
}

app.conf.timezone = "UTC"
