"""
Snapshot Collector for gathering one tenant's telemetry for a cycle.

For each configured category the collector issues one GET against the
telemetry API, bounded by:

1. A per-tenant semaphore of ``max_concurrent_requests`` in-flight fetches.
   The semaphore is only held around the request itself, so retries that
   are backing off do not occupy a slot.
2. A per-tenant ``QuotaThrottle`` admitting ``rate_limit_buffer`` percent
   of the upstream quota.
3. Retry with linear or exponential backoff for transient failures.
4. An optional deadline. Categories still running when it expires are
   cancelled and recorded as errors; the snapshot is marked incomplete.

A failing category never aborts the others. The snapshot is returned with
whatever was collected and an error entry per missing category.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Union

from ..config import settings
from ..database.models import utcnow
from ..errors import CategoryFetchError
from ..models import BackoffStrategy, CycleConfig, Snapshot, SnapshotError
from .quota_throttle import QuotaThrottle
from .telemetry_categories import CATEGORY_REGISTRY, TelemetryCategory
from .telemetry_client import TelemetryClient

logger = logging.getLogger("cycle_engine.services.snapshot_collector")


def compute_backoff_delay(
    strategy: Union[BackoffStrategy, str],
    attempt: int,
    base_delay: float,
    max_delay: float,
    retry_after: Optional[float] = None,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    linear:       base × attempt
    exponential:  base × 2^attempt

    A server-provided ``retry_after`` wins when larger. The result never
    exceeds ``max_delay``.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if BackoffStrategy(strategy) == BackoffStrategy.LINEAR:
        delay = base_delay * attempt
    else:
        delay = base_delay * (2 ** attempt)
    if retry_after is not None and retry_after > delay:
        delay = retry_after
    return min(delay, max_delay)


class SnapshotCollector:
    """
    Collects telemetry categories for a tenant into a ``Snapshot``.

    Attributes:
        client: Opened TelemetryClient shared across tenants
        categories: Registry of known categories
    """

    def __init__(
        self,
        client: TelemetryClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        categories: Mapping[str, TelemetryCategory] = CATEGORY_REGISTRY,
    ):
        self.client = client
        self.categories = categories
        self._sleep = sleep

    async def collect(
        self,
        config: CycleConfig,
        cycle_number: int,
        credentials: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Snapshot:
        """
        Collect every configured category for one tenant cycle.

        Args:
            config: Validated tenant configuration
            cycle_number: Cycle being collected
            credentials: Bearer token for authenticated categories
            deadline: Seconds allowed for the whole collection, None for no limit

        Returns:
            Snapshot with collected data, per-category errors and the
            incomplete flag
        """
        names = list(dict.fromkeys(config.categories or settings.default_categories))
        collected_at = utcnow()
        semaphore = asyncio.Semaphore(config.max_concurrent_requests)
        throttle = QuotaThrottle(config.rate_limit_buffer)

        tasks: Dict[str, asyncio.Task] = {
            name: asyncio.create_task(
                self._collect_category(name, config, credentials, semaphore, throttle, collected_at),
                name=f"collect:{config.tenant_id}:{name}",
            )
            for name in names
        }

        incomplete = False
        if tasks:
            _done, pending = await asyncio.wait(tasks.values(), timeout=deadline)
            if pending:
                incomplete = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    f"Deadline of {deadline}s reached for {config.tenant_id}: "
                    f"cancelled {len(pending)} category fetch(es)"
                )

        data: Dict[str, object] = {}
        errors: List[SnapshotError] = []
        for name, task in tasks.items():
            if task.cancelled():
                errors.append(SnapshotError(category=name, message=f"Deadline of {deadline}s exceeded"))
                continue
            exc = task.exception()
            if exc is None:
                data[name] = task.result()
            elif isinstance(exc, CategoryFetchError):
                errors.append(SnapshotError(category=name, message=exc.message))
            else:
                logger.error(f"Unexpected error collecting {name} for {config.tenant_id}: {exc}")
                errors.append(SnapshotError(category=name, message=f"{type(exc).__name__}: {exc}"))

        snapshot = Snapshot(
            tenant_id=config.tenant_id,
            cycle_number=cycle_number,
            collected_at=collected_at,
            data=data,
            errors=errors,
            categories_requested=names,
            incomplete=incomplete,
        )
        logger.info(
            f"Collected {snapshot.categories_collected}/{len(names)} categories for "
            f"{config.tenant_id} cycle {cycle_number} ({snapshot.error_count} error(s))"
        )
        return snapshot

    async def _collect_category(
        self,
        name: str,
        config: CycleConfig,
        credentials: Optional[str],
        semaphore: asyncio.Semaphore,
        throttle: QuotaThrottle,
        collected_at,
    ):
        category = self.categories.get(name)
        if category is None:
            raise CategoryFetchError(name, f"Unknown category: {name}")
        if category.requires_auth and not credentials:
            raise CategoryFetchError(name, f"No access token provided for {name}")

        path = category.build_path(config.tenant_id)
        token = credentials if category.requires_auth else None
        attempt = 0
        while True:
            try:
                async with semaphore:
                    await throttle.acquire()
                    response = await self.client.fetch(
                        name, path, access_token=token, observer=throttle.observe
                    )
                return category.apply(response.data, collected_at)
            except CategoryFetchError as e:
                if not e.transient or attempt >= config.retry_attempts:
                    if attempt:
                        logger.warning(f"Giving up on {name} for {config.tenant_id} after {attempt} retries: {e.message}")
                    raise
                attempt += 1
                delay = compute_backoff_delay(
                    config.backoff_strategy,
                    attempt,
                    settings.retry_base_delay,
                    settings.retry_max_delay,
                    e.retry_after,
                )
                logger.debug(
                    f"Retrying {name} for {config.tenant_id} in {delay:.2f}s "
                    f"(attempt {attempt}/{config.retry_attempts}): {e.message}"
                )
                await self._sleep(delay)
