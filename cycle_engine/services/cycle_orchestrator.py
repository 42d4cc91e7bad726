# ============================================================================
# Cycle Engine - Cycle Orchestrator
# ============================================================================
"""
Daily cycle check: collect telemetry for every tenant due today.

One invocation:
1. Selects due tenants (configuration errors abort the run).
2. Runs one isolated unit of work per tenant through a worker pool of
   ``tenant_concurrency`` slots.
3. Summarises the per-tenant outcomes.
4. Optionally runs the snapshot retention purge.

Unit of work for one tenant:
    get_or_create status
      → skip if telemetry already collected
      → skip if another invocation holds a fresh 'collecting' claim
        (a stale claim is failed against the version seen, then re-claimed;
        losing either write is a skip)
      → claim: transition(collecting, expected_version)
        (losing the race is a skip)
      → collect snapshot (bounded by the tenant deadline)
      → persist snapshot (insert-if-absent)
      → transition(analyzing, esi_collected=True, degraded)

Any exception inside a unit of work is captured for that tenant only: the
cycle is marked failed (best effort, and only while the row is still at
the version this unit of work last wrote) and a failed result is recorded. The
run is safe to repeat; a second invocation on the same day skips tenants
whose telemetry is already collected.
"""

import asyncio
import logging
from datetime import date, datetime, time, timezone
from typing import Awaitable, Callable, List, Optional, Union

from ..config import settings
from ..errors import ConcurrentUpdateError, RetentionPurgeError
from ..models import BatchSummary, CycleState, TenantResult
from .cycle_status_tracker import CycleStatusTracker
from .due_tenant_selector import DueTenant, DueTenantSelector
from .snapshot_collector import SnapshotCollector
from .snapshot_store import SnapshotStore

logger = logging.getLogger("cycle_engine.services.cycle_orchestrator")

# Returns a bearer token for the tenant's authenticated categories, or None
CredentialsProvider = Callable[[str], Awaitable[Optional[str]]]


def _reference_time(now: Optional[Union[date, datetime]]) -> Optional[datetime]:
    """Naive UTC datetime for ``now``; a bare date means its midnight."""
    if now is None:
        return None
    if isinstance(now, datetime):
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        return now
    return datetime.combine(now, time.min)


class CycleOrchestrator:
    """
    Runs the per-tenant collection pipeline for all due tenants.

    Attributes:
        selector: Picks due tenants
        tracker: Cycle status state machine
        collector: Telemetry collector
        store: Snapshot persistence and retention
        credentials_provider: Optional token lookup for authenticated categories
    """

    def __init__(
        self,
        selector: DueTenantSelector,
        tracker: CycleStatusTracker,
        collector: SnapshotCollector,
        store: SnapshotStore,
        credentials_provider: Optional[CredentialsProvider] = None,
        tenant_concurrency: Optional[int] = None,
        tenant_deadline: Optional[float] = None,
        purge_after_batch: Optional[bool] = None,
    ):
        self.selector = selector
        self.tracker = tracker
        self.collector = collector
        self.store = store
        self.credentials_provider = credentials_provider
        self.tenant_concurrency = tenant_concurrency or settings.tenant_concurrency
        self.tenant_deadline = tenant_deadline or settings.tenant_deadline_seconds
        self.purge_after_batch = (
            purge_after_batch if purge_after_batch is not None else settings.purge_after_batch
        )

    async def run(self, now: Optional[Union[date, datetime]] = None) -> BatchSummary:
        """
        Run one daily cycle check.

        Args:
            now: Reference instant (default: current UTC time)

        Returns:
            BatchSummary with one result per processed or rejected tenant

        Raises:
            ConfigurationError: If configuration or status storage is unreachable
        """
        logger.info("🔄 Starting daily cycle check")
        selection = await self.selector.select_due(now)

        results: List[TenantResult] = [
            TenantResult(tenant_id=rejected.tenant_id, success=False, error=str(rejected))
            for rejected in selection.rejected
        ]

        if selection.due:
            slots = asyncio.Semaphore(self.tenant_concurrency)

            async def worker(due: DueTenant) -> TenantResult:
                async with slots:
                    return await self.run_tenant(due)

            outcomes = await asyncio.gather(
                *(worker(due) for due in selection.due), return_exceptions=True
            )
            for due, outcome in zip(selection.due, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Worker for {due.tenant_id} crashed: {outcome!r}")
                    results.append(
                        TenantResult(
                            tenant_id=due.tenant_id,
                            success=False,
                            cycle=due.cycle_number,
                            error=f"{type(outcome).__name__}: {outcome}",
                        )
                    )
                else:
                    results.append(outcome)

        retention = None
        if self.purge_after_batch:
            retention = await self._purge(now)

        summary = BatchSummary(
            tenants_processed=len(results),
            results=results,
            timestamp=datetime.now(timezone.utc),
            failed_count=sum(1 for r in results if not r.success and not r.skipped),
            degraded_count=sum(1 for r in results if r.degraded),
            skipped_count=sum(1 for r in results if r.skipped),
            retention=retention,
        )
        logger.info(
            f"✅ Daily cycle check complete: {summary.tenants_processed} tenant(s), "
            f"{summary.failed_count} failed, {summary.degraded_count} degraded, "
            f"{summary.skipped_count} skipped"
        )
        return summary

    async def run_tenant(self, due: DueTenant) -> TenantResult:
        """
        Run the unit of work for one due tenant.

        Never raises for tenant-level failures; they are returned as a
        failed TenantResult. Every write goes against the row version this
        unit of work last saw, so a concurrent invocation that moved the row
        on is never overwritten.
        """
        tenant_id, cycle = due.tenant_id, due.cycle_number
        held_version: Optional[int] = None
        try:
            status = await self.tracker.get_or_create(tenant_id, cycle, due.period)
            held_version = status.version

            if status.esi_collected:
                return self._skipped(tenant_id, cycle, "already_collected")

            if status.status == CycleState.COLLECTING:
                if not self.tracker.is_claim_stale(status):
                    return self._skipped(tenant_id, cycle, "claimed_by_another_run")
                logger.warning(
                    f"Collecting claim on {tenant_id} cycle {cycle} is stale "
                    f"(since {status.last_transition_at}), reclaiming"
                )
                try:
                    status = await self.tracker.mark_failed(
                        tenant_id, cycle, "Abandoned collecting claim", expected_version=status.version
                    )
                except ConcurrentUpdateError:
                    return self._skipped(tenant_id, cycle, "claim_lost")
                held_version = status.version

            if self.tracker.is_failed_terminal(status):
                return self._skipped(tenant_id, cycle, "attempts_exhausted")

            try:
                status = await self.tracker.transition(
                    tenant_id, cycle, CycleState.COLLECTING, expected_version=status.version
                )
            except ConcurrentUpdateError:
                return self._skipped(tenant_id, cycle, "claim_lost")
            held_version = status.version

            credentials = None
            if self.credentials_provider is not None:
                credentials = await self.credentials_provider(tenant_id)

            snapshot = await self.collector.collect(
                due.config, cycle, credentials=credentials, deadline=self.tenant_deadline
            )
            if not await self.store.persist(snapshot):
                logger.info(f"Reusing snapshot stored by an earlier attempt for {tenant_id} cycle {cycle}")

            degraded = snapshot.is_degraded(due.config.error_threshold)
            if degraded:
                logger.warning(
                    f"{tenant_id} cycle {cycle} is degraded: {snapshot.error_count} errors "
                    f"exceed threshold {due.config.error_threshold}"
                )

            await self.tracker.transition(
                tenant_id,
                cycle,
                CycleState.ANALYZING,
                {"esi_collected": True},
                expected_version=status.version,
                degraded=degraded,
            )

            return TenantResult(
                tenant_id=tenant_id,
                success=True,
                cycle=cycle,
                categories_collected=snapshot.categories_collected,
                error_count=snapshot.error_count,
                degraded=degraded,
                incomplete=snapshot.incomplete,
            )

        except Exception as e:
            logger.error(f"❌ Cycle {cycle} failed for {tenant_id}: {e}")
            await self._mark_failed(tenant_id, cycle, str(e), held_version)
            return TenantResult(tenant_id=tenant_id, success=False, cycle=cycle, error=str(e))

    async def _mark_failed(self, tenant_id: str, cycle: int, error: str, held_version: Optional[int]) -> None:
        if held_version is None:
            return
        try:
            await self.tracker.mark_failed(tenant_id, cycle, error, expected_version=held_version)
        except ConcurrentUpdateError:
            logger.info(f"{tenant_id} cycle {cycle} moved on under another run, leaving its status as is")
        except Exception as e:
            logger.error(f"Could not record failure for {tenant_id} cycle {cycle}: {e}")

    async def _purge(self, now: Optional[Union[date, datetime]]):
        try:
            return await self.store.purge_expired(now=_reference_time(now))
        except RetentionPurgeError as e:
            logger.error(f"Retention purge failed: {e}")
            return {"error": str(e)}

    @staticmethod
    def _skipped(tenant_id: str, cycle: int, reason: str) -> TenantResult:
        logger.info(f"Skipping {tenant_id} cycle {cycle}: {reason}")
        return TenantResult(tenant_id=tenant_id, success=True, cycle=cycle, skipped=True, reason=reason)

    async def purge(self, dry_run: Optional[bool] = None, now: Optional[Union[date, datetime]] = None):
        """Run only the retention purge (raises RetentionPurgeError)."""
        return await self.store.purge_expired(now=_reference_time(now), dry_run=dry_run)
