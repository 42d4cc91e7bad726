"""
Composition root for the cycle engine.

Builds every service around one DatabaseService and one TelemetryClient
and owns their lifecycle. Callers (API startup, Celery tasks, the command
line) hold a ``CycleEngine`` instead of module-level singletons, so each
process or event loop gets its own engine and connections.

Usage:
    async with CycleEngine.build() as engine:
        summary = await engine.orchestrator.run()
"""

import logging
from typing import Optional

import httpx

from .cycle_config_repository import CycleConfigRepository
from .cycle_orchestrator import CredentialsProvider, CycleOrchestrator
from .cycle_status_repository import CycleStatusRepository
from .cycle_status_tracker import CycleStatusTracker
from .database_service import DatabaseService
from .due_tenant_selector import DueTenantSelector
from .snapshot_collector import SnapshotCollector
from .snapshot_store import SnapshotStore
from .telemetry_client import TelemetryClient

logger = logging.getLogger("cycle_engine.services.engine")


class CycleEngine:
    """Container wiring repositories, tracker, collector, store and orchestrator."""

    def __init__(
        self,
        database: DatabaseService,
        client: TelemetryClient,
        credentials_provider: Optional[CredentialsProvider] = None,
        **orchestrator_options,
    ):
        self.database = database
        self.client = client
        self.config_repository = CycleConfigRepository(database)
        self.status_repository = CycleStatusRepository(database)
        self.tracker = CycleStatusTracker(self.status_repository)
        self.selector = DueTenantSelector(self.config_repository, self.tracker)
        self.collector = SnapshotCollector(client)
        self.store = SnapshotStore(database, self.tracker)
        self.orchestrator = CycleOrchestrator(
            self.selector,
            self.tracker,
            self.collector,
            self.store,
            credentials_provider=credentials_provider,
            **orchestrator_options,
        )

    @classmethod
    def build(
        cls,
        database_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credentials_provider: Optional[CredentialsProvider] = None,
        **orchestrator_options,
    ) -> "CycleEngine":
        return cls(
            DatabaseService(database_url),
            TelemetryClient(transport=transport),
            credentials_provider=credentials_provider,
            **orchestrator_options,
        )

    async def open(self, create_tables: bool = True) -> "CycleEngine":
        await self.database.open()
        if create_tables:
            await self.database.init_db()
        await self.client.open()
        logger.info("Cycle engine ready")
        return self

    async def close(self) -> None:
        await self.client.close()
        await self.database.close()

    async def __aenter__(self) -> "CycleEngine":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
