import asyncio
import os
import shutil
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

# Configure a throwaway database and in-memory broker before importing
# cycle_engine modules (settings are read at import time).
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="cycle_engine_pytest_"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR}/default.db")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from cycle_engine.config import settings  # noqa: E402
from cycle_engine.database.models import CycleConfiguration  # noqa: E402
from cycle_engine.services.database_service import DatabaseService  # noqa: E402
from cycle_engine.services.engine import CycleEngine  # noqa: E402
from cycle_engine.services.telemetry_client import TelemetryClient  # noqa: E402

ESI_BASE_URL = "https://esi.test"
ANCHOR_SUNDAY = date(2025, 1, 5)

CORPORATION_INFO = {
    "name": "Test Corp",
    "ticker": "TEST",
    "member_count": 42,
    "ceo_id": 90000001,
    "tax_rate": 0.1,
    "date_founded": "2010-01-01T00:00:00Z",
}


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


class FakeESI:
    """
    httpx.MockTransport handler serving canned ESI responses.

    Routes map a URL path to a response spec or a list of specs consumed in
    order (the last one repeats). A spec is a dict with ``status``,
    ``json``, ``headers`` and an optional ``delay`` in seconds.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[httpx.Request] = []

    def paths_called(self) -> List[str]:
        return [r.url.path for r in self.calls]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        spec = self.routes.get(request.url.path)
        if spec is None:
            return httpx.Response(404, json={"error": "Not found"})
        if isinstance(spec, list):
            spec = spec.pop(0) if len(spec) > 1 else spec[0]
        if spec.get("delay"):
            await asyncio.sleep(spec["delay"])
        return httpx.Response(
            spec.get("status", 200),
            json=spec.get("json"),
            headers=spec.get("headers"),
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def public_routes(tenant_id: str) -> Dict[str, Any]:
    return {
        f"/corporations/{tenant_id}/": {"json": CORPORATION_INFO},
        f"/corporations/{tenant_id}/alliancehistory/": {"json": [{"alliance_id": 99000001, "record_id": 1}]},
    }


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Backoff delays of zero keep retry tests instant."""
    monkeypatch.setattr(settings, "retry_base_delay", 0.0)
    monkeypatch.setattr(settings, "retry_max_delay", 0.0)


@pytest_asyncio.fixture
async def database(tmp_path):
    """Opened DatabaseService on a fresh SQLite file with tables created."""
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path}/cycle_engine.db")
    await service.open()
    await service.init_db()
    yield service
    await service.close()


@pytest.fixture
def add_config(database):
    """Insert a cycle_configurations row; keyword arguments override defaults."""

    async def _add(tenant_id: str, anchor: date = ANCHOR_SUNDAY, **overrides) -> None:
        values = {
            "tenant_id": tenant_id,
            "enabled": True,
            "cycle_anchor_date": anchor,
            "cycle_length_days": 7,
            "categories": ["corporation_info", "alliance_history"],
        }
        values.update(overrides)
        async with database.get_session() as session:
            session.add(CycleConfiguration(**values))

    return _add


@pytest.fixture
def fake_esi():
    return FakeESI()


@pytest_asyncio.fixture
async def telemetry_client(fake_esi):
    client = TelemetryClient(base_url=ESI_BASE_URL, transport=fake_esi.transport())
    await client.open()
    yield client
    await client.close()


@pytest_asyncio.fixture
async def engine(database, telemetry_client):
    """CycleEngine over the test database and fake ESI, without the post-batch purge."""
    return CycleEngine(database, telemetry_client, purge_after_batch=False)
