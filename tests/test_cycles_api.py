"""
Tests for the v1 cycle endpoints.

The application's startup handler builds its engine through
``cycle_engine.main.build_engine``, patched here to use a temporary
database and a mocked ESI transport.
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from cycle_engine.database.models import CycleConfiguration
from cycle_engine.errors import ConfigurationError
from cycle_engine.main import app
from cycle_engine.services.database_service import DatabaseService
from cycle_engine.services.engine import CycleEngine
from cycle_engine.services.telemetry_client import TelemetryClient

from conftest import ESI_BASE_URL, FakeESI, public_routes

TENANT = "98000001"


async def _seed(database_url: str) -> None:
    database = DatabaseService(database_url)
    await database.open()
    try:
        await database.init_db()
        async with database.get_session() as session:
            session.add(
                CycleConfiguration(
                    tenant_id=TENANT,
                    enabled=True,
                    cycle_anchor_date=date(2025, 1, 5),
                    cycle_length_days=7,
                    categories=["corporation_info", "alliance_history"],
                )
            )
    finally:
        await database.close()


@pytest.fixture
def client(tmp_path):
    database_url = f"sqlite+aiosqlite:///{tmp_path}/api.db"
    asyncio.run(_seed(database_url))
    fake_esi = FakeESI(public_routes(TENANT))

    def build_engine():
        return CycleEngine(
            DatabaseService(database_url),
            TelemetryClient(base_url=ESI_BASE_URL, transport=fake_esi.transport()),
            purge_after_batch=False,
        )

    with patch("cycle_engine.main.build_engine", build_engine):
        with TestClient(app) as test_client:
            yield test_client


def run_cycle(client):
    return client.post("/api/v1/cycles/run", json={"asOf": "2025-01-12"})


class TestRunEndpoint:
    """POST /cycles/run"""

    def test_run_collects_due_tenant(self, client):
        response = run_cycle(client)
        assert response.status_code == 200
        body = response.json()
        assert body["tenantsProcessed"] == 1
        assert body["results"][0]["tenantId"] == TENANT
        assert body["results"][0]["success"] is True
        assert body["results"][0]["cycle"] == 1

    def test_run_without_body(self, client):
        response = client.post("/api/v1/cycles/run")
        assert response.status_code == 200
        assert "tenantsProcessed" in response.json()

    def test_configuration_error_is_503(self, client):
        engine = client.app.state.engine
        with patch.object(
            engine.config_repository, "load_enabled",
            AsyncMock(side_effect=ConfigurationError("store unreachable")),
        ):
            response = run_cycle(client)
        assert response.status_code == 503
        assert "store unreachable" in response.json()["detail"]


class TestStatusEndpoints:
    """Status and history."""

    def test_status_after_run(self, client):
        run_cycle(client)
        response = client.get(f"/api/v1/cycles/{TENANT}/status", params={"cycle": 1})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "analyzing"
        assert body["progress"]["esi_collected"] is True
        assert body["attemptCount"] == 1
        assert body["failedTerminal"] is False

    def test_status_unknown_tenant(self, client):
        response = client.get("/api/v1/cycles/nobody/status")
        assert response.status_code == 404

    def test_status_missing_cycle(self, client):
        response = client.get(f"/api/v1/cycles/{TENANT}/status", params={"cycle": 40})
        assert response.status_code == 404

    def test_history(self, client):
        run_cycle(client)
        response = client.get(f"/api/v1/cycles/{TENANT}/history")
        assert response.status_code == 200
        assert [s["cycleNumber"] for s in response.json()] == [1]


class TestSnapshotEndpoints:
    """Snapshots and comparisons."""

    def test_get_snapshot(self, client):
        run_cycle(client)
        response = client.get(f"/api/v1/cycles/{TENANT}/snapshots/1")
        assert response.status_code == 200
        body = response.json()
        assert body["data"]["corporation_info"]["ticker"] == "TEST"
        assert body["errors"] == []

    def test_list_snapshots(self, client):
        run_cycle(client)
        response = client.get(f"/api/v1/cycles/{TENANT}/snapshots")
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_missing_snapshot(self, client):
        response = client.get(f"/api/v1/cycles/{TENANT}/snapshots/9")
        assert response.status_code == 404

    def test_comparison_without_previous(self, client):
        run_cycle(client)
        response = client.get(f"/api/v1/cycles/{TENANT}/snapshots/1/comparison")
        assert response.status_code == 200
        body = response.json()
        assert body["memberGrowth"] == 0
        assert body["previousCycle"] is None


class TestMaintenanceEndpoints:
    """Retention purge and health."""

    def test_purge_dry_run(self, client):
        response = client.post("/api/v1/cycles/retention/purge", json={"dryRun": True})
        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is True
        assert body["deleted_count"] == 0

    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"]["tables"]["cycle_configurations"] == 1
