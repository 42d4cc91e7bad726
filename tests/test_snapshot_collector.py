"""
Tests for SnapshotCollector against a mocked ESI transport.

Covers partial success, retry/backoff classification, authenticated
categories, the concurrency bound and the per-tenant deadline.
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import httpx
import pytest

from cycle_engine.errors import CategoryFetchError
from cycle_engine.models import BackoffStrategy, CycleConfig
from cycle_engine.services.snapshot_collector import SnapshotCollector, compute_backoff_delay
from cycle_engine.services.telemetry_client import TelemetryClient, parse_retry_after

from conftest import CORPORATION_INFO, public_routes

TENANT = "98000001"
TOKEN = "token-abc"

FIVE_CATEGORIES = ["corporation_info", "alliance_history", "members", "member_tracking", "wallets"]


def make_config(**overrides) -> CycleConfig:
    values = {
        "tenant_id": TENANT,
        "cycle_anchor_date": date(2025, 1, 5),
        "categories": FIVE_CATEGORIES,
        "retry_attempts": 2,
    }
    values.update(overrides)
    return CycleConfig(**values)


def all_routes():
    routes = public_routes(TENANT)
    routes.update({
        f"/corporations/{TENANT}/members/": {"json": [1, 2, 3]},
        f"/corporations/{TENANT}/membertracking/": {"json": [
            {"character_id": 1, "logoff_date": "2999-01-01T00:00:00Z"},
            {"character_id": 2, "logoff_date": "2000-01-01T00:00:00Z"},
        ]},
        f"/corporations/{TENANT}/wallets/": {"json": [{"division": 1, "balance": 100.5}, {"division": 2, "balance": 50}]},
    })
    return routes


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def collector(telemetry_client, sleep):
    return SnapshotCollector(telemetry_client, sleep=sleep)


class TestBackoffDelay:
    """Delay computation for retries."""

    def test_linear(self):
        assert [compute_backoff_delay("linear", n, 1.0, 30.0) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    def test_exponential(self):
        delays = [compute_backoff_delay(BackoffStrategy.EXPONENTIAL, n, 1.0, 30.0) for n in (1, 2, 3, 4)]
        assert delays == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert compute_backoff_delay("exponential", 10, 1.0, 30.0) == 30.0

    def test_larger_retry_after_wins(self):
        assert compute_backoff_delay("linear", 1, 1.0, 30.0, retry_after=12.0) == 12.0

    def test_retry_after_still_capped(self):
        assert compute_backoff_delay("linear", 1, 1.0, 30.0, retry_after=600.0) == 30.0

    def test_smaller_retry_after_ignored(self):
        assert compute_backoff_delay("linear", 3, 1.0, 30.0, retry_after=0.5) == 3.0


class TestRetryAfterParsing:
    """Retry-After header formats."""

    def test_delta_seconds(self):
        assert parse_retry_after({"retry-after": "7"}) == 7.0

    def test_past_http_date_is_zero(self):
        assert parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0.0

    def test_esi_error_limit_reset_fallback(self):
        assert parse_retry_after({"x-esi-error-limit-reset": "42"}) == 42.0

    def test_absent(self):
        assert parse_retry_after({}) is None


class TestCollection:
    """Full and partial collections."""

    @pytest.mark.asyncio
    async def test_all_categories_collected(self, collector, fake_esi):
        fake_esi.routes.update(all_routes())
        snapshot = await collector.collect(make_config(), 1, credentials=TOKEN)

        assert set(snapshot.data) == set(FIVE_CATEGORIES)
        assert snapshot.errors == []
        assert snapshot.incomplete is False
        assert snapshot.categories_requested == FIVE_CATEGORIES
        assert snapshot.data["corporation_info"]["member_count"] == CORPORATION_INFO["member_count"]
        assert snapshot.data["members"]["total"] == 3
        assert snapshot.data["member_tracking"] == {
            "total": 2,
            "active": 1,
            "member_list": snapshot.data["member_tracking"]["member_list"],
        }
        assert snapshot.data["wallets"]["balance"] == 150.5

    @pytest.mark.asyncio
    async def test_one_category_exhausts_retries(self, collector, fake_esi, sleep):
        """Five categories, one keeps failing: four in data, one error."""
        routes = all_routes()
        routes[f"/corporations/{TENANT}/wallets/"] = {"status": 503}
        fake_esi.routes.update(routes)

        snapshot = await collector.collect(make_config(retry_attempts=2), 1, credentials=TOKEN)

        assert len(snapshot.data) == 4
        assert "wallets" not in snapshot.data
        assert len(snapshot.errors) == 1
        assert snapshot.errors[0].category == "wallets"
        assert fake_esi.paths_called().count(f"/corporations/{TENANT}/wallets/") == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, collector, fake_esi, sleep):
        fake_esi.routes.update(public_routes(TENANT))
        fake_esi.routes[f"/corporations/{TENANT}/"] = [
            {"status": 502},
            {"status": 429, "headers": {"Retry-After": "3"}},
            {"json": CORPORATION_INFO},
        ]
        config = make_config(categories=["corporation_info"], retry_attempts=3)

        snapshot = await collector.collect(config, 1)

        assert "corporation_info" in snapshot.data
        assert snapshot.errors == []
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, collector, fake_esi, sleep):
        fake_esi.routes[f"/corporations/{TENANT}/"] = {"status": 403, "json": {"error": "forbidden"}}
        config = make_config(categories=["corporation_info"], retry_attempts=5)

        snapshot = await collector.collect(config, 1)

        assert snapshot.data == {}
        assert snapshot.errors[0].message.startswith("ESI error: 403")
        assert len(fake_esi.calls) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_retry_attempts(self, collector, fake_esi):
        fake_esi.routes[f"/corporations/{TENANT}/"] = {"status": 500}
        snapshot = await collector.collect(make_config(categories=["corporation_info"], retry_attempts=0), 1)
        assert len(fake_esi.calls) == 1
        assert snapshot.error_count == 1

    @pytest.mark.asyncio
    async def test_unknown_category_recorded(self, collector, fake_esi):
        fake_esi.routes.update(public_routes(TENANT))
        snapshot = await collector.collect(make_config(categories=["corporation_info", "moon_mining"]), 1)
        assert "corporation_info" in snapshot.data
        assert snapshot.errors[0].category == "moon_mining"


class TestAuthenticatedCategories:
    """Categories that need a bearer token."""

    @pytest.mark.asyncio
    async def test_missing_token_recorded_without_request(self, collector, fake_esi):
        fake_esi.routes.update(all_routes())
        snapshot = await collector.collect(make_config(), 1)

        assert set(snapshot.data) == {"corporation_info", "alliance_history"}
        assert [e.category for e in snapshot.errors] == ["members", "member_tracking", "wallets"]
        assert snapshot.errors[0].message == "No access token provided for members"
        assert all("/members/" not in path for path in fake_esi.paths_called())

    @pytest.mark.asyncio
    async def test_token_sent_only_to_authenticated_categories(self, collector, fake_esi):
        fake_esi.routes.update(all_routes())
        await collector.collect(make_config(categories=["corporation_info", "members"]), 1, credentials=TOKEN)

        auth = {r.url.path: r.headers.get("authorization") for r in fake_esi.calls}
        assert auth[f"/corporations/{TENANT}/members/"] == f"Bearer {TOKEN}"
        assert auth[f"/corporations/{TENANT}/"] is None

    @pytest.mark.asyncio
    async def test_user_agent_sent(self, collector, fake_esi):
        fake_esi.routes.update(public_routes(TENANT))
        await collector.collect(make_config(categories=["corporation_info"]), 1)
        assert fake_esi.calls[0].headers["user-agent"]


class TestConcurrencyBound:
    """At most max_concurrent_requests fetches are in flight."""

    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_limit(self):
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            if request.url.path == f"/corporations/{TENANT}/":
                return httpx.Response(200, json=CORPORATION_INFO)
            return httpx.Response(200, json=[])

        client = TelemetryClient(base_url="https://esi.test", transport=httpx.MockTransport(handler))
        await client.open()
        try:
            collector = SnapshotCollector(client)
            config = make_config(categories=FIVE_CATEGORIES, max_concurrent_requests=2)
            snapshot = await collector.collect(config, 1, credentials=TOKEN)
        finally:
            await client.close()

        assert peak <= 2
        assert snapshot.error_count == 0


class TestDeadline:
    """The per-tenant deadline cancels unfinished fetches."""

    @pytest.mark.asyncio
    async def test_slow_category_cancelled(self, collector, fake_esi):
        fake_esi.routes.update(public_routes(TENANT))
        fake_esi.routes[f"/corporations/{TENANT}/alliancehistory/"] = {"json": [], "delay": 5}
        config = make_config(categories=["corporation_info", "alliance_history"])

        snapshot = await collector.collect(config, 1, deadline=0.2)

        assert snapshot.incomplete is True
        assert "corporation_info" in snapshot.data
        assert "alliance_history" not in snapshot.data
        assert snapshot.errors[0].category == "alliance_history"
        assert "Deadline" in snapshot.errors[0].message


class TestTelemetryClient:
    """Error classification of the HTTP client."""

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = TelemetryClient(base_url="https://esi.test", transport=httpx.MockTransport(handler))
        await client.open()
        try:
            with pytest.raises(CategoryFetchError) as exc_info:
                await client.fetch("corporation_info", "/corporations/1/")
        finally:
            await client.close()
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_invalid_json_not_transient(self):
        client = TelemetryClient(
            base_url="https://esi.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"<html>")),
        )
        await client.open()
        try:
            with pytest.raises(CategoryFetchError) as exc_info:
                await client.fetch("corporation_info", "/corporations/1/")
        finally:
            await client.close()
        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_error_limited_carries_retry_after(self):
        client = TelemetryClient(
            base_url="https://esi.test",
            transport=httpx.MockTransport(
                lambda r: httpx.Response(420, headers={"X-ESI-Error-Limit-Reset": "17"})
            ),
        )
        await client.open()
        try:
            with pytest.raises(CategoryFetchError) as exc_info:
                await client.fetch("corporation_info", "/corporations/1/")
        finally:
            await client.close()
        assert exc_info.value.transient is True
        assert exc_info.value.retry_after == 17.0

    @pytest.mark.asyncio
    async def test_fetch_before_open(self):
        with pytest.raises(RuntimeError):
            await TelemetryClient(base_url="https://esi.test").fetch("x", "/")
