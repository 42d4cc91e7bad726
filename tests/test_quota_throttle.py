"""
Tests for the client-side quota throttle.
"""

import pytest

from cycle_engine.services.quota_throttle import QuotaThrottle, parse_rate_limit


class FakeClock:
    """Monotonic clock advanced only by the throttle's sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_throttle(clock, buffer_percent=80, quota=10, window=1.0, floor=5):
    return QuotaThrottle(
        buffer_percent,
        quota_requests=quota,
        window_seconds=window,
        error_limit_floor=floor,
        clock=clock,
        sleep=clock.sleep,
    )


class TestParseRateLimit:
    """X-Ratelimit-Limit parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("150/15m", (150, 900.0)),
        ("20/1s", (20, 1.0)),
        ("3600/1h", (3600, 3600.0)),
        ("10/5", (10, 5.0)),
    ])
    def test_valid_values(self, value, expected):
        assert parse_rate_limit(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "10/", "/15m", "10/15d"])
    def test_invalid_values(self, value):
        assert parse_rate_limit(value) is None


class TestBudget:
    """The buffer caps the share of the quota in use."""

    def test_budget_is_buffer_share_rounded_up(self, clock):
        assert make_throttle(clock, buffer_percent=80, quota=10).budget == 8
        assert make_throttle(clock, buffer_percent=25, quota=10).budget == 3

    def test_budget_never_zero(self, clock):
        assert make_throttle(clock, buffer_percent=1, quota=10).budget == 1

    @pytest.mark.asyncio
    async def test_requests_within_budget_do_not_wait(self, clock):
        throttle = make_throttle(clock)
        for _ in range(8):
            await throttle.acquire()
        assert clock.sleeps == []
        assert throttle.in_window == 8

    @pytest.mark.asyncio
    async def test_request_over_budget_waits_for_window(self, clock):
        throttle = make_throttle(clock)
        for _ in range(9):
            await throttle.acquire()
        assert clock.sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_never_more_than_budget_per_window(self, clock):
        throttle = make_throttle(clock, buffer_percent=50, quota=10, window=2.0)
        admitted_at = []
        for _ in range(20):
            await throttle.acquire()
            admitted_at.append(clock.now)
        for t in admitted_at:
            in_window = [a for a in admitted_at if t <= a < t + 2.0]
            assert len(in_window) <= 5


class TestResponseHeaders:
    """Quota and error-limit headers refine the throttle."""

    def test_rate_limit_header_updates_quota(self, clock):
        throttle = make_throttle(clock)
        throttle.observe({"x-ratelimit-limit": "150/15m"})
        assert throttle.quota_requests == 150
        assert throttle.window_seconds == 900.0
        assert throttle.budget == 120

    @pytest.mark.asyncio
    async def test_low_error_budget_pauses_until_reset(self, clock):
        throttle = make_throttle(clock, floor=5)
        throttle.observe({"x-esi-error-limit-remain": "4", "x-esi-error-limit-reset": "30"})
        await throttle.acquire()
        assert clock.sleeps == [pytest.approx(30.0)]

    @pytest.mark.asyncio
    async def test_healthy_error_budget_does_not_pause(self, clock):
        throttle = make_throttle(clock, floor=5)
        throttle.observe({"x-esi-error-limit-remain": "80", "x-esi-error-limit-reset": "30"})
        await throttle.acquire()
        assert clock.sleeps == []

    def test_malformed_headers_ignored(self, clock):
        throttle = make_throttle(clock)
        throttle.observe({"x-ratelimit-limit": "lots", "x-esi-error-limit-remain": "?", "x-esi-error-limit-reset": "x"})
        assert throttle.quota_requests == 10
