"""
Client-side throttle that keeps a tenant under a share of the upstream quota.

The upstream advertises a quota of N requests per window. With a rate
limit buffer of B percent the throttle admits at most ceil(N × B / 100)
requests per sliding window. It is conservative only: upstream 429s are
still possible and handled by the collector's retry path.

Two response headers refine the budget while collection runs:

    X-Ratelimit-Limit: "150/15m"     -> quota and window
    X-ESI-Error-Limit-Remain / -Reset -> pause until reset when the
                                         remaining error budget hits the floor
"""

import asyncio
import logging
import math
import re
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Mapping, Optional

from ..config import settings

logger = logging.getLogger("cycle_engine.services.quota_throttle")

_LIMIT_PATTERN = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*([smh]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_rate_limit(value: str) -> Optional[tuple]:
    """
    Parse an ``X-Ratelimit-Limit`` value.

    Returns:
        (requests, window_seconds) or None when unparseable
    """
    match = _LIMIT_PATTERN.match(value or "")
    if not match:
        return None
    requests, amount, unit = match.groups()
    return int(requests), float(int(amount) * _UNIT_SECONDS[unit])


class QuotaThrottle:
    """
    Sliding-window request admission.

    Attributes:
        quota_requests: Advertised requests per window
        window_seconds: Window length
        buffer_percent: Share of the quota this throttle may use (1-100)
    """

    def __init__(
        self,
        buffer_percent: int,
        quota_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        error_limit_floor: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.buffer_percent = buffer_percent
        self.quota_requests = quota_requests or settings.telemetry_quota_requests
        self.window_seconds = window_seconds or settings.telemetry_quota_window_seconds
        self.error_limit_floor = (
            error_limit_floor if error_limit_floor is not None else settings.telemetry_error_limit_floor
        )
        self._clock = clock
        self._sleep = sleep
        self._sent: Deque[float] = deque()
        self._paused_until: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def budget(self) -> int:
        return max(1, math.ceil(self.quota_requests * self.buffer_percent / 100))

    @property
    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._sent)

    def _evict(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window_seconds:
            self._sent.popleft()

    async def acquire(self) -> None:
        """Wait until one more request fits in the budget, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                if self._paused_until is not None:
                    if now < self._paused_until:
                        await self._sleep(self._paused_until - now)
                        continue
                    self._paused_until = None

                self._evict(now)
                if len(self._sent) < self.budget:
                    self._sent.append(now)
                    return

                wait = self._sent[0] + self.window_seconds - now
                logger.debug(f"Quota budget {self.budget} exhausted, waiting {wait:.2f}s")
                await self._sleep(max(wait, 0.0))

    def observe(self, headers: Mapping[str, str]) -> None:
        """Update quota and error-limit state from response headers."""
        limit = headers.get("x-ratelimit-limit")
        if limit:
            parsed = parse_rate_limit(limit)
            if parsed and parsed != (self.quota_requests, self.window_seconds):
                self.quota_requests, self.window_seconds = parsed
                logger.debug(f"Upstream quota now {self.quota_requests}/{self.window_seconds:.0f}s")

        remain = headers.get("x-esi-error-limit-remain")
        reset = headers.get("x-esi-error-limit-reset")
        if remain is None or reset is None:
            return
        try:
            remain_count = int(remain)
            reset_seconds = float(reset)
        except ValueError:
            return
        if remain_count <= self.error_limit_floor:
            self._paused_until = self._clock() + reset_seconds
            logger.warning(
                f"ESI error budget low ({remain_count} remaining), pausing {reset_seconds:.0f}s"
            )
