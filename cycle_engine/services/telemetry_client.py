"""
HTTP client for the ESI telemetry API.

One ``httpx.AsyncClient`` is shared for the life of the process and
closed explicitly. Every failure is raised as ``CategoryFetchError`` with
a ``transient`` flag the collector uses to decide whether to retry:

    timeout / transport error      -> transient
    5xx                            -> transient
    429, 420 (ESI error limited)   -> transient, with retry_after
    other 4xx                      -> not retried
    non-JSON 2xx body              -> not retried

Usage:
    client = TelemetryClient()
    await client.open()
    response = await client.fetch("corporation_info", "/corporations/98000001/")
    await client.close()
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping, Optional

import httpx

from ..config import settings
from ..errors import CategoryFetchError

logger = logging.getLogger("cycle_engine.services.telemetry_client")

HeaderObserver = Callable[[Mapping[str, str]], None]


@dataclass
class TelemetryResponse:
    data: Any
    status_code: int
    headers: Mapping[str, str]


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """
    Seconds to wait before retrying, from Retry-After or ESI's error-limit reset.

    Retry-After may be delta-seconds or an HTTP date.
    """
    value = headers.get("retry-after")
    if value:
        value = value.strip()
        try:
            return max(0.0, float(value))
        except ValueError:
            try:
                when = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                when = None
            if when is not None:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

    reset = headers.get("x-esi-error-limit-reset")
    if reset:
        try:
            return max(0.0, float(reset))
        except ValueError:
            return None
    return None


class TelemetryClient:
    """
    Thin async wrapper around ESI GET requests.

    Attributes:
        base_url: API root, e.g. https://esi.evetech.net/latest
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.esi_base_url).rstrip("/")
        self.user_agent = user_agent or settings.esi_user_agent
        self.timeout = timeout or settings.telemetry_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def open(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "application/json",
            },
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(
        self,
        category: str,
        path: str,
        access_token: Optional[str] = None,
        observer: Optional[HeaderObserver] = None,
    ) -> TelemetryResponse:
        """
        GET one telemetry endpoint.

        Args:
            category: Category name (for error reporting)
            path: Path relative to base_url
            access_token: Optional bearer token
            observer: Called with the response headers of every response

        Returns:
            TelemetryResponse with parsed JSON

        Raises:
            CategoryFetchError: On any failure
            RuntimeError: If the client has not been opened
        """
        if self._client is None:
            raise RuntimeError("TelemetryClient not opened")

        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None

        try:
            response = await self._client.get(path, headers=headers)
        except httpx.TimeoutException as e:
            raise CategoryFetchError(
                category, f"Timeout after {self.timeout}s: {type(e).__name__}", transient=True
            ) from e
        except httpx.TransportError as e:
            raise CategoryFetchError(category, f"Transport error: {e}", transient=True) from e

        if observer is not None:
            observer(response.headers)

        status = response.status_code
        if status in (420, 429):
            raise CategoryFetchError(
                category,
                f"Rate limited: {status}",
                status_code=status,
                transient=True,
                retry_after=parse_retry_after(response.headers),
            )
        if status >= 500:
            raise CategoryFetchError(
                category, f"ESI error: {status} {response.reason_phrase}", status_code=status, transient=True
            )
        if status >= 400:
            logger.debug(f"ESI {status} for {path}: {response.text[:200] if response.text else 'No body'}")
            raise CategoryFetchError(
                category, f"ESI error: {status} {response.reason_phrase}", status_code=status
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CategoryFetchError(category, f"Invalid JSON from ESI: {e}", status_code=status) from e

        return TelemetryResponse(data=data, status_code=status, headers=response.headers)
