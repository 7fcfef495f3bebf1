"""HTTP readiness probe for supervised servers.

A server is healthy when ``GET http://127.0.0.1:<port><path>`` answers 2xx
with a JSON body.  Everything else (refused connection, timeout, non-2xx,
garbage body) just means "not ready yet".
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

log = logging.getLogger(__name__)

DEFAULT_HEALTH_PATH = "/health"
HEALTH_HOST = "127.0.0.1"


class HealthChecker:
    """Polls a local health endpoint with a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        host: str = HEALTH_HOST,
        request_timeout: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = host
        self.request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=self.request_timeout,
                    transport=self._transport,
                )
            return self._client

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    def url(self, port: int, path: str = DEFAULT_HEALTH_PATH) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"http://{self.host}:{port}{path}"

    async def probe(
        self, port: int, path: str = DEFAULT_HEALTH_PATH
    ) -> dict[str, Any] | None:
        """One health request.  Returns the JSON body, or None if not ready."""
        client = await self._get_client()
        url = self.url(port, path)
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            log.debug("Health probe %s failed: %s", url, exc)
            return None

        if not response.is_success:
            log.debug("Health probe %s returned HTTP %d", url, response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            log.debug("Health probe %s returned a non-JSON body", url)
            return None
        # A bare JSON scalar still counts as "parseable"
        return body if isinstance(body, dict) else {"body": body}

    async def wait_until_healthy(
        self,
        port: int,
        path: str = DEFAULT_HEALTH_PATH,
        *,
        timeout: float = 10.0,
        interval: float = 1.0,
    ) -> bool:
        """Poll until healthy or until ``timeout`` elapses.

        Returns no later than ``timeout + interval`` after the call: each
        request is capped at ``interval`` and no new attempt starts once the
        deadline has passed.
        """
        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                body = await asyncio.wait_for(self.probe(port, path), timeout=interval)
            except asyncio.TimeoutError:
                body = None
            if body is not None:
                log.info("Health check passed on port %d after %d attempt(s): %s",
                         port, attempt, body)
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning("Health check on port %d gave up after %d attempt(s)",
                            port, attempt)
                return False
            log.debug("Health check %d on port %d not ready; retrying", attempt, port)
            await asyncio.sleep(min(interval, remaining))
