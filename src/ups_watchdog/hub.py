from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any

import httpx

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 5.0
REQUEST_TIMEOUT = 10.0


class HubError(RuntimeError):
    pass


def primary_ip(probe_host: str = "1.1.1.1", probe_port: int = 80) -> str | None:
    """Return the source address the kernel picks for outbound traffic.

    Connecting a UDP socket sends nothing; it only resolves the route.
    """

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((probe_host, probe_port))
            ip = s.getsockname()[0]
    except OSError as e:
        logger.debug("Could not determine primary IP: %s", e)
        return None
    if not ip or ip == "0.0.0.0":
        return None
    return ip


class HubClient:
    """Bearer-authenticated client for the UPS hub REST API.

    Every call is bounded twice: httpx enforces the connect/read timeouts and
    ``asyncio.wait_for`` caps the whole request at ``request_timeout``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        connect_timeout: float = CONNECT_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._request_timeout = request_timeout
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout),
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> HubClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            r = await asyncio.wait_for(
                self._client.request(method, url, **kwargs), timeout=self._request_timeout
            )
        except asyncio.TimeoutError as e:
            raise HubError(f"{method} {url} timed out after {self._request_timeout:g}s") from e
        except httpx.HTTPError as e:
            raise HubError(f"{method} {url} failed: {e}") from e
        if not 200 <= r.status_code < 300:
            raise HubError(f"{method} {url} returned HTTP {r.status_code}")
        return r

    async def _json(self, path: str, params: dict[str, str] | None = None) -> Any:
        r = await self._request("GET", path, params=params)
        try:
            return r.json()
        except ValueError as e:
            raise HubError(f"GET {self.base_url}{path} returned invalid JSON") from e

    async def fetch_config(self, ip: str) -> Any:
        return await self._json("/config", params={"ip": ip})

    async def fetch_status(self) -> Any:
        return await self._json("/upsc")

    async def report_status(
        self, ip: str | None, status: str, remaining_seconds: int, shutdown_delay: int
    ) -> None:
        body = {
            "ip": ip,
            "status": status,
            "remaining_seconds": int(remaining_seconds),
            "shutdown_delay": int(shutdown_delay),
        }
        await self._request("POST", "/status", json=body)
