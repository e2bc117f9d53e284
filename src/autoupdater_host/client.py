"""HTTP client for the AutoUpdater service REST API.

Endpoints (relative to ``<base_url>/api``):

- ``GET  /health``            service health
- ``GET  /packages``          configured packages
- ``GET  /upgrades/{name}``   upgrade status of one package
- ``POST /update/{name}``     trigger an update of one package
- ``POST /update-all``        trigger updates of every package
- ``GET  /debug``             connectivity self-test
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from autoupdater_host.errors import (
    CONNECTIVITY_HINTS,
    ApiError,
    NotFoundError,
    ServiceUnavailableError,
)
from autoupdater_host.logging import get_logger

log = get_logger("autoupdater_host.client")


def error_message(resp: httpx.Response) -> str:
    """Human-readable error from ``title``, then ``error``, then the raw body."""
    text = resp.text
    try:
        data = resp.json()
    except ValueError:
        return text.strip()
    if isinstance(data, dict):
        for key in ("title", "error"):
            value = data.get(key)
            if value:
                return str(value)
    return text.strip()


class AutoUpdaterClient:
    """Thin async wrapper over the AutoUpdater REST API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base = f"{base_url.rstrip('/')}/api"
        self._timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        package: str | None = None,
    ) -> Any:
        url = f"{self._api_base}{endpoint}"
        log.debug("api_request", method=method, url=url)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.request(method, url)
        except httpx.RequestError as exc:
            raise ServiceUnavailableError(
                f"Service not available: {exc}",
                step="api",
                hints=["Is the AutoUpdater container running? docker ps | grep autoupdater"],
            ) from exc

        log.debug("api_response", status=resp.status_code)
        if 200 <= resp.status_code < 300:
            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError:
                return resp.text

        if resp.status_code == 404 and package is not None:
            raise NotFoundError(f"Package not found: {package}", step="api")

        raise ApiError(
            f"API call failed with status {resp.status_code}: {error_message(resp)}",
            status_code=resp.status_code,
            step="api",
        )

    async def health(self) -> Any:
        """Return the health payload; any failure means the service is unavailable."""
        try:
            return await self._request("GET", "/health")
        except ApiError as exc:
            raise ServiceUnavailableError(
                f"Service not available (HTTP {exc.status_code})",
                step="health",
                hints=list(CONNECTIVITY_HINTS),
            ) from exc

    async def is_healthy(self) -> bool:
        try:
            await self.health()
        except ServiceUnavailableError:
            return False
        return True

    async def packages(self) -> Any:
        return await self._request("GET", "/packages")

    async def status(self, package: str) -> Any:
        return await self._request("GET", f"/upgrades/{quote(package, safe='')}", package=package)

    async def update(self, package: str) -> Any:
        log.info("api_trigger_update", package=package)
        return await self._request("POST", f"/update/{quote(package, safe='')}", package=package)

    async def update_all(self) -> Any:
        log.info("api_trigger_update_all")
        return await self._request("POST", "/update-all")

    async def debug(self) -> Any:
        return await self._request("GET", "/debug")
