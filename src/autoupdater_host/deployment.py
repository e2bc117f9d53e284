"""Hand the first application deployment over to the AutoUpdater service."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from autoupdater_host.client import AutoUpdaterClient
from autoupdater_host.errors import CONNECTIVITY_HINTS, AutoUpdaterError, LaunchExhaustedError
from autoupdater_host.logging import get_logger

log = get_logger("autoupdater_host.deployment")


class DeploymentOutcome(Enum):
    TRIGGERED = "triggered"
    SKIPPED_NOT_READY = "skipped_not_ready"


class DeploymentTrigger:
    """Waits for the service to report healthy, then asks it to deploy a package."""

    def __init__(
        self,
        client: AutoUpdaterClient,
        max_attempts: int = 30,
        retry_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        container_name: str = "autoupdater",
    ) -> None:
        self._client = client
        self._container_name = container_name
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._sleep = sleep

    async def wait_until_healthy(self) -> int:
        """Poll the health endpoint; returns the attempt that succeeded."""
        for attempt in range(1, self._max_attempts + 1):
            if await self._client.is_healthy():
                log.info("autoupdater_healthy", attempt=attempt)
                return attempt
            if attempt < self._max_attempts:
                log.info(
                    "autoupdater_waiting_for_health",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                )
                await self._sleep(self._retry_delay)

        raise LaunchExhaustedError(
            f"AutoUpdater health check failed after {self._max_attempts} attempts",
            step="deployment",
            hints=[
                f"Check container logs: docker logs {self._container_name}",
                *CONNECTIVITY_HINTS,
            ],
        )

    async def trigger_initial_deployment(self, package: str) -> DeploymentOutcome:
        await self.wait_until_healthy()

        log.info("deployment_triggering", package=package)
        try:
            await self._client.update(package)
        except AutoUpdaterError as exc:
            # Expected on a fresh install: the service picks the package up on its next cycle
            log.warning(
                "deployment_trigger_deferred",
                package=package,
                reason=exc.message,
            )
            log.info("deployment_will_run_on_next_update_cycle", package=package)
            return DeploymentOutcome.SKIPPED_NOT_READY

        log.info("deployment_triggered", package=package)
        return DeploymentOutcome.TRIGGERED
