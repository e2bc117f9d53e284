"""Bring up the AutoUpdater container with bounded retries.

State machine::

    PULLING -> STARTING -> VERIFYING -> HEALTHY
       |          |           |
       +----------+-----------+--> RETRYING -> PULLING
                                        \\-> FAILED (attempts exhausted)

Pull failures are classified by their output. When the second attempt
fails with a network/DNS signature the Docker daemon is restarted once to
drop its cached resolver state; later attempts never restart it again.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from autoupdater_host.commands import CommandResult, CommandRunner
from autoupdater_host.errors import CONNECTIVITY_HINTS, LaunchExhaustedError
from autoupdater_host.logging import get_logger

log = get_logger("autoupdater_host.launcher")

# The daemon restart is only considered after this attempt fails
CORRECTIVE_ATTEMPT = 2

_NETWORK_SIGNATURES = re.compile(
    r"network is unreachable"
    r"|no such host"
    r"|temporary failure in name resolution"
    r"|could not resolve"
    r"|server misbehaving"
    r"|i/o timeout"
    r"|tls handshake timeout"
    r"|dial tcp",
    re.IGNORECASE,
)


class LaunchState(Enum):
    PULLING = "pulling"
    STARTING = "starting"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    HEALTHY = "healthy"
    FAILED = "failed"


class FailureKind(Enum):
    NETWORK = "network"
    OTHER = "other"


def classify_failure(output: str) -> FailureKind:
    """Network/DNS failures are transient; everything else is not."""
    return FailureKind.NETWORK if _NETWORK_SIGNATURES.search(output or "") else FailureKind.OTHER


class WorkloadOperations(Protocol):
    """What the launcher needs from the container runtime."""

    async def pull(self, working_directory: Path) -> CommandResult: ...

    async def up(self, working_directory: Path) -> CommandResult: ...

    async def is_running(self) -> bool: ...

    async def restart_daemon(self) -> CommandResult: ...


class ComposeWorkload:
    """``docker compose`` backed operations, run as the service account."""

    def __init__(
        self,
        runner: CommandRunner,
        container_name: str,
        compose_command: list[str] | None = None,
        as_user: str | None = None,
    ) -> None:
        self._runner = runner
        self._container = container_name
        self._compose = compose_command or ["docker", "compose"]
        self._as_user = as_user

    async def pull(self, working_directory: Path) -> CommandResult:
        return await self._runner.run(
            [*self._compose, "pull"], cwd=working_directory, timeout=600, as_user=self._as_user
        )

    async def up(self, working_directory: Path) -> CommandResult:
        return await self._runner.run(
            [*self._compose, "up", "-d"], cwd=working_directory, timeout=180, as_user=self._as_user
        )

    async def is_running(self) -> bool:
        result = await self._runner.run(
            ["docker", "ps", "--filter", f"name=^{self._container}$", "--format", "{{.Names}}"]
        )
        if not result.ok:
            return False
        return self._container in {line.strip() for line in result.stdout.splitlines()}

    async def restart_daemon(self) -> CommandResult:
        return await self._runner.run(["systemctl", "restart", "docker"], timeout=120)


@dataclass
class LaunchResult:
    state: LaunchState = LaunchState.PULLING
    attempts: int = 0
    daemon_restarts: int = 0
    transitions: list[LaunchState] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "daemon_restarts": self.daemon_restarts,
            "failures": self.failures,
        }


class WorkloadLauncher:
    """Runs the pull/start/verify cycle until healthy or out of attempts."""

    def __init__(
        self,
        operations: WorkloadOperations,
        container_name: str,
        settle_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ops = operations
        self._container = container_name
        self._settle = settle_seconds
        self._sleep = sleep
        self.result = LaunchResult()

    @property
    def state(self) -> LaunchState:
        return self.result.state

    def _transition(self, state: LaunchState) -> None:
        self.result.state = state
        self.result.transitions.append(state)
        log.debug("launch_state", state=state.value, attempt=self.result.attempts)

    async def start(
        self, working_directory: Path, max_attempts: int = 3, base_delay: float = 10.0
    ) -> LaunchResult:
        """Return once the container is verified running, else raise."""
        self.result = LaunchResult()
        result = self.result

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            failure = await self._attempt(working_directory, attempt)
            if failure is None:
                self._transition(LaunchState.HEALTHY)
                log.info("launch_healthy", container=self._container, attempts=attempt)
                return result

            result.failures.append(f"attempt {attempt}: {failure}")
            log.warning(
                "launch_attempt_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                reason=failure,
            )
            if attempt < max_attempts:
                self._transition(LaunchState.RETRYING)
                await self._sleep(base_delay)

        self._transition(LaunchState.FAILED)
        raise LaunchExhaustedError(
            f"Failed to start {self._container} after {max_attempts} attempts",
            step="launch",
            hints=[
                *CONNECTIVITY_HINTS,
                f"Check container logs: docker logs {self._container}",
                *result.failures,
            ],
        )

    async def _attempt(self, working_directory: Path, attempt: int) -> str | None:
        """One pull/start/verify pass; returns a failure reason or None."""
        self._transition(LaunchState.PULLING)
        pulled = await self._ops.pull(working_directory)
        if not pulled.ok:
            kind = classify_failure(pulled.output)
            if kind is FailureKind.NETWORK and attempt == CORRECTIVE_ATTEMPT:
                await self._corrective_restart()
            return f"image pull failed ({kind.value}): {pulled.stderr.strip()[:200]}"

        self._transition(LaunchState.STARTING)
        started = await self._ops.up(working_directory)
        if not started.ok:
            return f"start command failed: {started.stderr.strip()[:200]}"

        await self._sleep(self._settle)
        self._transition(LaunchState.VERIFYING)
        if not await self._ops.is_running():
            return f"container {self._container} is not running after start"
        return None

    async def _corrective_restart(self) -> None:
        log.warning("launch_restarting_docker_daemon", reason="network failure during pull")
        self.result.daemon_restarts += 1
        restarted = await self._ops.restart_daemon()
        if not restarted.ok:
            log.warning("launch_daemon_restart_failed", error=restarted.stderr.strip()[:200])
