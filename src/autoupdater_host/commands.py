"""Subprocess execution for host commands.

All calls to docker, git, apt, ssh and the account tools go through a
``CommandRunner`` so tests can substitute a fake without touching the host.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from autoupdater_host.errors import ProvisioningError
from autoupdater_host.logging import get_logger

log = get_logger("autoupdater_host.commands")


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr together, for failure classification."""
        return f"{self.stdout}\n{self.stderr}".strip()


class CommandRunner:
    """Runs commands as argument lists, never through a shell."""

    def __init__(self, cwd: str | Path | None = None, default_timeout: int = 120) -> None:
        self._cwd = str(cwd) if cwd is not None else None
        self._default_timeout = default_timeout

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        timeout: int | None = None,
        input_text: str | None = None,
        as_user: str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output; never raises on failure."""
        argv = list(args)
        if as_user:
            argv = ["sudo", "-u", as_user, *argv]
        timeout = timeout or self._default_timeout
        display = shlex.join(argv)
        log.debug("cmd_start", cmd=display)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input_text is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else self._cwd,
            )
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input_text.encode() if input_text is not None else None),
                timeout=timeout,
            )
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            # reap the child so no zombie outlives the runner
            await proc.wait()
            log.warning("cmd_timeout", cmd=display, timeout=timeout)
            return CommandResult(tuple(argv), 124, "", f"timed out after {timeout}s")
        except OSError as exc:
            log.warning("cmd_error", cmd=display, error=str(exc))
            return CommandResult(tuple(argv), 127, "", str(exc))

        result = CommandResult(
            tuple(argv),
            proc.returncode if proc.returncode is not None else 1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
        if not result.ok:
            log.warning(
                "cmd_failed",
                cmd=display,
                returncode=result.returncode,
                stderr=result.stderr[:500],
            )
        return result

    async def check(self, args: Sequence[str], *, step: str, **kwargs) -> CommandResult:
        """Run a command that must succeed, raising ProvisioningError otherwise."""
        result = await self.run(args, **kwargs)
        if not result.ok:
            raise ProvisioningError(
                f"Command failed ({result.returncode}): {shlex.join(result.args)}: "
                f"{result.stderr.strip()[:500]}",
                step=step,
            )
        return result

    async def succeeds(self, args: Sequence[str], **kwargs) -> bool:
        """Probe: True when the command exits 0."""
        return (await self.run(args, **kwargs)).ok
