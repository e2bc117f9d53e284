"""Shared fixtures for the AutoUpdater host tests."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from autoupdater_host.commands import CommandResult, CommandRunner
from autoupdater_host.config import Settings

Responder = Callable[[list[str]], CommandResult | None]


class FakeRunner(CommandRunner):
    """Records every command and answers from registered prefixes.

    Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self._rules: list[tuple[tuple[str, ...], Responder]] = []

    def on(
        self,
        prefix: Sequence[str],
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Callable[[list[str]], None] | None = None,
    ) -> None:
        def _respond(argv: list[str]) -> CommandResult:
            if effect is not None:
                effect(argv)
            return CommandResult(tuple(argv), returncode, stdout, stderr)

        self._rules.insert(0, (tuple(prefix), _respond))

    def commands(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        timeout: int | None = None,
        input_text: str | None = None,
        as_user: str | None = None,
    ) -> CommandResult:
        argv = list(args)
        if as_user:
            argv = ["sudo", "-u", as_user, *argv]
        self.calls.append(argv)
        self.inputs.append(input_text)

        unwrapped = list(args)
        for prefix, respond in self._rules:
            if tuple(unwrapped[: len(prefix)]) == prefix:
                result = respond(argv)
                if result is not None:
                    return result
        return CommandResult(tuple(argv), 0, "", "")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings rooted in tmp_path, isolated from the real environment."""

    def _make(**overrides) -> Settings:
        script_dir = tmp_path / "scripts"
        script_dir.mkdir(exist_ok=True)
        defaults = {
            "_env_file": None,
            "script_dir": script_dir,
            "config_base": tmp_path / "configuration",
            "data_base": tmp_path / "data",
            "launch_retry_delay": 0,
            "launch_settle_seconds": 0,
            "health_retry_delay": 0,
        }
        defaults.update(overrides)
        return Settings(**defaults)

    return _make
