"""Keeps the pinned AutoUpdater version consistent across artifacts.

Each binding pairs a file with a format that knows how to extract and
rewrite the embedded version. Files are updated one at a time with a
backup, an atomic rewrite and a verify-by-reread; a failed verify
restores the backup. Cross-file atomicity is best-effort: a partially
applied run is reported, never hidden.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from autoupdater_host.constants import (
    COMPOSE_FILE,
    INSTALL_TEMPLATE_FILE,
    VERSION_MARKER_FILE,
    WORKLOAD_IMAGE,
)
from autoupdater_host.logging import get_logger
from autoupdater_host.utils import atomic_write_text
from autoupdater_host.versioning import VersionTag

log = get_logger("autoupdater_host.reconciler")

BACKUP_SUFFIX = ".bak"

_VERSION = r"\d+\.\d+\.\d+"


class VersionFormat(Protocol):
    """Reads and writes a version embedded in one kind of file."""

    def extract(self, content: str) -> VersionTag | None: ...

    def write(self, content: str, version: VersionTag) -> str: ...


class MarkerFileFormat:
    """The whole file is the version, with a trailing newline."""

    def extract(self, content: str) -> VersionTag | None:
        return VersionTag.try_parse(content.rstrip("\n"))

    def write(self, content: str, version: VersionTag) -> str:
        return f"{version}\n"


class _RegexFormat:
    """Version captured by the ``version`` group of a single pattern."""

    pattern: re.Pattern[str]

    def extract(self, content: str) -> VersionTag | None:
        m = self.pattern.search(content)
        return VersionTag.try_parse(m.group("version")) if m else None

    def write(self, content: str, version: VersionTag) -> str:
        def _sub(m: re.Match[str]) -> str:
            start, end = m.span("version")
            base = m.start()
            text = m.group(0)
            return text[: start - base] + str(version) + text[end - base :]

        return self.pattern.sub(_sub, content)


class ComposeDefaultFormat(_RegexFormat):
    """``${AUTOUPDATER_VERSION:-1.0.42}`` default in a compose file."""

    def __init__(self, variable: str = "AUTOUPDATER_VERSION") -> None:
        self.pattern = re.compile(
            r"\$\{" + re.escape(variable) + r":-(?P<version>" + _VERSION + r")\}"
        )


class ComposeImageFormat(_RegexFormat):
    """``image: modelingevolution/autoupdater:1.0.42`` in a compose file."""

    def __init__(self, image: str = WORKLOAD_IMAGE) -> None:
        self.pattern = re.compile(
            r"(?m)^(\s*image:\s*)"
            + re.escape(image)
            + r":(?P<version>"
            + _VERSION
            + r")[ \t]*$"
        )


class ShellAssignmentFormat(_RegexFormat):
    """``AUTOUPDATER_VERSION="1.0.42"`` in a shell script or template."""

    def __init__(self, variable: str = "AUTOUPDATER_VERSION") -> None:
        self.pattern = re.compile(
            r"(?m)^(\s*)" + re.escape(variable) + r"=\"(?P<version>" + _VERSION + r")\""
        )


class FirstMatchFormat:
    """Delegates to the first format that finds a version in the content."""

    def __init__(self, *formats: VersionFormat) -> None:
        self._formats = formats

    def _pick(self, content: str) -> VersionFormat | None:
        for fmt in self._formats:
            if fmt.extract(content) is not None:
                return fmt
        return None

    def extract(self, content: str) -> VersionTag | None:
        fmt = self._pick(content)
        return fmt.extract(content) if fmt else None

    def write(self, content: str, version: VersionTag) -> str:
        fmt = self._pick(content)
        return fmt.write(content, version) if fmt else content


@dataclass(frozen=True)
class VersionBinding:
    path: Path
    format: VersionFormat

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    target: str
    updated: list[str] = field(default_factory=list)
    already_current: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    regenerated: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        """Some files moved to the target while others did not."""
        return bool(self.failed) and bool(self.updated)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "updated": self.updated,
            "already_current": self.already_current,
            "failed": self.failed,
            "regenerated": self.regenerated,
        }


RegenerationHook = Callable[[], Awaitable[None] | None]


class VersionReconciler:
    """Rewrites stale version bindings to a single target version."""

    def __init__(self, regenerate: RegenerationHook | None = None) -> None:
        self._regenerate = regenerate

    async def reconcile(
        self, target: VersionTag, bindings: list[VersionBinding]
    ) -> ReconcileReport:
        report = ReconcileReport(target=str(target))

        for binding in bindings:
            self._reconcile_one(target, binding, report)

        if self._regenerate is not None:
            maybe = self._regenerate()
            if maybe is not None:
                await maybe
            report.regenerated = True
            log.info("reconcile_regenerated")

        if report.partial:
            log.warning(
                "reconcile_partially_applied",
                target=report.target,
                updated=report.updated,
                failed=report.failed,
            )
        log.info("reconcile_complete", **report.to_dict())
        return report

    def _reconcile_one(
        self, target: VersionTag, binding: VersionBinding, report: ReconcileReport
    ) -> None:
        path = binding.path
        if not path.exists():
            log.warning("reconcile_file_missing", file=str(path))
            report.failed.append(binding.name)
            return

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.error("reconcile_read_failed", file=str(path), error=str(exc))
            report.failed.append(binding.name)
            return
        current = binding.format.extract(content)
        if current is None:
            log.warning("reconcile_version_not_found", file=str(path))
            report.failed.append(binding.name)
            return

        if current == target:
            report.already_current.append(binding.name)
            return

        backup = path.with_name(path.name + BACKUP_SUFFIX)
        try:
            shutil.copy2(path, backup)
        except OSError as exc:
            log.error("reconcile_backup_failed", file=str(path), error=str(exc))
            report.failed.append(binding.name)
            return
        try:
            atomic_write_text(path, binding.format.write(content, target))
            written = binding.format.extract(path.read_text(encoding="utf-8"))
        except OSError as exc:
            log.error("reconcile_write_failed", file=str(path), error=str(exc))
            written = None

        if written != target:
            backup.replace(path)
            log.error(
                "reconcile_verify_failed_restored",
                file=str(path),
                expected=str(target),
            )
            report.failed.append(binding.name)
            return

        backup.unlink(missing_ok=True)
        log.info("reconcile_updated", file=str(path), old=str(current), new=str(target))
        report.updated.append(binding.name)


def default_bindings(script_dir: Path) -> list[VersionBinding]:
    """Bindings for the files that embed the AutoUpdater image version."""
    bindings = [
        VersionBinding(script_dir / VERSION_MARKER_FILE, MarkerFileFormat()),
        VersionBinding(
            script_dir / COMPOSE_FILE,
            FirstMatchFormat(ComposeDefaultFormat(), ComposeImageFormat()),
        ),
    ]
    template = script_dir / INSTALL_TEMPLATE_FILE
    if template.exists():
        bindings.append(VersionBinding(template, ShellAssignmentFormat()))
    return bindings
