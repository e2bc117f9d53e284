"""Version maintenance and release tagging for the compose repository.

``VersionManager`` backs the ``version check|update|set`` commands: it
resolves a target version (explicit or latest from the registry) and
pushes it through the reconciler, regenerating the install script from
its template once every binding has been processed.

``ReleaseManager`` computes the next ``vX.Y.Z`` tag, optionally bumps the
pinned image version, commits and pushes the tag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from autoupdater_host.checksums import regenerate
from autoupdater_host.commands import CommandRunner
from autoupdater_host.constants import (
    DEPENDENT_SCRIPTS,
    INSTALL_TEMPLATE_FILE,
    VERSION_MARKER_FILE,
)
from autoupdater_host.errors import ValidationError
from autoupdater_host.logging import get_logger
from autoupdater_host.reconciler import (
    ReconcileReport,
    VersionReconciler,
    default_bindings,
)
from autoupdater_host.versioning import (
    Increment,
    RegistryClient,
    VersionTag,
    read_marker,
    write_marker,
)

log = get_logger("autoupdater_host.release")


class VersionManager:
    """Keeps ``autoupdater.version`` and everything derived from it in step."""

    def __init__(self, script_dir: Path, registry: RegistryClient | None = None) -> None:
        self._script_dir = script_dir
        self._registry = registry

    @property
    def marker_path(self) -> Path:
        return self._script_dir / VERSION_MARKER_FILE

    def current(self) -> VersionTag | None:
        return read_marker(self.marker_path)

    async def update_to_latest(self) -> ReconcileReport:
        if self._registry is None:
            raise ValidationError("No registry configured for version lookup", step="version")
        latest = await self._registry.latest()
        log.info("version_latest_found", version=str(latest))
        return await self.set(latest)

    async def set(self, version: VersionTag | str) -> ReconcileReport:
        target = version if isinstance(version, VersionTag) else VersionTag.parse(version)
        log.info("version_updating", target=str(target))

        if not self.marker_path.exists():
            write_marker(self.marker_path, target)

        reconciler = VersionReconciler(regenerate=self._regenerate_install_script)
        report = await reconciler.reconcile(target, default_bindings(self._script_dir))
        if not report.ok:
            log.warning("version_update_incomplete", failed=report.failed)
        return report

    def _regenerate_install_script(self) -> None:
        if not (self._script_dir / INSTALL_TEMPLATE_FILE).exists():
            log.debug("version_no_template", script_dir=str(self._script_dir))
            return
        names = [n for n in DEPENDENT_SCRIPTS if (self._script_dir / n).exists()]
        regenerate(self._script_dir, names)


@dataclass
class ReleasePlan:
    version: VersionTag
    previous: VersionTag
    message: str
    update_image: bool = True
    dry_run: bool = False
    steps: list[str] = field(default_factory=list)

    @property
    def tag(self) -> str:
        return self.version.tag

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": str(self.version),
            "previous": str(self.previous),
            "tag": self.tag,
            "message": self.message,
            "update_image": self.update_image,
            "dry_run": self.dry_run,
            "steps": self.steps,
        }


def plan_release(
    existing_tags: list[str],
    explicit: str | None = None,
    increment: str | Increment | None = Increment.PATCH,
    message: str | None = None,
) -> tuple[VersionTag, VersionTag, str]:
    """Resolve the release version from existing ``vX.Y.Z`` tags.

    Returns ``(version, previous_latest, message)``.
    """
    tagged = [v for v in (VersionTag.parse_tag(t) for t in existing_tags) if v is not None]
    previous = max(tagged, default=VersionTag(0, 0, 0))
    version = VersionTag.parse(explicit) if explicit else previous.bump(increment)
    if version.tag in {t.strip() for t in existing_tags}:
        raise ValidationError(f"Tag {version.tag} already exists", step="release")
    return version, previous, message or f"Release {version.tag}"


class ReleaseManager:
    """Tags a release of the compose repository."""

    def __init__(
        self,
        repo_dir: Path,
        runner: CommandRunner,
        versions: VersionManager | None = None,
    ) -> None:
        self._repo_dir = repo_dir
        self._runner = runner
        self._versions = versions

    async def _git(self, *args: str) -> str:
        result = await self._runner.check(["git", *args], step="release", cwd=self._repo_dir)
        return result.stdout

    async def prepare(
        self,
        explicit: str | None = None,
        increment: str | Increment | None = Increment.PATCH,
        message: str | None = None,
        update_image: bool = True,
        dry_run: bool = False,
    ) -> ReleasePlan:
        tags = (await self._git("tag", "-l")).splitlines()
        version, previous, msg = plan_release(tags, explicit, increment, message)
        plan = ReleasePlan(
            version=version,
            previous=previous,
            message=msg,
            update_image=update_image,
            dry_run=dry_run,
        )
        log.info("release_planned", **plan.to_dict())
        return plan

    async def execute(self, plan: ReleasePlan) -> ReleasePlan:
        if plan.dry_run:
            log.info("release_dry_run", tag=plan.tag)
            return plan

        if plan.update_image and self._versions is not None:
            report = await self._versions.update_to_latest()
            if not report.ok:
                raise ValidationError(
                    f"Image version update failed for {', '.join(report.failed)}",
                    step="release",
                )
            plan.steps.append("update_image")

        if (await self._git("status", "--porcelain")).strip():
            await self._git("add", ".")
            await self._git("commit", "-m", plan.message)
            plan.steps.append("commit")
        else:
            log.warning("release_nothing_to_commit")

        await self._git("tag", plan.tag)
        await self._git("push", "origin", plan.tag)
        plan.steps.append("tag")
        log.info("release_complete", tag=plan.tag)
        return plan
