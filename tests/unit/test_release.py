"""Tests for version maintenance and release tagging."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoupdater_host.errors import ValidationError
from autoupdater_host.release import ReleaseManager, VersionManager, plan_release
from autoupdater_host.versioning import VersionTag

COMPOSE = "services:\n  autoupdater:\n    image: modelingevolution/autoupdater:1.0.42\n"
TEMPLATE = 'AUTOUPDATER_VERSION="1.0.42"\nLOGGING_CHECKSUM="{{LOGGING_CHECKSUM}}"\n'


def _layout(root: Path) -> None:
    (root / "autoupdater.version").write_text("1.0.42\n")
    (root / "docker-compose.yml").write_text(COMPOSE)
    (root / "install.template").write_text(TEMPLATE)
    (root / "logging.sh").write_text("echo log\n")


# ---------------------------------------------------------------------------
# VersionManager
# ---------------------------------------------------------------------------


class TestVersionManager:
    @pytest.mark.asyncio
    async def test_set_updates_files_and_regenerates(self, tmp_path: Path) -> None:
        _layout(tmp_path)
        manager = VersionManager(tmp_path)

        report = await manager.set("1.0.43")

        assert report.ok
        assert manager.current() == VersionTag(1, 0, 43)
        assert "autoupdater:1.0.43" in (tmp_path / "docker-compose.yml").read_text()
        install = (tmp_path / "install.sh").read_text()
        assert 'AUTOUPDATER_VERSION="1.0.43"' in install
        assert "{{LOGGING_CHECKSUM}}" not in install
        assert (tmp_path / "checksums.txt").exists()

    @pytest.mark.asyncio
    async def test_set_creates_missing_marker(self, tmp_path: Path) -> None:
        (tmp_path / "docker-compose.yml").write_text(COMPOSE)

        report = await VersionManager(tmp_path).set("2.0.0")

        assert (tmp_path / "autoupdater.version").read_text() == "2.0.0\n"
        assert report.ok
        assert report.regenerated is True

    @pytest.mark.asyncio
    async def test_set_rejects_bad_version(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            await VersionManager(tmp_path).set("2.0")
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_update_to_latest(self, tmp_path: Path) -> None:
        _layout(tmp_path)
        registry = MagicMock()
        registry.latest = AsyncMock(return_value=VersionTag(1, 0, 50))

        report = await VersionManager(tmp_path, registry).update_to_latest()

        assert report.target == "1.0.50"
        assert (tmp_path / "autoupdater.version").read_text() == "1.0.50\n"

    @pytest.mark.asyncio
    async def test_update_without_registry(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="No registry"):
            await VersionManager(tmp_path).update_to_latest()


# ---------------------------------------------------------------------------
# Release planning
# ---------------------------------------------------------------------------


class TestPlanRelease:
    def test_first_release(self) -> None:
        version, previous, message = plan_release([])
        assert str(previous) == "0.0.0"
        assert str(version) == "0.0.1"
        assert message == "Release v0.0.1"

    def test_bump_from_latest_tag(self) -> None:
        tags = ["v1.2.3", "v1.10.0", "junk", "v1.9.9"]
        version, previous, _ = plan_release(tags, increment="minor")
        assert str(previous) == "1.10.0"
        assert str(version) == "1.11.0"

    def test_explicit_version_and_message(self) -> None:
        version, _, message = plan_release(["v1.0.0"], explicit="3.0.0", message="Big one")
        assert str(version) == "3.0.0"
        assert message == "Big one"

    def test_existing_tag_rejected(self) -> None:
        with pytest.raises(ValidationError, match="already exists"):
            plan_release(["v1.0.0"], explicit="1.0.0")


class TestReleaseManager:
    @pytest.mark.asyncio
    async def test_dry_run_does_not_tag(self, fake_runner, tmp_path: Path) -> None:
        fake_runner.on(["git", "tag", "-l"], stdout="v1.0.0\n")
        manager = ReleaseManager(tmp_path, fake_runner)

        plan = await manager.prepare(dry_run=True)
        await manager.execute(plan)

        assert plan.tag == "v1.0.1"
        assert fake_runner.calls == [["git", "tag", "-l"]]

    @pytest.mark.asyncio
    async def test_commit_tag_and_push(self, fake_runner, tmp_path: Path) -> None:
        fake_runner.on(["git", "tag", "-l"], stdout="v1.0.0\nv1.1.0\n")
        fake_runner.on(["git", "status"], stdout=" M docker-compose.yml\n")
        manager = ReleaseManager(tmp_path, fake_runner)

        plan = await manager.prepare(increment="major", update_image=False)
        await manager.execute(plan)

        assert ["git", "commit", "-m", "Release v2.0.0"] in fake_runner.calls
        assert ["git", "tag", "v2.0.0"] in fake_runner.calls
        assert fake_runner.calls[-1] == ["git", "push", "origin", "v2.0.0"]
        assert plan.steps == ["commit", "tag"]

    @pytest.mark.asyncio
    async def test_clean_tree_skips_commit(self, fake_runner, tmp_path: Path) -> None:
        manager = ReleaseManager(tmp_path, fake_runner)

        plan = await manager.prepare(update_image=False)
        await manager.execute(plan)

        assert fake_runner.commands("git", "commit") == []
        assert plan.steps == ["tag"]
