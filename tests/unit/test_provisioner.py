"""Tests for idempotent host provisioning."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from autoupdater_host.errors import ProvisioningError
from autoupdater_host.models import InstallRequest
from autoupdater_host.provisioner import (
    HostInspector,
    KeypairStep,
    OpenVpn,
    OsRelease,
    PrivilegedProvisioner,
    RepositoryStep,
    ServiceAccountStep,
    StepOutcome,
    UnsupportedVpn,
    WireGuard,
    registry_username,
    run_step,
    select_vpn_variant,
)
from autoupdater_host.versioning import VersionTag

UBUNTU_2204 = """\
PRETTY_NAME="Ubuntu 22.04.4 LTS"
NAME="Ubuntu"
VERSION_ID="22.04"
VERSION_CODENAME=jammy
ID=ubuntu
ID_LIKE=debian
"""


def _keygen_effect(argv: list[str]) -> None:
    """Emulate ssh-keygen writing both halves of the keypair."""
    private = Path(argv[argv.index("-f") + 1])
    private.parent.mkdir(parents=True, exist_ok=True)
    private.write_text("PRIVATE KEY\n")
    private.with_name(private.name + ".pub").write_text("ssh-rsa AAAAB3Nz autoupdater@HOST-1\n")


def _make_provisioner(make_settings, fake_runner, tmp_path: Path) -> PrivilegedProvisioner:
    os_release = tmp_path / "os-release"
    os_release.write_text(UBUNTU_2204)
    return PrivilegedProvisioner(
        make_settings(),
        fake_runner,
        inspector=HostInspector(fake_runner, os_release_path=os_release),
        home_root=tmp_path / "home",
        socket_path=tmp_path / "docker.sock",
    )


def _request(**overrides) -> InstallRequest:
    values = {
        "app_name": "demo",
        "repository_url": "https://example.invalid/demo.git",
        "computer_name": "HOST-1",
    }
    values.update(overrides)
    return InstallRequest.build(**values)


# ---------------------------------------------------------------------------
# OS release and VPN selection
# ---------------------------------------------------------------------------


class TestOsRelease:
    def test_parse(self) -> None:
        release = OsRelease.parse(UBUNTU_2204)
        assert release.id == "ubuntu"
        assert release.version_id == "22.04"
        assert release.version_codename == "jammy"
        assert release.version_tuple == (22, 4)

    def test_unparseable_version(self) -> None:
        assert OsRelease(id="ubuntu", version_id="rolling").version_tuple is None


class TestSelectVpnVariant:
    @pytest.mark.parametrize(
        ("version", "expected"),
        [
            ("20.04", OpenVpn),
            ("21.10", OpenVpn),
            ("22.04", WireGuard),
            ("24.04", WireGuard),
            ("24.10", UnsupportedVpn),
            ("18.04", UnsupportedVpn),
        ],
    )
    def test_ubuntu_ranges(self, version: str, expected: type) -> None:
        assert isinstance(select_vpn_variant(OsRelease("ubuntu", version)), expected)

    def test_non_ubuntu(self) -> None:
        variant = select_vpn_variant(OsRelease("debian", "12"))
        assert isinstance(variant, UnsupportedVpn)
        assert variant.release == "debian 12"


# ---------------------------------------------------------------------------
# Individual steps
# ---------------------------------------------------------------------------


class TestServiceAccountStep:
    @pytest.mark.asyncio
    async def test_existing_account_left_alone(self, fake_runner, tmp_path: Path) -> None:
        step = ServiceAccountStep(
            fake_runner, HostInspector(fake_runner), "deploy", socket_path=tmp_path / "none"
        )

        assert await run_step(step) is StepOutcome.ALREADY_PRESENT
        assert fake_runner.commands("useradd") == []

    @pytest.mark.asyncio
    async def test_creates_account_and_reasserts_socket(self, fake_runner, tmp_path) -> None:
        fake_runner.on(["id", "-u"], returncode=1)
        socket = tmp_path / "docker.sock"
        socket.touch()
        step = ServiceAccountStep(fake_runner, HostInspector(fake_runner), "deploy", socket)

        assert await run_step(step) is StepOutcome.APPLIED
        assert fake_runner.commands("useradd") == [["useradd", "-m", "-s", "/bin/bash", "deploy"]]
        assert ["usermod", "-aG", "docker", "deploy"] in fake_runner.calls
        assert ["chown", "root:docker", str(socket)] in fake_runner.calls
        assert ["chmod", "660", str(socket)] in fake_runner.calls


class TestKeypairStep:
    def _step(self, fake_runner, tmp_path: Path) -> KeypairStep:
        return KeypairStep(
            fake_runner,
            private_key=tmp_path / "ssh" / "id_rsa",
            account="deploy",
            authorized_keys=tmp_path / "home" / ".ssh" / "authorized_keys",
            comment="autoupdater@HOST-1",
        )

    @pytest.mark.asyncio
    async def test_existing_key_is_never_regenerated(self, fake_runner, tmp_path) -> None:
        key = tmp_path / "ssh" / "id_rsa"
        key.parent.mkdir()
        key.write_text("ORIGINAL\n")

        outcome = await run_step(self._step(fake_runner, tmp_path))

        assert outcome is StepOutcome.ALREADY_PRESENT
        assert fake_runner.commands("sudo", "-u", "deploy", "ssh-keygen") == []
        assert key.read_text() == "ORIGINAL\n"

    @pytest.mark.asyncio
    async def test_generates_and_authorizes(self, fake_runner, tmp_path) -> None:
        fake_runner.on(["ssh-keygen"], effect=_keygen_effect)
        auth = tmp_path / "home" / ".ssh" / "authorized_keys"
        auth.parent.mkdir(parents=True)
        auth.write_text("ssh-ed25519 EXISTING admin@laptop")

        outcome = await run_step(self._step(fake_runner, tmp_path))

        assert outcome is StepOutcome.APPLIED
        lines = auth.read_text().splitlines()
        assert lines == ["ssh-ed25519 EXISTING admin@laptop", "ssh-rsa AAAAB3Nz autoupdater@HOST-1"]
        assert auth.stat().st_mode & 0o777 == 0o600
        assert (tmp_path / "ssh" / "id_rsa").stat().st_mode & 0o777 == 0o600
        keygen = fake_runner.commands("sudo", "-u", "deploy", "ssh-keygen")[0]
        assert keygen[keygen.index("-b") + 1] == "4096"

    @pytest.mark.asyncio
    async def test_already_authorized_key_not_duplicated(self, fake_runner, tmp_path) -> None:
        fake_runner.on(["ssh-keygen"], effect=_keygen_effect)
        auth = tmp_path / "home" / ".ssh" / "authorized_keys"
        auth.parent.mkdir(parents=True)
        auth.write_text("ssh-rsa AAAAB3Nz autoupdater@HOST-1\n")

        await run_step(self._step(fake_runner, tmp_path))

        assert auth.read_text() == "ssh-rsa AAAAB3Nz autoupdater@HOST-1\n"

    @pytest.mark.asyncio
    async def test_missing_public_key_is_error(self, fake_runner, tmp_path) -> None:
        with pytest.raises(ProvisioningError, match="did not produce"):
            await run_step(self._step(fake_runner, tmp_path))


class TestRepositoryStep:
    @pytest.mark.asyncio
    async def test_existing_checkout_is_present(self, fake_runner, tmp_path) -> None:
        (tmp_path / "app" / ".git").mkdir(parents=True)
        step = RepositoryStep(fake_runner, "https://example.invalid/a.git", tmp_path / "app", "u")

        assert await run_step(step) is StepOutcome.ALREADY_PRESENT
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_non_empty_non_repo_refused(self, fake_runner, tmp_path) -> None:
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "stray.txt").write_text("x")
        step = RepositoryStep(fake_runner, "https://example.invalid/a.git", tmp_path / "app", "u")

        with pytest.raises(ProvisioningError, match="not a git checkout"):
            await run_step(step)

    @pytest.mark.asyncio
    async def test_clones_as_owner(self, fake_runner, tmp_path) -> None:
        dest = tmp_path / "app"
        step = RepositoryStep(fake_runner, "https://example.invalid/a.git", dest, "deploy")

        assert await run_step(step) is StepOutcome.APPLIED
        assert fake_runner.calls == [
            ["sudo", "-u", "deploy", "git", "clone", "https://example.invalid/a.git", str(dest)]
        ]


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------


class TestPrivilegedProvisioner:
    def test_require_root(self, make_settings, fake_runner, tmp_path) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)
        with patch.object(HostInspector, "is_root", return_value=False):
            with pytest.raises(ProvisioningError, match="must be run as root") as exc_info:
                prov.require_root()
        assert exc_info.value.step == "preflight"

    def test_detect_os_rejects_non_ubuntu(self, make_settings, fake_runner, tmp_path) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)
        (tmp_path / "os-release").write_text('ID=fedora\nVERSION_ID="40"\n')
        with pytest.raises(ProvisioningError, match="Only Ubuntu"):
            prov.detect_os()

    def test_missing_os_release(self, fake_runner, tmp_path) -> None:
        inspector = HostInspector(fake_runner, os_release_path=tmp_path / "missing")
        with pytest.raises(ProvisioningError, match="Cannot detect OS release"):
            inspector.os_release()

    @pytest.mark.asyncio
    async def test_compose_command_fallback(self, make_settings, fake_runner, tmp_path) -> None:
        fake_runner.on(["docker", "compose", "version"], returncode=1)
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)

        command = await prov.ensure_container_runtime(prov.detect_os())

        assert command == ["docker-compose"]
        assert fake_runner.commands("apt-get") == []

    @pytest.mark.asyncio
    async def test_unsupported_vpn_degrades(self, make_settings, fake_runner, tmp_path) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)

        variant = await prov.ensure_vpn_client(OsRelease("ubuntu", "25.04"))

        assert isinstance(variant, UnsupportedVpn)
        assert prov.report.steps["vpn"] is StepOutcome.DEGRADED
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_vpn_install_failure_degrades(self, make_settings, fake_runner, tmp_path) -> None:
        fake_runner.on(["wg"], returncode=1)
        fake_runner.on(["apt-get", "install"], returncode=1, stderr="E: broken")
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)

        variant = await prov.ensure_vpn_client(prov.detect_os())

        assert isinstance(variant, WireGuard)
        assert prov.report.steps["vpn"] is StepOutcome.DEGRADED

    @pytest.mark.asyncio
    async def test_docker_login_uses_stdin(self, make_settings, fake_runner, tmp_path) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)
        req = _request(docker_auth="s3cret", docker_registry_url="acme.azurecr.io")

        await prov.docker_login(req)

        login = fake_runner.commands("docker", "login")[0]
        assert login == [
            "docker", "login", "acme.azurecr.io", "--username", "acme", "--password-stdin"
        ]
        assert "s3cret" not in login
        assert "s3cret" in fake_runner.inputs

    @pytest.mark.asyncio
    async def test_docker_login_skipped(self, make_settings, fake_runner, tmp_path) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)
        await prov.docker_login(_request())
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_provision_workload(self, make_settings, fake_runner, tmp_path) -> None:
        fake_runner.on(["ssh-keygen"], effect=_keygen_effect)
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)
        settings = make_settings()

        settings_path = await prov.provision_workload(_request(), "1.0.42")

        config = json.loads(settings_path.read_text())
        assert config["ComputerName"] == "HOST-1"
        assert config["Packages"][0]["RepositoryUrl"] == "https://example.invalid/demo.git"
        env = (settings.workload_config_dir / ".env").read_text()
        assert "AUTOUPDATER_VERSION=1.0.42" in env
        assert "SSH_USER=deploy" in env
        assert (settings.ssh_dir / "id_rsa").exists()
        clones = [c for c in fake_runner.calls if "clone" in c]
        assert len(clones) == 2
        assert ["chown", "-R", "root:root", str(settings.config_base / "demo")] in fake_runner.calls

    @pytest.mark.asyncio
    async def test_pin_compose_version_rewrites_image_tag(
        self, make_settings, fake_runner, tmp_path
    ) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)
        compose = make_settings().workload_config_dir / "docker-compose.yml"
        compose.parent.mkdir(parents=True)
        compose.write_text(
            "services:\n  autoupdater:\n    image: modelingevolution/autoupdater:1.0.42\n"
        )

        report = await prov.pin_compose_version(VersionTag(1, 0, 44))

        assert report.updated == ["docker-compose.yml"]
        assert "image: modelingevolution/autoupdater:1.0.44\n" in compose.read_text()

    @pytest.mark.asyncio
    async def test_pin_compose_version_without_compose_file_only_warns(
        self, make_settings, fake_runner, tmp_path
    ) -> None:
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)

        report = await prov.pin_compose_version(VersionTag(1, 0, 44))

        assert report.failed == ["docker-compose.yml"]

    @pytest.mark.asyncio
    async def test_remote_access_failure_only_warns(
        self, make_settings, fake_runner, tmp_path
    ) -> None:
        fake_runner.on(["ssh"], returncode=255, stderr="Permission denied")
        prov = _make_provisioner(make_settings, fake_runner, tmp_path)

        assert await prov.validate_remote_access() is False
        assert prov.report.remote_access_ok is False


class TestRegistryUsername:
    def test_explicit_wins(self) -> None:
        assert registry_username("acme.azurecr.io", "ci-bot") == "ci-bot"

    def test_acr_prefix(self) -> None:
        assert registry_username("https://acme.azurecr.io") == "acme"

    def test_fallback_token(self) -> None:
        assert registry_username("ghcr.io") == "token"
