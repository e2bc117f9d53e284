"""Idempotent privileged host provisioning.

Nothing about the host is stored: every step re-derives from the host
itself whether it still has work to do (``detect``), performs the
mutation only when it does (``apply``), and re-asserts state that other
administrative activity may have reset (``reassert``). Re-running after
a partial failure is always safe.

Lifecycle:
1. Root and OS release checks
2. Container runtime and compose plugin
3. VPN client (advisory: unsupported releases only warn)
4. Service account, directory layout, SSH keypair
5. Workload checkout, application checkout and generated configuration
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from autoupdater_host.commands import CommandRunner
from autoupdater_host.config import Settings
from autoupdater_host.constants import (
    COMPOSE_FILE,
    DOCKER_GROUP,
    DOCKER_PACKAGES,
    DOCKER_SOCKET,
    ENV_FILE,
    KEY_BITS,
    KEY_TYPE,
    PRIVATE_KEY_NAME,
    PRODUCTION_SETTINGS_FILE,
    WORKLOAD_COMPOSE_REPO_URL,
)
from autoupdater_host.errors import ProvisioningError
from autoupdater_host.logging import get_logger
from autoupdater_host.models import InstallRequest, WorkloadConfiguration
from autoupdater_host.reconciler import (
    ComposeDefaultFormat,
    ComposeImageFormat,
    FirstMatchFormat,
    ReconcileReport,
    VersionBinding,
    VersionReconciler,
)
from autoupdater_host.utils import atomic_write_text
from autoupdater_host.versioning import VersionTag

log = get_logger("autoupdater_host.provisioner")

OS_RELEASE_PATH = Path("/etc/os-release")
DOCKER_KEYRING = Path("/etc/apt/keyrings/docker.asc")
DOCKER_SOURCES = Path("/etc/apt/sources.list.d/docker.list")
DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"


class StepState(Enum):
    PRESENT = "present"
    ABSENT = "absent"


class StepOutcome(Enum):
    ALREADY_PRESENT = "already_present"
    APPLIED = "applied"
    DEGRADED = "degraded"


# ---------------------------------------------------------------------------
# OS release and VPN variant selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OsRelease:
    """The fields of ``/etc/os-release`` this tool cares about."""

    id: str
    version_id: str
    version_codename: str = ""

    @classmethod
    def parse(cls, text: str) -> OsRelease:
        values: dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, raw = line.partition("=")
            try:
                parts = shlex.split(raw)
            except ValueError:
                parts = [raw.strip("\"'")]
            values[key.strip()] = parts[0] if parts else ""
        return cls(
            id=values.get("ID", "").lower(),
            version_id=values.get("VERSION_ID", ""),
            version_codename=values.get("VERSION_CODENAME", values.get("UBUNTU_CODENAME", "")),
        )

    @property
    def version_tuple(self) -> tuple[int, ...] | None:
        try:
            return tuple(int(p) for p in self.version_id.split("."))
        except ValueError:
            return None


@dataclass(frozen=True)
class OpenVpn:
    name: str = "openvpn"
    packages: tuple[str, ...] = ("openvpn", "easy-rsa")
    probe: tuple[str, ...] = ("openvpn", "--version")


@dataclass(frozen=True)
class WireGuard:
    name: str = "wireguard"
    packages: tuple[str, ...] = ("wireguard", "wireguard-tools")
    probe: tuple[str, ...] = ("wg", "--version")


@dataclass(frozen=True)
class UnsupportedVpn:
    release: str
    name: str = "unsupported"


VpnVariant = OpenVpn | WireGuard | UnsupportedVpn


def select_vpn_variant(release: OsRelease) -> VpnVariant:
    """Pick the VPN client for an Ubuntu release.

    20.04 up to (not including) 22.04 gets OpenVPN; 22.04 through 24.04
    gets WireGuard; anything else is explicitly unsupported.
    """
    version = release.version_tuple
    if release.id != "ubuntu" or version is None:
        return UnsupportedVpn(release=f"{release.id} {release.version_id}".strip())
    if (20, 4) <= version < (22, 4):
        return OpenVpn()
    if (22, 4) <= version <= (24, 4):
        return WireGuard()
    return UnsupportedVpn(release=f"{release.id} {release.version_id}")


# ---------------------------------------------------------------------------
# Host inspection
# ---------------------------------------------------------------------------


class HostInspector:
    """Derives host facts on demand; nothing is cached."""

    def __init__(self, runner: CommandRunner, os_release_path: Path = OS_RELEASE_PATH) -> None:
        self._runner = runner
        self._os_release_path = os_release_path

    def is_root(self) -> bool:
        return os.geteuid() == 0

    async def user_exists(self, name: str) -> bool:
        return await self._runner.succeeds(["id", "-u", name])

    def os_release(self) -> OsRelease:
        if not self._os_release_path.exists():
            raise ProvisioningError(
                f"Cannot detect OS release: {self._os_release_path} not found",
                step="os-detect",
            )
        return OsRelease.parse(self._os_release_path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class ProvisioningStep:
    """One idempotent host mutation."""

    name = "step"
    advisory = False

    async def detect(self) -> StepState:
        raise NotImplementedError

    async def apply(self) -> None:
        raise NotImplementedError

    async def reassert(self) -> None:
        """Re-apply drift-prone state on every run; no-op by default."""


async def run_step(step: ProvisioningStep) -> StepOutcome:
    """Detect, apply when absent, re-assert; advisory failures only warn."""
    try:
        state = await step.detect()
        if state is StepState.ABSENT:
            log.info("step_applying", step=step.name)
            await step.apply()
            outcome = StepOutcome.APPLIED
        else:
            log.info("step_already_present", step=step.name)
            outcome = StepOutcome.ALREADY_PRESENT
        await step.reassert()
        return outcome
    except ProvisioningError as exc:
        if not step.advisory:
            raise
        log.warning("step_degraded", step=step.name, error=exc.message)
        return StepOutcome.DEGRADED


class ServiceAccountStep(ProvisioningStep):
    name = "service-account"

    def __init__(
        self,
        runner: CommandRunner,
        inspector: HostInspector,
        account: str,
        socket_path: Path = Path(DOCKER_SOCKET),
        group: str = DOCKER_GROUP,
    ) -> None:
        self._runner = runner
        self._inspector = inspector
        self._account = account
        self._socket = socket_path
        self._group = group

    async def detect(self) -> StepState:
        if await self._inspector.user_exists(self._account):
            log.warning("service_account_exists", account=self._account)
            return StepState.PRESENT
        return StepState.ABSENT

    async def apply(self) -> None:
        await self._runner.check(
            ["useradd", "-m", "-s", "/bin/bash", self._account], step=self.name
        )
        await self._runner.check(["usermod", "-aG", self._group, self._account], step=self.name)
        log.info("service_account_created", account=self._account, group=self._group)

    async def reassert(self) -> None:
        # Socket ownership is reset whenever the daemon restarts
        if not self._socket.exists():
            return
        await self._runner.check(
            ["chown", f"root:{self._group}", str(self._socket)], step=self.name
        )
        await self._runner.check(["chmod", "660", str(self._socket)], step=self.name)


class DirectoryLayoutStep(ProvisioningStep):
    name = "directories"

    def __init__(self, runner: CommandRunner, paths: list[Path], owner: str, mode: int) -> None:
        self._runner = runner
        self._paths = paths
        self._owner = owner
        self._mode = mode

    async def detect(self) -> StepState:
        return StepState.PRESENT if all(p.is_dir() for p in self._paths) else StepState.ABSENT

    async def apply(self) -> None:
        for path in self._paths:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ProvisioningError(f"Cannot create {path}: {exc}", step=self.name) from exc

    async def reassert(self) -> None:
        for path in self._paths:
            await self._runner.check(
                ["chown", "-R", f"{self._owner}:{self._owner}", str(path)], step=self.name
            )
            await self._runner.check(["chmod", format(self._mode, "o"), str(path)], step=self.name)


class KeypairStep(ProvisioningStep):
    """SSH keypair the workload uses to run compose commands on the host.

    An existing private key is never regenerated: its public half may
    already be trusted elsewhere.
    """

    name = "keypair"

    def __init__(
        self,
        runner: CommandRunner,
        private_key: Path,
        account: str,
        authorized_keys: Path,
        comment: str,
    ) -> None:
        self._runner = runner
        self._private_key = private_key
        self._account = account
        self._authorized_keys = authorized_keys
        self._comment = comment

    @property
    def public_key(self) -> Path:
        return self._private_key.with_name(self._private_key.name + ".pub")

    async def detect(self) -> StepState:
        if self._private_key.exists():
            log.warning("ssh_key_exists", path=str(self._private_key))
            return StepState.PRESENT
        return StepState.ABSENT

    async def apply(self) -> None:
        await self._runner.check(
            [
                "ssh-keygen",
                "-t",
                KEY_TYPE,
                "-b",
                str(KEY_BITS),
                "-f",
                str(self._private_key),
                "-N",
                "",
                "-C",
                self._comment,
            ],
            step=self.name,
            as_user=self._account,
        )
        if not self.public_key.exists():
            raise ProvisioningError(
                f"ssh-keygen did not produce {self.public_key}", step=self.name
            )

        os.chmod(self._private_key, 0o600)
        os.chmod(self.public_key, 0o644)
        await self._runner.check(
            [
                "chown",
                f"{self._account}:{self._account}",
                str(self._private_key),
                str(self.public_key),
            ],
            step=self.name,
        )
        log.info("ssh_key_generated", private_key=str(self._private_key))
        await self._authorize()

    async def _authorize(self) -> None:
        """Append the public key; existing authorized keys are left intact."""
        pub = self.public_key.read_text(encoding="utf-8").strip()
        ssh_dir = self._authorized_keys.parent
        ssh_dir.mkdir(parents=True, exist_ok=True)

        existing = (
            self._authorized_keys.read_text(encoding="utf-8")
            if self._authorized_keys.exists()
            else ""
        )
        if pub in (line.strip() for line in existing.splitlines()):
            log.info("ssh_key_already_authorized", path=str(self._authorized_keys))
        else:
            with open(self._authorized_keys, "a", encoding="utf-8") as fh:
                if existing and not existing.endswith("\n"):
                    fh.write("\n")
                fh.write(pub + "\n")

        os.chmod(ssh_dir, 0o700)
        os.chmod(self._authorized_keys, 0o600)
        await self._runner.check(
            ["chown", "-R", f"{self._account}:{self._account}", str(ssh_dir)], step=self.name
        )
        log.info("ssh_key_authorized", account=self._account)


class ContainerRuntimeStep(ProvisioningStep):
    name = "docker"

    def __init__(self, runner: CommandRunner, release: OsRelease) -> None:
        self._runner = runner
        self._release = release

    async def detect(self) -> StepState:
        result = await self._runner.run(["docker", "--version"])
        if result.ok:
            log.info("docker_present", version=result.stdout.strip())
            return StepState.PRESENT
        return StepState.ABSENT

    async def apply(self) -> None:
        check = self._runner.check
        await check(["apt-get", "update"], step=self.name, timeout=600)
        await check(
            ["apt-get", "install", "-y", "ca-certificates", "curl", "gnupg", "lsb-release"],
            step=self.name,
            timeout=600,
        )
        await check(["install", "-m", "0755", "-d", str(DOCKER_KEYRING.parent)], step=self.name)
        await check(
            ["curl", "-fsSL", DOCKER_GPG_URL, "-o", str(DOCKER_KEYRING)], step=self.name
        )
        await check(["chmod", "a+r", str(DOCKER_KEYRING)], step=self.name)

        arch = (await check(["dpkg", "--print-architecture"], step=self.name)).stdout.strip()
        codename = self._release.version_codename
        if not codename:
            codename = (await check(["lsb_release", "-cs"], step=self.name)).stdout.strip()
        atomic_write_text(
            DOCKER_SOURCES,
            f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
            f"https://download.docker.com/linux/ubuntu {codename} stable\n",
            mode=0o644,
        )

        await check(["apt-get", "update"], step=self.name, timeout=600)
        await check(
            ["apt-get", "install", "-y", *DOCKER_PACKAGES], step=self.name, timeout=1200
        )
        await check(["systemctl", "enable", "--now", "docker"], step=self.name)
        log.info("docker_installed")


class ComposeStep(ProvisioningStep):
    """Detects the compose flavour; installs the plugin when neither exists."""

    name = "docker-compose"

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner
        self.command: list[str] = ["docker", "compose"]

    async def detect(self) -> StepState:
        if await self._runner.succeeds(["docker", "compose", "version"]):
            self.command = ["docker", "compose"]
            return StepState.PRESENT
        if await self._runner.succeeds(["docker-compose", "--version"]):
            self.command = ["docker-compose"]
            return StepState.PRESENT
        return StepState.ABSENT

    async def apply(self) -> None:
        await self._runner.check(
            ["apt-get", "install", "-y", "docker-compose-plugin"], step=self.name, timeout=600
        )
        self.command = ["docker", "compose"]


class VpnClientStep(ProvisioningStep):
    name = "vpn"
    advisory = True

    def __init__(self, runner: CommandRunner, variant: OpenVpn | WireGuard) -> None:
        self._runner = runner
        self._variant = variant

    async def detect(self) -> StepState:
        if await self._runner.succeeds(list(self._variant.probe)):
            log.info("vpn_present", client=self._variant.name)
            return StepState.PRESENT
        return StepState.ABSENT

    async def apply(self) -> None:
        await self._runner.check(["apt-get", "update"], step=self.name, timeout=600)
        await self._runner.check(
            ["apt-get", "install", "-y", *self._variant.packages], step=self.name, timeout=600
        )
        if isinstance(self._variant, OpenVpn):
            easy_rsa = Path("/etc/openvpn/easy-rsa")
            if not easy_rsa.exists():
                await self._runner.check(["make-cadir", str(easy_rsa)], step=self.name)
        else:
            wg_dir = Path("/etc/wireguard")
            wg_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(wg_dir, 0o700)
        log.info("vpn_installed", client=self._variant.name)


class RepositoryStep(ProvisioningStep):
    """Git checkout owned by the service account."""

    name = "repository"

    def __init__(self, runner: CommandRunner, url: str, dest: Path, owner: str) -> None:
        self._runner = runner
        self._url = url
        self._dest = dest
        self._owner = owner

    async def detect(self) -> StepState:
        return StepState.PRESENT if (self._dest / ".git").exists() else StepState.ABSENT

    async def apply(self) -> None:
        if self._dest.exists() and any(self._dest.iterdir()):
            raise ProvisioningError(
                f"{self._dest} exists, is not empty and is not a git checkout",
                step=self.name,
                hints=[f"Move {self._dest} aside and re-run the installation"],
            )
        log.info("repository_cloning", url=self._url, dest=str(self._dest))
        await self._runner.check(
            ["git", "clone", self._url, str(self._dest)],
            step=self.name,
            timeout=600,
            as_user=self._owner,
        )


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------


@dataclass
class ProvisioningReport:
    steps: dict[str, StepOutcome] = field(default_factory=dict)
    vpn: str = ""
    compose_command: list[str] = field(default_factory=lambda: ["docker", "compose"])
    remote_access_ok: bool | None = None

    def record(self, name: str, outcome: StepOutcome) -> None:
        self.steps[name] = outcome

    def to_dict(self) -> dict[str, object]:
        return {
            "steps": {name: outcome.value for name, outcome in self.steps.items()},
            "vpn": self.vpn,
            "compose_command": " ".join(self.compose_command),
            "remote_access_ok": self.remote_access_ok,
        }


class PrivilegedProvisioner:
    """Host mutations required before the AutoUpdater container can run."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        inspector: HostInspector | None = None,
        home_root: Path = Path("/home"),
        socket_path: Path = Path(DOCKER_SOCKET),
    ) -> None:
        self._settings = settings
        self._runner = runner
        self._inspector = inspector or HostInspector(runner)
        self._home_root = home_root
        self._socket_path = socket_path
        self.report = ProvisioningReport()

    @property
    def account(self) -> str:
        return self._settings.service_account

    @property
    def private_key(self) -> Path:
        return self._settings.ssh_dir / PRIVATE_KEY_NAME

    def require_root(self) -> None:
        if not self._inspector.is_root():
            raise ProvisioningError(
                "This command must be run as root", step="preflight", hints=["Re-run with sudo"]
            )

    def detect_os(self) -> OsRelease:
        release = self._inspector.os_release()
        if release.id != "ubuntu":
            raise ProvisioningError(
                f"Only Ubuntu is supported (detected {release.id or 'unknown'})",
                step="os-detect",
            )
        log.info("os_detected", id=release.id, version=release.version_id)
        return release

    async def _run(self, step: ProvisioningStep) -> StepOutcome:
        outcome = await run_step(step)
        self.report.record(step.name, outcome)
        return outcome

    async def ensure_container_runtime(self, release: OsRelease) -> list[str]:
        """Install docker if missing; return the compose command to use."""
        await self._run(ContainerRuntimeStep(self._runner, release))
        compose = ComposeStep(self._runner)
        await self._run(compose)
        self.report.compose_command = compose.command
        return compose.command

    async def ensure_vpn_client(self, release: OsRelease) -> VpnVariant:
        variant = select_vpn_variant(release)
        self.report.vpn = variant.name
        if isinstance(variant, UnsupportedVpn):
            log.warning("vpn_unsupported_release", release=variant.release)
            self.report.record(VpnClientStep.name, StepOutcome.DEGRADED)
            return variant
        await self._run(VpnClientStep(self._runner, variant))
        return variant

    async def docker_login(self, request: InstallRequest) -> None:
        """Log in to the private registry when credentials were supplied."""
        auth, registry = request.docker_auth, request.docker_registry_url
        if auth is None or registry is None:
            log.info("docker_login_skipped")
            return
        username = registry_username(registry, request.docker_username)
        log.info("docker_login", registry=registry, username=username)
        await self._runner.check(
            [
                "docker",
                "login",
                registry,
                "--username",
                username,
                "--password-stdin",
            ],
            step="docker-login",
            input_text=auth.get_secret_value(),
        )

    async def ensure_service_account(self, name: str | None = None) -> StepOutcome:
        return await self._run(
            ServiceAccountStep(
                self._runner, self._inspector, name or self.account, socket_path=self._socket_path
            )
        )

    async def ensure_directory_layout(
        self, paths: list[Path], owner: str | None = None, mode: int = 0o755
    ) -> StepOutcome:
        step = DirectoryLayoutStep(self._runner, paths, owner or self.account, mode)
        return await self._run(step)

    async def ensure_keypair(self, path: Path | None = None, comment: str = "") -> StepOutcome:
        step = KeypairStep(
            self._runner,
            private_key=path or self.private_key,
            account=self.account,
            authorized_keys=self._home_root / self.account / ".ssh" / "authorized_keys",
            comment=comment or f"autoupdater@{self.account}",
        )
        return await self._run(step)

    async def ensure_repository(self, url: str, dest: Path) -> StepOutcome:
        step = RepositoryStep(self._runner, url, dest, self.account)
        outcome = await run_step(step)
        self.report.record(f"repository:{dest.name}", outcome)
        return outcome

    def write_configuration(self, request: InstallRequest, workload_version: str) -> Path:
        """Write ``appsettings.Production.json`` and ``.env`` for the workload."""
        config_dir = self._settings.workload_config_dir
        config = WorkloadConfiguration(
            computer_name=request.computer_name, packages=[request.package()]
        )
        settings_path = config_dir / PRODUCTION_SETTINGS_FILE
        atomic_write_text(settings_path, config.to_json(), mode=0o640)

        env_lines = [
            f"# AutoUpdater Configuration for {request.computer_name}",
            f"SSH_USER={self.account}",
            f"HOST_ADDRESS={self._settings.host_address}",
            f"COMPUTER_NAME={request.computer_name}",
            f"AUTOUPDATER_VERSION={workload_version}",
        ]
        atomic_write_text(config_dir / ENV_FILE, "\n".join(env_lines) + "\n", mode=0o640)

        override = self._settings.data_base / "autoupdater" / "appsettings.override.json"
        if not override.exists():
            atomic_write_text(override, "{}\n", mode=0o644)

        log.info("configuration_written", path=str(settings_path))
        return settings_path

    async def pin_compose_version(self, version: VersionTag) -> ReconcileReport:
        """Point the checked-out compose file at the resolved image version.

        Advisory: a compose file without a recognisable version is left alone.
        """
        compose = self._settings.workload_config_dir / COMPOSE_FILE
        binding = VersionBinding(
            compose, FirstMatchFormat(ComposeDefaultFormat(), ComposeImageFormat())
        )
        report = await VersionReconciler().reconcile(version, [binding])
        if not report.ok:
            log.warning("compose_version_not_pinned", file=str(compose), version=str(version))
        return report

    async def provision_workload(self, request: InstallRequest, workload_version: str) -> Path:
        """Service account through generated configuration, in order."""
        settings = self._settings
        await self.ensure_service_account()
        await self.ensure_directory_layout(
            [settings.config_base, settings.workload_config_dir, settings.data_base]
        )
        await self.ensure_directory_layout([settings.ssh_dir], mode=0o700)
        await self.ensure_keypair(comment=f"autoupdater@{request.computer_name}")
        await self.ensure_repository(WORKLOAD_COMPOSE_REPO_URL, settings.workload_config_dir)
        app_dir = settings.config_base / request.app_name
        await self.ensure_repository(request.repository_url, app_dir)
        # The container runs git as root inside the application checkout
        await self._runner.check(["chown", "-R", "root:root", str(app_dir)], step="repository")
        await self.pin_compose_version(VersionTag.parse(workload_version))
        settings_path = self.write_configuration(request, workload_version)
        await self._runner.check(
            ["chown", "-R", f"{self.account}:{self.account}", str(settings.workload_config_dir)],
            step="configuration",
        )
        return settings_path

    async def validate_remote_access(self) -> bool:
        """Optional post-condition: the account can run docker over SSH."""
        result = await self._runner.run(
            [
                "ssh",
                "-i",
                str(self.private_key),
                "-o",
                "BatchMode=yes",
                "-o",
                "StrictHostKeyChecking=accept-new",
                f"{self.account}@{self._settings.host_address}",
                "docker",
                "ps",
            ],
            timeout=30,
        )
        self.report.remote_access_ok = result.ok
        if not result.ok:
            log.warning(
                "remote_access_check_failed",
                account=self.account,
                error=result.stderr.strip()[:200],
            )
        return result.ok


def registry_username(registry_url: str, explicit: str | None = None) -> str:
    """Explicit username, else the ACR registry name, else ``token``."""
    if explicit:
        return explicit
    host = registry_url.split("://", 1)[-1]
    if ".azurecr.io" in host:
        return host.split(".azurecr.io", 1)[0]
    return "token"
