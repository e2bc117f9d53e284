"""End-to-end host installation.

Order matters and every stage is fatal unless noted:

1. Root and OS release checks
2. Helper scripts fetched and verified against pinned checksums
3. Docker and the compose plugin
4. VPN client (advisory)
5. Private registry login (when credentials were given)
6. Service account, directories, keypair, checkouts and configuration,
   with the compose file pinned to the resolved image version (advisory)
7. AutoUpdater container launch with bounded retries
8. First deployment of the application (deferred on failure)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from autoupdater_host.checksums import ChecksumStore
from autoupdater_host.client import AutoUpdaterClient
from autoupdater_host.commands import CommandRunner
from autoupdater_host.config import Settings
from autoupdater_host.constants import DEPENDENT_SCRIPTS, VERSION_MARKER_FILE
from autoupdater_host.deployment import DeploymentOutcome, DeploymentTrigger
from autoupdater_host.fetcher import ArtifactFetcher, build_artifacts
from autoupdater_host.launcher import ComposeWorkload, WorkloadLauncher, WorkloadOperations
from autoupdater_host.logging import get_logger
from autoupdater_host.models import InstallRequest
from autoupdater_host.provisioner import PrivilegedProvisioner
from autoupdater_host.versioning import VersionTag, read_marker

log = get_logger("autoupdater_host.bootstrap")


@dataclass
class InstallSummary:
    app: str
    computer: str
    ubuntu_version: str
    vpn: str
    workload_version: str
    configuration: str
    deployment: DeploymentOutcome
    launch_attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "success",
            "message": "Installation completed successfully",
            "app": self.app,
            "computer": self.computer,
            "ubuntu_version": self.ubuntu_version,
            "vpn": self.vpn,
            "autoupdater_version": self.workload_version,
            "configuration": self.configuration,
            "deployment": self.deployment.value,
            "launch_attempts": self.launch_attempts,
        }


class Bootstrapper:
    """Runs a full installation for one application on this host."""

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner | None = None,
        provisioner: PrivilegedProvisioner | None = None,
        fetcher: ArtifactFetcher | None = None,
        client: AutoUpdaterClient | None = None,
        workload: WorkloadOperations | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._runner = runner or CommandRunner()
        self._provisioner = provisioner or PrivilegedProvisioner(settings, self._runner)
        self._fetcher = fetcher or ArtifactFetcher(timeout=settings.http_timeout)
        self._client = client or AutoUpdaterClient(
            settings.base_url, timeout=settings.http_timeout
        )
        self._workload = workload
        self._sleep = sleep

    def resolve_workload_version(self) -> VersionTag:
        """The local version marker wins over the configured default."""
        marker = read_marker(self._settings.script_dir / VERSION_MARKER_FILE)
        return marker or VersionTag.parse(self._settings.workload_version)

    def trusted_checksums(self) -> ChecksumStore:
        """Packaged digests unless the operator names another manifest explicitly."""
        override = self._settings.checksums_manifest
        if override is None:
            return ChecksumStore.pinned()
        log.info("checksum_manifest_override", path=str(override))
        return ChecksumStore.load(override)

    async def ensure_artifacts(self) -> None:
        store = self.trusted_checksums()
        artifacts = build_artifacts(
            store, self._settings.script_dir, self._settings.artifact_base_url, DEPENDENT_SCRIPTS
        )
        outcomes = await self._fetcher.ensure_all(artifacts)
        log.info(
            "artifacts_ready",
            **{name: outcome.value for name, outcome in outcomes.items()},
        )

    async def run(self, request: InstallRequest) -> InstallSummary:
        settings = self._settings
        provisioner = self._provisioner
        log.info(
            "install_started",
            app=request.app_name,
            repository=request.repository_url,
            computer=request.computer_name,
        )

        provisioner.require_root()
        release = provisioner.detect_os()
        version = self.resolve_workload_version()

        await self.ensure_artifacts()

        compose_command = await provisioner.ensure_container_runtime(release)
        vpn = await provisioner.ensure_vpn_client(release)
        await provisioner.docker_login(request)
        settings_path = await provisioner.provision_workload(request, str(version))

        if settings.verify_remote_access:
            await provisioner.validate_remote_access()

        workload = self._workload or ComposeWorkload(
            self._runner,
            settings.container_name,
            compose_command=compose_command,
            as_user=settings.service_account,
        )
        launcher = WorkloadLauncher(
            workload,
            settings.container_name,
            settle_seconds=settings.launch_settle_seconds,
            sleep=self._sleep,
        )
        launch = await launcher.start(
            settings.workload_config_dir,
            max_attempts=settings.launch_max_attempts,
            base_delay=settings.launch_retry_delay,
        )

        trigger = DeploymentTrigger(
            self._client,
            max_attempts=settings.health_max_attempts,
            retry_delay=settings.health_retry_delay,
            sleep=self._sleep,
            container_name=settings.container_name,
        )
        deployment = await trigger.trigger_initial_deployment(request.app_name)

        summary = InstallSummary(
            app=request.app_name,
            computer=request.computer_name,
            ubuntu_version=release.version_id,
            vpn=vpn.name,
            workload_version=str(version),
            configuration=str(settings_path),
            deployment=deployment,
            launch_attempts=launch.attempts,
        )
        log.info("install_completed", **summary.to_dict())
        return summary
