"""Configuration management for the AutoUpdater host tooling."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from autoupdater_host.constants import (
    DEFAULT_ARTIFACT_BASE_URL,
    DEFAULT_REGISTRY_TAGS_URL,
    DEFAULT_WORKLOAD_VERSION,
)


class Settings(BaseSettings):
    """Settings loaded from ``AUTOUPDATER_*`` environment variables.

    Built once by the CLI and handed to every component explicitly.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOUPDATER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Output
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    verbose: bool = Field(default=False, description="Show command output and debug events")
    json_output: bool = Field(default=False, description="Emit JSON log lines")

    # AutoUpdater service
    base_url: str = Field(
        default="http://localhost:8080", description="Root URL of the AutoUpdater service"
    )
    container_name: str = Field(default="autoupdater", description="Workload container name")
    workload_version: str = Field(
        default=DEFAULT_WORKLOAD_VERSION, description="AutoUpdater image version to deploy"
    )
    http_timeout: float = Field(default=30.0, description="HTTP timeout in seconds")

    # Trusted origins
    artifact_base_url: str = Field(
        default=DEFAULT_ARTIFACT_BASE_URL, description="Base URL for helper scripts"
    )
    registry_tags_url: str = Field(
        default=DEFAULT_REGISTRY_TAGS_URL, description="Container registry tag listing"
    )

    # Host layout
    script_dir: Path = Field(default=Path("."), description="Directory holding helper scripts")
    checksums_manifest: Path | None = Field(
        default=None, description="Trusted manifest used instead of the packaged one"
    )
    config_base: Path = Field(default=Path("/var/docker/configuration"))
    data_base: Path = Field(default=Path("/var/docker/data"))
    service_account: str = Field(default="deploy", description="Service account name")
    host_address: str = Field(default="172.17.0.1", description="Docker bridge host address")

    # Launch and health retry budgets
    launch_max_attempts: int = Field(default=3, ge=1)
    launch_retry_delay: float = Field(default=10.0, ge=0)
    launch_settle_seconds: float = Field(default=5.0, ge=0)
    health_max_attempts: int = Field(default=30, ge=1)
    health_retry_delay: float = Field(default=10.0, ge=0)
    verify_remote_access: bool = Field(
        default=False, description="Check the service account can run docker over SSH"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def api_base_url(self) -> str:
        """Get the AutoUpdater REST API root."""
        return f"{self.base_url.rstrip('/')}/api"

    @property
    def workload_config_dir(self) -> Path:
        """Directory holding the AutoUpdater compose checkout and its settings."""
        return self.config_base / "autoupdater"

    @property
    def ssh_dir(self) -> Path:
        """Directory holding the AutoUpdater SSH keypair."""
        return self.data_base / "autoupdater" / ".ssh"

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.verbose else self.log_level
