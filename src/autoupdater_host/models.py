"""Typed inputs and the generated AutoUpdater configuration."""

from __future__ import annotations

import json
import re
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from autoupdater_host.errors import ValidationError

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_registry_pair(credential: SecretStr | None, url: str | None) -> None:
    has_credential = credential is not None and bool(credential.get_secret_value())
    if has_credential and not url:
        raise ValueError("docker-registry-url must be provided when docker-auth is specified")
    if url and not has_credential:
        raise ValueError("docker-auth must be provided when docker-registry-url is specified")


def _to_validation_error(exc: pydantic.ValidationError) -> ValidationError:
    messages = [str(err.get("msg", "")).removeprefix("Value error, ") for err in exc.errors()]
    return ValidationError("; ".join(messages) or str(exc), step="arguments")


class PackageDescriptor(BaseModel):
    """A Git-backed compose package the AutoUpdater service will track."""

    model_config = ConfigDict(frozen=True)

    name: str
    repository_url: str
    repository_local_path: str
    compose_subdirectory: str = "./"
    registry_credential: SecretStr | None = None
    registry_url: str | None = None

    @model_validator(mode="after")
    def _registry_both_or_neither(self) -> PackageDescriptor:
        _check_registry_pair(self.registry_credential, self.registry_url)
        return self

    def to_workload_dict(self) -> dict[str, str]:
        """Serialize with the key names the AutoUpdater service reads."""
        return {
            "RepositoryLocation": self.repository_local_path,
            "RepositoryUrl": self.repository_url,
            "DockerComposeDirectory": self.compose_subdirectory,
            "DockerAuth": (
                self.registry_credential.get_secret_value() if self.registry_credential else ""
            ),
            "DockerRegistryUrl": self.registry_url or "",
        }


class WorkloadConfiguration(BaseModel):
    """Contents of ``appsettings.Production.json``."""

    computer_name: str
    packages: list[PackageDescriptor] = Field(default_factory=list)

    def to_json(self) -> str:
        data: dict[str, Any] = {
            "ComputerName": self.computer_name,
            "Packages": [pkg.to_workload_dict() for pkg in self.packages],
        }
        return json.dumps(data, indent=2) + "\n"


class InstallRequest(BaseModel):
    """Validated arguments for a full host installation."""

    app_name: str
    repository_url: str
    computer_name: str
    docker_auth: SecretStr | None = None
    docker_registry_url: str | None = None
    docker_username: str | None = None

    @field_validator("app_name", "computer_name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        value = value.strip()
        if not _NAME_RE.match(value):
            raise ValueError(f"invalid name {value!r}: use letters, digits, '.', '_' or '-'")
        return value

    @field_validator("repository_url")
    @classmethod
    def _non_empty_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("git-compose-url must not be empty")
        return value

    @field_validator("docker_registry_url", "docker_username")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        return (value.strip() or None) if value is not None else None

    @model_validator(mode="after")
    def _registry_both_or_neither(self) -> InstallRequest:
        if self.docker_auth is not None and not self.docker_auth.get_secret_value():
            self.docker_auth = None
        _check_registry_pair(self.docker_auth, self.docker_registry_url)
        return self

    @classmethod
    def build(cls, **values: Any) -> InstallRequest:
        """Validate raw CLI values, raising the package's ValidationError."""
        try:
            return cls(**values)
        except pydantic.ValidationError as exc:
            raise _to_validation_error(exc) from exc

    @property
    def has_registry_credentials(self) -> bool:
        return self.docker_auth is not None and self.docker_registry_url is not None

    def package(self, repositories_root: str = "/data") -> PackageDescriptor:
        return PackageDescriptor(
            name=self.app_name,
            repository_url=self.repository_url,
            repository_local_path=f"{repositories_root}/{self.app_name}",
            registry_credential=self.docker_auth,
            registry_url=self.docker_registry_url,
        )
