"""Semantic versions for the AutoUpdater image and its release tags.

Only strict ``MAJOR.MINOR.PATCH`` values are accepted. Ordering is by
numeric tuple, so ``1.10.0`` sorts after ``1.9.9``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import httpx

from autoupdater_host.errors import NetworkError, ValidationError
from autoupdater_host.logging import get_logger
from autoupdater_host.utils import atomic_write_text

log = get_logger("autoupdater_host.versioning")

_SEMVER_RE = re.compile(r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)$")
_TAG_RE = re.compile(r"^v(?P<version>\d+\.\d+\.\d+)$")


class Increment(Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"

    @classmethod
    def coerce(cls, value: str | Increment | None) -> Increment:
        """Map free-form input to an increment class; unknown values mean patch."""
        if isinstance(value, Increment):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.PATCH


@dataclass(frozen=True, order=True)
class VersionTag:
    """A ``MAJOR.MINOR.PATCH`` version compared as a numeric tuple."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            raise ValidationError(f"Version components must be non-negative: {self}")

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def tag(self) -> str:
        return f"v{self}"

    @classmethod
    def parse(cls, value: str) -> VersionTag:
        """Parse a strict version string; anything else is rejected, never truncated."""
        m = _SEMVER_RE.match(value.strip()) if isinstance(value, str) else None
        if m is None:
            raise ValidationError(
                f"Invalid version format: {value!r}. Expected format: X.Y.Z (e.g., 1.2.3)",
                step="version",
            )
        return cls(int(m.group("major")), int(m.group("minor")), int(m.group("patch")))

    @classmethod
    def try_parse(cls, value: str) -> VersionTag | None:
        try:
            return cls.parse(value)
        except ValidationError:
            return None

    @classmethod
    def parse_tag(cls, tag: str) -> VersionTag | None:
        """Parse a ``vX.Y.Z`` git tag, or None if it does not conform."""
        m = _TAG_RE.match(tag.strip())
        return cls.parse(m.group("version")) if m else None

    def bump(self, increment: str | Increment | None = Increment.PATCH) -> VersionTag:
        kind = Increment.coerce(increment)
        if kind is Increment.MAJOR:
            return VersionTag(self.major + 1, 0, 0)
        if kind is Increment.MINOR:
            return VersionTag(self.major, self.minor + 1, 0)
        return VersionTag(self.major, self.minor, self.patch + 1)


def latest_version(tags: Iterable[str]) -> VersionTag | None:
    """Return the highest conforming version; non-conforming tags are skipped."""
    versions = [v for v in (VersionTag.try_parse(t) for t in tags) if v is not None]
    return max(versions, default=None)


def is_newer(candidate: str, current: str) -> bool:
    """Return True if *candidate* is a newer version than *current*."""
    c = VersionTag.try_parse(candidate)
    cur = VersionTag.try_parse(current)
    if c is None or cur is None:
        return False
    return c > cur


# ------------------------------------------------------------------
# Version marker file
# ------------------------------------------------------------------


def read_marker(path: Path) -> VersionTag | None:
    """Read the plain-text version marker; None when it does not exist."""
    if not path.exists():
        return None
    return VersionTag.parse(path.read_text(encoding="utf-8").rstrip("\n"))


def write_marker(path: Path, version: VersionTag) -> None:
    atomic_write_text(path, f"{version}\n")


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------


class RegistryClient:
    """Reads published image tags from the container registry."""

    def __init__(
        self,
        tags_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        page_size: int = 100,
    ) -> None:
        self._tags_url = tags_url
        self._client = client
        self._timeout = timeout
        self._page_size = page_size

    async def list_tags(self) -> list[str]:
        try:
            if self._client is not None:
                resp = await self._client.get(
                    self._tags_url, params={"page_size": self._page_size}
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(
                        self._tags_url, params={"page_size": self._page_size}
                    )
        except httpx.RequestError as exc:
            raise NetworkError(
                f"Could not reach container registry: {exc}",
                step="version",
                hints=["Check internet connectivity and DNS resolution"],
            ) from exc

        if resp.status_code != 200:
            raise NetworkError(
                f"Container registry returned HTTP {resp.status_code}", step="version"
            )

        data = resp.json()
        return [str(item.get("name", "")) for item in data.get("results", [])]

    async def latest(self) -> VersionTag:
        """Return the newest published ``X.Y.Z`` tag."""
        log.info("registry_fetching_latest", url=self._tags_url)
        latest = latest_version(await self.list_tags())
        if latest is None:
            raise NetworkError(
                "Could not fetch latest version from the container registry", step="version"
            )
        log.info("registry_latest_version", version=str(latest))
        return latest
