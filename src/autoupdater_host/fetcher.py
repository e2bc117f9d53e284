"""Integrity-verified fetch of the helper scripts.

A local artifact is either verified-present (its digest matches the
pinned one) or absent. Downloads land in a temp file beside the target
and are only renamed into place after the digest checks out, so an
interrupted run never leaves a truncated or tampered script behind.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import httpx

from autoupdater_host.checksums import ChecksumStore, is_digest
from autoupdater_host.errors import IntegrityError, NetworkError, ValidationError
from autoupdater_host.logging import get_logger
from autoupdater_host.utils import sha256_file, temp_sibling

log = get_logger("autoupdater_host.fetcher")

EXECUTABLE_MODE = 0o755


class FetchOutcome(Enum):
    UNCHANGED = "unchanged"
    REPLACED = "replaced"


@dataclass(frozen=True)
class Artifact:
    """A helper script pinned to a SHA-256 digest."""

    name: str
    local_path: Path
    expected_digest: str
    download_origin: str

    def __post_init__(self) -> None:
        if not is_digest(self.expected_digest):
            raise ValidationError(
                f"Invalid expected digest for {self.name}: {self.expected_digest!r}",
                step="artifacts",
            )


def build_artifacts(
    store: ChecksumStore,
    script_dir: Path,
    base_url: str,
    names: list[str] | tuple[str, ...] | None = None,
) -> list[Artifact]:
    """Create one Artifact per pinned script name."""
    base = base_url.rstrip("/")
    return [
        Artifact(
            name=name,
            local_path=script_dir / name,
            expected_digest=store.expected(name),
            download_origin=f"{base}/{name}",
        )
        for name in (names if names is not None else store.names())
    ]


class ArtifactFetcher:
    """Ensures each artifact on disk matches its pinned digest."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client
        self._timeout = timeout

    async def ensure(self, artifact: Artifact) -> FetchOutcome:
        """Verify the cached copy, downloading a fresh one only when needed."""
        path = artifact.local_path
        if path.exists():
            current = sha256_file(path)
            if current == artifact.expected_digest:
                log.debug("artifact_verified", artifact=artifact.name)
                return FetchOutcome.UNCHANGED
            log.warning(
                "artifact_checksum_mismatch",
                artifact=artifact.name,
                expected=artifact.expected_digest,
                actual=current,
            )
            # An untrusted copy must not survive a failed re-download
            path.unlink()
        else:
            log.info("artifact_missing", artifact=artifact.name, origin=artifact.download_origin)

        tmp_path = temp_sibling(path, suffix=".download")
        try:
            await self._download(artifact, tmp_path)
            downloaded = sha256_file(tmp_path)
            if downloaded != artifact.expected_digest:
                raise IntegrityError(
                    f"Downloaded {artifact.name} checksum verification failed "
                    f"(expected: {artifact.expected_digest}, got: {downloaded})",
                    step="artifacts",
                    hints=[
                        f"Verify the origin is trusted: {artifact.download_origin}",
                        "Regenerate checksums if the script was intentionally changed",
                    ],
                )
            os.chmod(tmp_path, EXECUTABLE_MODE)
            tmp_path.replace(path)
        finally:
            tmp_path.unlink(missing_ok=True)

        log.info("artifact_replaced", artifact=artifact.name)
        return FetchOutcome.REPLACED

    async def ensure_all(self, artifacts: list[Artifact]) -> dict[str, FetchOutcome]:
        """Ensure every artifact in order; the first failure aborts the run."""
        outcomes: dict[str, FetchOutcome] = {}
        for artifact in artifacts:
            outcomes[artifact.name] = await self.ensure(artifact)
        return outcomes

    async def _download(self, artifact: Artifact, target: Path) -> None:
        try:
            if self._client is not None:
                await self._stream_to(self._client, artifact, target)
            else:
                async with httpx.AsyncClient(
                    timeout=self._timeout, follow_redirects=True
                ) as client:
                    await self._stream_to(client, artifact, target)
        except httpx.HTTPError as exc:
            raise NetworkError(
                f"Failed to download {artifact.name} from {artifact.download_origin}: {exc}",
                step="artifacts",
                hints=["Check internet connectivity and that the origin is reachable"],
            ) from exc

    @staticmethod
    async def _stream_to(client: httpx.AsyncClient, artifact: Artifact, target: Path) -> None:
        async with client.stream("GET", artifact.download_origin) as resp:
            resp.raise_for_status()
            with open(target, "wb") as fh:
                async for chunk in resp.aiter_bytes():
                    fh.write(chunk)
                fh.flush()
                os.fsync(fh.fileno())
