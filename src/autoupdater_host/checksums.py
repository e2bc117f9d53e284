"""Pinned SHA-256 digests for the helper scripts.

The manifest is the usual ``sha256sum`` layout::

    # SHA256 checksums for dependent scripts
    fb04af86...aed1  install-updater.sh

The trusted copy ships inside this package (``ChecksumStore.pinned``) so a
manifest sitting next to the scripts can never vouch for them.

The workspace manifest is regenerated from the local scripts whenever
they change, and the install script is rendered from its template with
the same digests substituted for ``{{NAME_CHECKSUM}}`` placeholders.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from importlib.resources import files
from pathlib import Path

from autoupdater_host.constants import CHECKSUMS_FILE, INSTALL_SCRIPT_FILE, INSTALL_TEMPLATE_FILE
from autoupdater_host.errors import IntegrityError, ValidationError
from autoupdater_host.logging import get_logger
from autoupdater_host.utils import atomic_write_text, sha256_file

log = get_logger("autoupdater_host.checksums")

DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")
_PLACEHOLDER_RE = re.compile(r"\{\{[A-Z0-9_]+\}\}")


def is_digest(value: str) -> bool:
    return bool(DIGEST_RE.match(value))


def placeholder_for(name: str) -> str:
    """``install-updater.sh`` -> ``INSTALL_UPDATER_CHECKSUM``."""
    stem = name.rsplit(".", 1)[0] if name.endswith(".sh") else name
    return re.sub(r"[^A-Za-z0-9]+", "_", stem).upper() + "_CHECKSUM"


class ChecksumStore:
    """Expected digest per artifact name."""

    def __init__(self, digests: Mapping[str, str] | None = None) -> None:
        self._digests: dict[str, str] = {}
        for name, digest in (digests or {}).items():
            self.add(name, digest)

    def add(self, name: str, digest: str) -> None:
        digest = digest.strip().lower()
        if not is_digest(digest):
            raise ValidationError(
                f"Invalid SHA-256 digest for {name}: {digest!r}", step="checksums"
            )
        self._digests[name] = digest

    def expected(self, name: str) -> str:
        """Return the pinned digest, refusing names that were never pinned."""
        try:
            return self._digests[name]
        except KeyError:
            raise IntegrityError(
                f"No pinned checksum for {name}; refusing to use it", step="checksums"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._digests)

    def __contains__(self, name: object) -> bool:
        return name in self._digests

    def __len__(self) -> int:
        return len(self._digests)

    def as_dict(self) -> dict[str, str]:
        return dict(self._digests)

    @classmethod
    def parse(cls, text: str) -> ChecksumStore:
        """Parse ``<digest> <filename>`` lines, skipping comments and blanks."""
        store = cls()
        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 2:
                raise ValidationError(
                    f"Malformed checksum line {lineno}: {raw!r}", step="checksums"
                )
            digest, name = parts
            # sha256sum marks binary mode with a leading '*'
            store.add(name.lstrip("*"), digest)
        return store

    @classmethod
    def load(cls, path: Path) -> ChecksumStore:
        if not path.exists():
            raise IntegrityError(f"Checksum manifest not found: {path}", step="checksums")
        return cls.parse(path.read_text(encoding="utf-8"))

    @classmethod
    def pinned(cls) -> ChecksumStore:
        """The manifest released with this package."""
        resource = files("autoupdater_host").joinpath(CHECKSUMS_FILE)
        if not resource.is_file():
            raise IntegrityError("Packaged checksum manifest is missing", step="checksums")
        return cls.parse(resource.read_text(encoding="utf-8"))

    def render(self, generated_at: datetime | None = None) -> str:
        stamp = (generated_at or datetime.now(UTC)).isoformat()
        lines = [
            "# SHA256 checksums for dependent scripts",
            f"# Generated on {stamp}",
            "",
        ]
        lines.extend(f"{self._digests[name]}  {name}" for name in self.names())
        return "\n".join(lines) + "\n"

    def save(self, path: Path) -> None:
        atomic_write_text(path, self.render())


def generate_manifest(script_dir: Path, names: Iterable[str], output: Path) -> ChecksumStore:
    """Digest the local scripts and write the manifest."""
    store = ChecksumStore()
    for name in names:
        script = script_dir / name
        if not script.exists():
            raise ValidationError(f"{name} not found in {script_dir}", step="checksums")
        digest = sha256_file(script)
        store.add(name, digest)
        log.info("checksum_computed", script=name, digest=digest)
    store.save(output)
    log.info("checksum_manifest_written", path=str(output), count=len(store))
    return store


def render_template(template: Path, output: Path, placeholders: Mapping[str, str]) -> list[str]:
    """Fill ``{{KEY}}`` placeholders and write *output* as an executable.

    Returns the placeholders that remained unreplaced (empty on success).
    """
    if not template.exists():
        raise ValidationError(f"Template file not found: {template}", step="checksums")

    content = template.read_text(encoding="utf-8")
    for key, value in placeholders.items():
        content = content.replace("{{" + key + "}}", value)

    atomic_write_text(output, content, mode=0o755)

    leftover = sorted(set(_PLACEHOLDER_RE.findall(content)))
    if leftover:
        log.warning("template_placeholders_unreplaced", output=str(output), placeholders=leftover)
    else:
        log.info("template_rendered", output=str(output))
    return leftover


def regenerate(
    script_dir: Path,
    names: Iterable[str],
    extra: Mapping[str, str] | None = None,
) -> list[str]:
    """Rewrite the manifest and re-render the install script from its template."""
    store = generate_manifest(script_dir, names, script_dir / CHECKSUMS_FILE)
    placeholders = {placeholder_for(name): digest for name, digest in store.as_dict().items()}
    placeholders.update(extra or {})
    return render_template(
        script_dir / INSTALL_TEMPLATE_FILE,
        script_dir / INSTALL_SCRIPT_FILE,
        placeholders,
    )
