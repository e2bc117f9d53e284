"""Command-line interface for the AutoUpdater host tooling.

Usage:
    autoupdater-host install rocket-welder https://github.com/org/app-compose.git RESRV-AI
    autoupdater-host --json install --docker-username ci app URL HOST token registry.azurecr.io
    autoupdater-host health
    autoupdater-host status rocket-welder
    autoupdater-host update rocket-welder
    autoupdater-host version set 1.0.43
    autoupdater-host release --minor --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from autoupdater_host import __version__
from autoupdater_host.bootstrap import Bootstrapper
from autoupdater_host.checksums import regenerate
from autoupdater_host.client import AutoUpdaterClient
from autoupdater_host.commands import CommandRunner
from autoupdater_host.config import Settings
from autoupdater_host.constants import DEPENDENT_SCRIPTS
from autoupdater_host.errors import AutoUpdaterError
from autoupdater_host.logging import get_logger, setup_logging
from autoupdater_host.models import InstallRequest
from autoupdater_host.release import ReleaseManager, VersionManager
from autoupdater_host.versioning import RegistryClient

log = get_logger("autoupdater_host.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoupdater-host",
        description="Install and maintain the AutoUpdater agent on this host.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--json", action="store_true", help="Output in JSON format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed output")
    parser.add_argument("--base-url", help="AutoUpdater base URL (default: http://localhost:8080)")
    parser.add_argument("--script-dir", type=Path, help="Directory holding helper scripts")

    sub = parser.add_subparsers(dest="command", required=True)

    install = sub.add_parser("install", help="Bootstrap this host and install AutoUpdater")
    install.add_argument("--docker-username", help="Registry username (overrides auto-detection)")
    install.add_argument(
        "--checksums-manifest", type=Path, help="Trusted checksum manifest (default: packaged)"
    )
    install.add_argument("app_name")
    install.add_argument("git_compose_url")
    install.add_argument("computer_name")
    install.add_argument("docker_auth", nargs="?", default="")
    install.add_argument("docker_registry_url", nargs="?", default="")

    sub.add_parser("health", help="Check AutoUpdater health")
    sub.add_parser("packages", help="List all configured packages")
    status = sub.add_parser("status", help="Get upgrade status for a package")
    status.add_argument("package")
    update = sub.add_parser("update", help="Trigger update for a specific package")
    update.add_argument("package")
    sub.add_parser("update-all", help="Trigger updates for all packages")
    sub.add_parser("debug", help="Test API connectivity")

    version = sub.add_parser("version", help="Manage the pinned AutoUpdater image version")
    version_sub = version.add_subparsers(dest="version_command", required=True)
    version_sub.add_parser("check", help="Show current version")
    version_sub.add_parser("update", help="Update to latest version from the registry")
    version_set = version_sub.add_parser("set", help="Set a specific version (e.g., 1.0.33)")
    version_set.add_argument("value")

    sub.add_parser("checksums", help="Regenerate checksums.txt and install.sh")

    release = sub.add_parser("release", help="Tag a release of the compose repository")
    release.add_argument("release_version", nargs="?", help="Semantic version (e.g., 1.2.3)")
    release.add_argument("-m", "--message", help="Commit message (default: 'Release vX.Y.Z')")
    bump = release.add_mutually_exclusive_group()
    bump.add_argument("-p", "--patch", dest="increment", action="store_const", const="patch")
    bump.add_argument("-n", "--minor", dest="increment", action="store_const", const="minor")
    bump.add_argument("-M", "--major", dest="increment", action="store_const", const="major")
    release.add_argument("--no-image-update", action="store_true")
    release.add_argument("--dry-run", action="store_true")
    release.set_defaults(increment="patch")

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.json:
        overrides["json_output"] = True
    if args.verbose:
        overrides["verbose"] = True
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.script_dir:
        overrides["script_dir"] = args.script_dir
    if getattr(args, "checksums_manifest", None):
        overrides["checksums_manifest"] = args.checksums_manifest
    return Settings(**overrides)


def _emit(data: Any) -> None:
    if data is None:
        return
    if isinstance(data, str):
        print(data)
    else:
        print(json.dumps(data, indent=2, default=str))


async def dispatch(args: argparse.Namespace, settings: Settings) -> Any:
    client = AutoUpdaterClient(settings.base_url, timeout=settings.http_timeout)
    command = args.command

    if command == "install":
        request = InstallRequest.build(
            app_name=args.app_name,
            repository_url=args.git_compose_url,
            computer_name=args.computer_name,
            docker_auth=args.docker_auth or None,
            docker_registry_url=args.docker_registry_url or None,
            docker_username=args.docker_username,
        )
        summary = await Bootstrapper(settings, client=client).run(request)
        return summary.to_dict()
    if command == "health":
        payload = await client.health()
        log.info("autoupdater_healthy")
        return payload
    if command == "packages":
        return await client.packages()
    if command == "status":
        return await client.status(args.package)
    if command == "update":
        return await client.update(args.package)
    if command == "update-all":
        return await client.update_all()
    if command == "debug":
        payload = await client.debug()
        log.info("api_connectivity_ok")
        return payload

    registry = RegistryClient(settings.registry_tags_url, timeout=settings.http_timeout)
    versions = VersionManager(settings.script_dir, registry)

    if command == "version":
        if args.version_command == "check":
            current = versions.current()
            return {"current_version": str(current) if current else "unknown"}
        if args.version_command == "update":
            report = await versions.update_to_latest()
        else:
            report = await versions.set(args.value)
        return report.to_dict()
    if command == "checksums":
        names = [n for n in DEPENDENT_SCRIPTS if (settings.script_dir / n).exists()]
        leftover = regenerate(settings.script_dir, names)
        return {"scripts": names, "unreplaced_placeholders": leftover}
    if command == "release":
        manager = ReleaseManager(settings.script_dir, CommandRunner(), versions)
        plan = await manager.prepare(
            explicit=args.release_version,
            increment=args.increment,
            message=args.message,
            update_image=not args.no_image_update,
            dry_run=args.dry_run,
        )
        return (await manager.execute(plan)).to_dict()

    raise AutoUpdaterError(f"Unknown command: {command}", step="cli")


def report_failure(exc: AutoUpdaterError) -> None:
    log.error("command_failed", step=exc.step, error=exc.message)
    for hint in exc.hints:
        log.info("remediation_hint", step=exc.step, hint=hint)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    setup_logging(settings)

    try:
        result = asyncio.run(dispatch(args, settings))
    except AutoUpdaterError as exc:
        report_failure(exc)
        if settings.json_output:
            print(json.dumps({"status": "error", "step": exc.step, "message": exc.message}))
        return 1
    except KeyboardInterrupt:
        log.warning("interrupted")
        return 130

    _emit(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
