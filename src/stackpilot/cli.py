"""
Command line interface for stackpilot.

Usage:
    stackpilot [--config PATH] [--deploy-dir DIR] [--log-level LEVEL] <command> ...

Commands:
    install         First-time installation (resumable)
    update          Update to a new version
    rollback        Roll back to a checkpoint, list or verify checkpoints
    backup          Create or list backup archives
    verify-backup   Verify a backup archive
    restore         Restore from a backup archive
    health-check    Run the verification pass

Exit codes:
    0  success
    1  recoverable or non-critical failure
    2  critical failure
    3  invalid invocation or configuration
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, NoReturn

from pydantic import ValidationError as PydanticValidationError

from stackpilot import __version__
from stackpilot.backup import BackupKind, BackupManager, IntegrityVerifier, RestoreController
from stackpilot.config import AppConfig, load_config
from stackpilot.errors import (
    EXIT_CRITICAL,
    EXIT_INVALID,
    EXIT_OK,
    EXIT_RECOVERABLE,
    LifecycleError,
    StateConflictError,
)
from stackpilot.lifecycle import (
    HealthChecker,
    InstallContext,
    InstallOptions,
    RollbackController,
    UpdateController,
    UpdateOptions,
    run_install,
)
from stackpilot.logging import get_logger, setup_logging
from stackpilot.runtime import ComposeRuntime, ContainerRuntime

logger = get_logger(__name__)

RuntimeFactory = Callable[[AppConfig], ContainerRuntime]
Handler = Callable[[argparse.Namespace, AppConfig, ContainerRuntime], Awaitable[int]]


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser exiting with the invalid-invocation code."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID, f"{self.prog}: error: {message}\n")


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {value!r}")
    return number


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# =============================================================================
# Command Handlers
# =============================================================================


async def _cmd_install(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    context = InstallContext(
        config,
        runtime,
        options=InstallOptions(version=args.version, domain=args.domain),
    )
    state = await run_install(context, resume=args.resume)
    print(f"Install {state.status.value}: {len(state.completed_steps)} steps completed")
    return EXIT_OK


async def _cmd_update(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    options = UpdateOptions(
        skip_backup=args.skip_backup,
        auto_rollback=False if args.no_rollback else None,
        dry_run=args.dry_run,
        health_timeout=args.timeout,
        release_dir=args.release_dir,
        skip_file_update=args.skip_file_update,
        force=args.force,
    )
    result = await UpdateController(config, runtime).update(args.version, options)

    if result.status == "dry_run":
        print(f"Update plan {result.from_version} -> {result.to_version}:")
        for index, step in enumerate(result.steps, start=1):
            print(f"  {index}. {step}")
        return result.exit_code

    print(f"Update {result.status}: {result.message}")
    if result.env_keys_added:
        print(f"  Environment keys added: {result.env_keys_added}")
    for warning in result.warnings:
        print(f"  Warning: {warning}")
    if result.log_path:
        print(f"  Log: {result.log_path}")
    if result.diagnostics_path:
        print(f"  Diagnostics: {result.diagnostics_path}")
    if result.remediation:
        print(f"  Next step: {result.remediation}")
    return result.exit_code


async def _cmd_rollback(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    controller = RollbackController(config, runtime)

    if args.list:
        checkpoints = controller.list_checkpoints()
        if not checkpoints:
            print("No checkpoints found")
            return EXIT_RECOVERABLE
        for checkpoint in checkpoints:
            manifest = checkpoint.manifest
            print(
                f"{checkpoint.name}  {manifest.created_at}  "
                f"version={manifest.source_version or '-'}  files={len(manifest.files)}"
            )
        return EXIT_OK

    if args.verify:
        report = controller.verify_checkpoint(args.checkpoint)
        _print_json(report)
        return EXIT_OK if report["intact"] else EXIT_CRITICAL

    if args.auto:
        result = await controller.auto_rollback(args.checkpoint)
    else:
        result = await controller.rollback(args.checkpoint)

    print(f"Rollback {result.status}: {result.message}")
    for warning in result.warnings:
        print(f"  Warning: {warning}")
    if result.remediation:
        print(f"  Next step: {result.remediation}")
    return result.exit_code


async def _cmd_backup(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    manager = BackupManager(config, runtime)

    if args.list:
        archives = manager.list_archives(args.kind, check=True)
        if not archives:
            print("No backups found")
            return EXIT_OK
        for archive in archives:
            print(
                f"{archive.name}  {archive.kind.value}  "
                f"{archive.size / (1024 * 1024):.1f} MiB  {archive.integrity}"
            )
        return EXIT_OK

    archive = await manager.create(args.kind or BackupKind.FULL)
    print(f"Backup created: {archive.path}")
    return EXIT_OK


async def _cmd_verify_backup(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    if args.archive:
        path = Path(args.archive)
    else:
        archives = BackupManager(config, runtime).list_archives()
        if not archives:
            raise StateConflictError(
                "No backups found",
                details={"backup_dir": str(config.deploy_path(config.backups.backup_dir))},
                remediation="Create one with 'stackpilot backup'.",
            )
        path = archives[0].path

    report = await IntegrityVerifier(runtime, config.backups).verify(
        path, test_restore=args.test_restore
    )
    if report.ok:
        print(f"{path.name}: OK ({', '.join(report.stages_passed)})")
    else:
        print(f"{path.name}: FAILED at {report.failed_stage}: {report.message}")
    for warning in report.warnings:
        print(f"  Warning: {warning}")
    return report.exit_code


async def _cmd_restore(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    result = await RestoreController(config, runtime).restore(
        args.archive, args.kind, dry_run=args.dry_run
    )
    if result.status == "dry_run":
        print(f"Would restore ({result.kind.value}) from {result.archive.name}:")
        for line in result.contents:
            print(f"  {line}")
        return result.exit_code

    print(f"Restore {result.status}: {result.message}")
    for warning in result.warnings:
        print(f"  Warning: {warning}")
    return result.exit_code


async def _cmd_health_check(
    args: argparse.Namespace, config: AppConfig, runtime: ContainerRuntime
) -> int:
    checker = HealthChecker.from_config(runtime, config)
    report = await checker.verify(config.services, include_system=True)
    if args.json:
        _print_json(report.to_dict())
    else:
        for check in report.results:
            mark = {"pass": "OK  ", "warn": "WARN", "fail": "FAIL"}[check.status]
            print(f"[{mark}] {check.name}: {check.message}")
    return report.exit_code


COMMANDS: dict[str, Handler] = {
    "install": _cmd_install,
    "update": _cmd_update,
    "rollback": _cmd_rollback,
    "backup": _cmd_backup,
    "verify-backup": _cmd_verify_backup,
    "restore": _cmd_restore,
    "health-check": _cmd_health_check,
}


# =============================================================================
# Parser
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with every sub-command."""
    parser = _ArgumentParser(
        prog="stackpilot",
        description="Lifecycle orchestrator for a single-host container stack",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--deploy-dir", type=str, help="Override the deployment directory")

    commands = parser.add_subparsers(dest="command", metavar="<command>", required=True)
    kinds = [k.value for k in BackupKind]

    install = commands.add_parser("install", help="First-time installation")
    install.add_argument("--resume", action="store_true", help="Resume a failed install")
    install.add_argument("--version", dest="version", help="Version to install")
    install.add_argument("--domain", help="Public domain name")

    update = commands.add_parser("update", help="Update to a new version")
    update.add_argument("version", help="Target version tag")
    update.add_argument("--skip-backup", action="store_true", help="Skip the pre-update backup")
    update.add_argument(
        "--no-rollback", action="store_true", help="Do not roll back automatically on failure"
    )
    update.add_argument("--dry-run", action="store_true", help="Show the plan only")
    update.add_argument(
        "--timeout", type=_positive_float, help="Health timeout in seconds for every service"
    )
    update.add_argument("--release-dir", help="Directory holding the new release files")
    update.add_argument(
        "--skip-file-update", action="store_true", help="Do not copy release files"
    )
    update.add_argument(
        "--force", action="store_true", help="Redeploy the version already running"
    )

    rollback = commands.add_parser("rollback", help="Roll back to a checkpoint")
    rollback.add_argument("--checkpoint", help="Checkpoint name (default: latest)")
    mode = rollback.add_mutually_exclusive_group()
    mode.add_argument("--list", action="store_true", help="List checkpoints")
    mode.add_argument(
        "--verify", action="store_true", help="Check a checkpoint against the deployment"
    )
    mode.add_argument(
        "--auto", action="store_true", help="Roll back only if still unhealthy after a delay"
    )

    backup = commands.add_parser("backup", help="Create or list backups")
    backup.add_argument("--kind", choices=kinds, help="Backup kind (default: full)")
    backup.add_argument("--list", action="store_true", help="List backups")

    verify = commands.add_parser("verify-backup", help="Verify a backup archive")
    verify.add_argument("archive", nargs="?", help="Archive path (default: newest)")
    verify.add_argument(
        "--test-restore",
        action="store_true",
        help="Restore into a disposable datastore container",
    )

    restore = commands.add_parser("restore", help="Restore from a backup archive")
    restore.add_argument("archive", help="Archive path")
    restore.add_argument("--kind", choices=kinds, help="What to restore (default: archive kind)")
    restore.add_argument("--dry-run", action="store_true", help="List contents only")

    health = commands.add_parser("health-check", help="Run the verification pass")
    health.add_argument("--json", action="store_true", help="Print the report as JSON")

    return parser


def _load(args: argparse.Namespace) -> AppConfig:
    overrides: dict[str, Any] = {}
    if args.deploy_dir:
        overrides["deployment"] = {"deploy_dir": args.deploy_dir}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    return load_config(args.config, overrides=overrides)


def main(
    argv: list[str] | None = None,
    *,
    runtime_factory: RuntimeFactory = ComposeRuntime,
) -> int:
    """
    Run the command line.

    Args:
        argv: Arguments (default: ``sys.argv[1:]``).
        runtime_factory: Builds the container runtime from the configuration.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_INVALID

    try:
        config = _load(args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    except PydanticValidationError as e:
        print(f"Error: invalid configuration:\n{e}", file=sys.stderr)
        return EXIT_INVALID

    setup_logging(config.logging, stream=sys.stderr)
    handler = COMMANDS[args.command]
    try:
        return asyncio.run(handler(args, config, runtime_factory(config)))
    except LifecycleError as e:
        logger.debug("Command failed", extra={"error_code": e.error_code, "details": e.details})
        print(f"Error: {e.message}", file=sys.stderr)
        remediation = getattr(e, "remediation", None)
        if remediation:
            print(f"  Next step: {remediation}", file=sys.stderr)
        return e.exit_code
    except PydanticValidationError as e:
        print(f"Error: invalid arguments:\n{e}", file=sys.stderr)
        return EXIT_INVALID
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_CRITICAL


if __name__ == "__main__":
    sys.exit(main())
