"""
Version updates.

``UpdateController.update`` moves the deployment to a target version:

1. Acquire the lifecycle lock.
2. Create a checkpoint.
3. Create a pre-update backup (unless skipped).
4. Copy release files over the deployment, side-archiving what they replace.
5. Merge new template keys into the environment file.
6. Set the version pointer.
7. Pull images with bounded retries.
8. Stop the stack.
9. Relaunch the stack tier by tier.
10. Run migration hooks.
11. Run the verification pass.

A failure up to step 7 leaves services untouched: files and the environment
file are reverted and the update is reported ``aborted``. From step 8 on the
update is past the point of no return. A failure there captures diagnostics
and then either rolls back to the checkpoint from step 2 or, with automatic
rollback disabled, reports ``failed`` with remediation commands.

Every step is mirrored into ``logs/update_<timestamp>.log``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from stackpilot.backup.manager import BackupManager
from stackpilot.backup.models import BackupKind
from stackpilot.config import AppConfig
from stackpilot.envfile import EnvironmentFile, EnvironmentMerger
from stackpilot.errors import (
    EXIT_CRITICAL,
    EXIT_OK,
    EXIT_RECOVERABLE,
    HealthGateTimeout,
    InternalError,
    LifecycleError,
    ValidationError,
)
from stackpilot.fsops import atomic_write_text, timestamp_slug
from stackpilot.lifecycle.checkpoints import Checkpoint, CheckpointStore, copy_from_checkpoint
from stackpilot.lifecycle.guard import StackDownGuard
from stackpilot.lifecycle.health import HealthChecker, VerificationReport
from stackpilot.lifecycle.launcher import LaunchResult, ServiceLauncher
from stackpilot.lifecycle.release_files import ReleaseFileUpdater
from stackpilot.lifecycle.rollback import RollbackController, RollbackResult
from stackpilot.locking import LockHandle, LockManager
from stackpilot.logging import get_logger, operation_log
from stackpilot.retry import retry_async
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)

# Container image tag grammar
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

DIAGNOSTIC_TAIL = 50


def validate_version_tag(version: str) -> str:
    """Reject versions that are not valid image tags."""
    if not TAG_PATTERN.match(version):
        raise ValidationError(
            f"Invalid version tag: {version!r}",
            details={"version": version},
        )
    return version


class UpdateOptions(BaseModel):
    """Switches of a single update."""

    skip_backup: bool = Field(default=False, description="Skip the pre-update backup")
    auto_rollback: bool | None = Field(
        default=None,
        description="Roll back on failure (defaults to updates.auto_rollback)",
    )
    dry_run: bool = Field(default=False, description="Report the plan only")
    health_timeout: float | None = Field(
        default=None, gt=0, description="Health timeout applied to every service"
    )
    release_dir: str | None = Field(
        default=None, description="Release files source (defaults to updates.release_dir)"
    )
    skip_file_update: bool = Field(default=False, description="Do not copy release files")
    force: bool = Field(default=False, description="Allow updating to the running version")


class UpdateResult:
    """
    Outcome of an update.

    Status is one of ``succeeded``, ``dry_run``, ``aborted`` (failed before
    services were touched), ``rolled_back``, ``rollback_failed`` or
    ``failed`` (past the point of no return, no rollback).
    """

    def __init__(
        self,
        status: str,
        from_version: str | None,
        to_version: str,
    ) -> None:
        self.status = status
        self.from_version = from_version
        self.to_version = to_version
        self.checkpoint: str | None = None
        self.backup_archive: str | None = None
        self.env_keys_added = 0
        self.files_updated: list[str] = []
        self.steps: list[str] = []
        self.warnings: list[str] = []
        self.message = ""
        self.remediation: str | None = None
        self.log_path: Path | None = None
        self.diagnostics_path: Path | None = None
        self.launch: LaunchResult | None = None
        self.verification: VerificationReport | None = None
        self.rollback: RollbackResult | None = None

    @property
    def exit_code(self) -> int:
        if self.status in ("succeeded", "dry_run"):
            return EXIT_OK
        if self.status in ("aborted", "rolled_back"):
            return EXIT_RECOVERABLE
        return EXIT_CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "checkpoint": self.checkpoint,
            "backup_archive": self.backup_archive,
            "env_keys_added": self.env_keys_added,
            "files_updated": self.files_updated,
            "steps": self.steps,
            "warnings": self.warnings,
            "message": self.message,
            "remediation": self.remediation,
            "log_path": str(self.log_path) if self.log_path else None,
            "diagnostics_path": str(self.diagnostics_path) if self.diagnostics_path else None,
            "launch": self.launch.to_dict() if self.launch else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }


class UpdateController:
    """
    Orchestrates a version transition.

    Collaborators default to instances built from ``config``; tests pass
    their own.
    """

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        locks: LockManager | None = None,
        checkpoints: CheckpointStore | None = None,
        backups: BackupManager | None = None,
        files: ReleaseFileUpdater | None = None,
        merger: EnvironmentMerger | None = None,
        launcher: ServiceLauncher | None = None,
        checker: HealthChecker | None = None,
        rollback: RollbackController | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.locks = locks or LockManager(config.deploy_path(config.locks.lock_dir))
        self.checkpoints = checkpoints or CheckpointStore(config)
        self.backups = backups or BackupManager(config, runtime, locks=self.locks)
        self.files = files or ReleaseFileUpdater(config)
        self.merger = merger or EnvironmentMerger()
        self.launcher = launcher or ServiceLauncher(
            runtime,
            poll_interval=config.launcher.poll_interval,
            stop_timeout=config.launcher.stop_timeout,
        )
        self.checker = checker or HealthChecker.from_config(runtime, config)
        self.rollback = rollback or RollbackController(
            config,
            runtime,
            locks=self.locks,
            checkpoints=self.checkpoints,
            files=self.files,
            launcher=self.launcher,
            checker=self.checker,
            install_signal_handlers=install_signal_handlers,
        )
        self.install_signal_handlers = install_signal_handlers

    @property
    def env_path(self) -> Path:
        return self.config.deploy_path(self.config.deployment.env_file)

    def _release_dir(self, options: UpdateOptions) -> Path | None:
        configured = options.release_dir or self.config.updates.release_dir
        return Path(configured) if configured else None

    def plan(self, target_version: str, options: UpdateOptions) -> list[str]:
        """Return the ordered steps an update would perform."""
        steps = [f"checkpoint ({self.checkpoints.root})"]
        if not options.skip_backup:
            steps.append(f"backup ({BackupKind.FULL.value})")
        release_dir = self._release_dir(options)
        if release_dir is not None and not options.skip_file_update:
            paths = self.files.plan(release_dir)
            steps.append(f"file_update ({', '.join(paths) or 'nothing to copy'})")
        steps.extend(
            [
                "env_merge",
                f"version_pointer ({self.config.deployment.version_key}={target_version})",
                "image_fetch",
                "stop",
                "launch",
                f"migrations ({len(self.config.updates.migrations)} hooks)",
                "verification",
            ]
        )
        return steps

    async def update(
        self,
        target_version: str,
        options: UpdateOptions | None = None,
    ) -> UpdateResult:
        """
        Update the deployment to ``target_version``.

        Args:
            target_version: Image tag to deploy.
            options: Update switches.

        Returns:
            UpdateResult describing the outcome.

        Raises:
            ValidationError: If the tag is invalid, the release directory is
                missing, or the version is already deployed without ``force``.
            StateConflictError: If another lifecycle operation holds the lock.
        """
        options = options or UpdateOptions()
        validate_version_tag(target_version)
        from_version = self.checkpoints.current_version()
        if from_version == target_version and not options.force:
            raise ValidationError(
                f"Version {target_version} is already deployed",
                details={"version": target_version, "hint": "use --force to redeploy"},
            )
        release_dir = self._release_dir(options)
        if release_dir is not None and not options.skip_file_update:
            self.files.plan(release_dir)

        if options.dry_run:
            result = UpdateResult("dry_run", from_version, target_version)
            result.steps = self.plan(target_version, options)
            result.message = "Dry run, nothing changed"
            return result

        log_path = (
            self.config.deploy_path(self.config.logging.log_dir)
            / f"update_{timestamp_slug()}.log"
        )
        with self.locks.acquire(holder="update", operation=f"update {target_version}") as lock:
            with operation_log(
                log_path,
                header={
                    "operation": "update",
                    "from_version": from_version,
                    "to_version": target_version,
                },
            ):
                result = UpdateResult("succeeded", from_version, target_version)
                result.log_path = log_path
                await self._run(lock, result, options, release_dir)
                logger.info(
                    "Update finished",
                    extra={"status": result.status, "to_version": target_version},
                )
        return result

    async def _run(
        self,
        lock: LockHandle,
        result: UpdateResult,
        options: UpdateOptions,
        release_dir: Path | None,
    ) -> None:
        target = result.to_version
        checkpoint = await self.checkpoints.create(
            self.runtime,
            kind="update",
            target_version=target,
            release_dir=release_dir,
        )
        result.checkpoint = checkpoint.name
        result.steps.append("checkpoint")

        if not options.skip_backup:
            try:
                archive = await self.backups.create(BackupKind.FULL, lock=lock)
            except LifecycleError as e:
                result.status = "aborted"
                result.message = f"Pre-update backup failed: {e.message}"
                result.remediation = "Fix the backup failure or rerun with --skip-backup."
                logger.error(
                    "Pre-update backup failed, nothing changed",
                    extra={"error": e.message, "error_code": e.error_code},
                )
                return
            result.backup_archive = str(archive.path)
            result.steps.append("backup")

        try:
            await self._prepare(result, options, release_dir)
        except LifecycleError as e:
            logger.error(
                "Update aborted before services were touched",
                extra={"error": e.message, "error_code": e.error_code},
            )
            self._revert_prepared(checkpoint)
            result.status = "aborted"
            result.message = f"Update aborted: {e.message}"
            result.remediation = "Nothing was restarted. Fix the cause and retry the update."
            return
        except Exception:
            logger.exception("Update aborted by an unexpected error, reverting")
            self._revert_prepared(checkpoint)
            raise

        try:
            await self._restart(result, options)
        except LifecycleError as e:
            await self._handle_failure(lock, checkpoint, result, options, e)
            return

        result.message = f"Updated to {target}"

    async def _prepare(
        self,
        result: UpdateResult,
        options: UpdateOptions,
        release_dir: Path | None,
    ) -> None:
        """Steps 4-7: nothing here touches running services."""
        deployment = self.config.deployment
        checkpoint_name = result.checkpoint or "update"

        if release_dir is not None and not options.skip_file_update:
            result.files_updated = self.files.apply(release_dir, checkpoint_name)
            result.steps.append("file_update")

        template_dir = (
            release_dir
            if release_dir is not None and (release_dir / deployment.env_template).is_file()
            else self.config.deploy_dir
        )
        result.env_keys_added = self.merger.merge(
            template_dir / deployment.env_template, self.env_path, result.to_version
        )
        result.steps.append("env_merge")

        env = EnvironmentFile.load(self.env_path)
        env.set_value(deployment.version_key, result.to_version)
        env.save()
        result.steps.append("version_pointer")

        await retry_async(
            self.runtime.pull,
            self.config.updates.fetch_retry,
            description="Image pull",
        )
        result.steps.append("image_fetch")

    def _revert_prepared(self, checkpoint: Checkpoint) -> None:
        deploy_dir = self.config.deploy_dir
        self.files.revert(checkpoint.name)
        env_name = self.config.deployment.env_file
        if checkpoint.has(env_name):
            copy_from_checkpoint(checkpoint, env_name, deploy_dir)
        logger.info("Reverted version pointer and deployment files")

    async def _restart(self, result: UpdateResult, options: UpdateOptions) -> None:
        """Steps 8-11: past the point of no return."""
        services = self.config.services
        async with StackDownGuard(
            self.runtime,
            operation="update",
            install_signal_handlers=self.install_signal_handlers,
        ) as guard:
            await self.launcher.stop_all(services)
            result.steps.append("stop")
            result.launch = await self.launcher.launch_all(
                services, health_timeout=options.health_timeout
            )
            guard.mark_restarted()

        if not result.launch.overall_ok:
            raise HealthGateTimeout(
                f"Services failed to start: {', '.join(result.launch.failed_services)}",
                details={"failed": result.launch.failed_services},
            )
        result.steps.append("launch")
        result.warnings.extend(result.launch.warnings)

        await self._run_migrations(result)
        result.steps.append("migrations")

        result.verification = await self.checker.verify(services)
        if not result.verification.ok:
            raise HealthGateTimeout(
                "Verification failed after update",
                details={
                    "critical_failures": [
                        r.name for r in result.verification.critical_failures
                    ]
                },
            )
        result.steps.append("verification")

    async def _run_migrations(self, result: UpdateResult) -> None:
        for hook in self.config.updates.migrations:
            logger.info(
                "Running migration",
                extra={"service": hook.service, "command": hook.command},
            )
            try:
                outcome = await self.runtime.exec(
                    hook.service,
                    hook.command,
                    timeout=self.config.deployment.command_timeout,
                )
                ok, detail = outcome.ok, outcome.stderr.strip()[-300:]
            except LifecycleError as e:
                ok, detail = False, e.message
            if ok:
                continue
            if hook.required:
                raise InternalError(
                    f"Migration failed in {hook.service}",
                    details={"command": hook.command, "error": detail},
                )
            message = f"Migration in {hook.service} failed (non-fatal)"
            logger.warning(message, extra={"command": hook.command, "error": detail})
            result.warnings.append(message)

    async def _handle_failure(
        self,
        lock: LockHandle,
        checkpoint: Checkpoint,
        result: UpdateResult,
        options: UpdateOptions,
        error: LifecycleError,
    ) -> None:
        logger.error(
            "Update failed after services were stopped",
            extra={"error": error.message, "error_code": error.error_code},
        )
        result.diagnostics_path = await self._capture_diagnostics(result, error)

        auto_rollback = (
            self.config.updates.auto_rollback
            if options.auto_rollback is None
            else options.auto_rollback
        )
        restore_hint = (
            f"'stackpilot restore {result.backup_archive}'"
            if result.backup_archive
            else "'stackpilot restore <archive>'"
        )
        if not auto_rollback:
            result.status = "failed"
            result.message = f"Update failed: {error.message}"
            result.remediation = (
                f"Roll back with 'stackpilot rollback --checkpoint {checkpoint.name}' "
                f"or restore a backup with {restore_hint}."
            )
            return

        try:
            if isinstance(error, HealthGateTimeout) and result.verification is not None:
                # Services came up but failed verification; re-check after the settle delay
                rollback = await self.rollback.auto_rollback(checkpoint.name, lock=lock)
            else:
                rollback = await self.rollback.rollback(checkpoint.name, lock=lock)
        except LifecycleError as e:
            logger.critical(
                "Automatic rollback failed",
                extra={"error": e.message, "error_code": e.error_code},
            )
            result.status = "rollback_failed"
            result.message = (
                f"Update failed ({error.message}) and rollback failed: {e.message}"
            )
            result.remediation = f"Restore a backup with {restore_hint}."
            return

        result.rollback = rollback
        if rollback.status == "not_needed":
            result.status = "succeeded"
            result.message = f"Updated to {result.to_version} after settle delay"
            result.warnings.append(f"Initial verification failed: {error.message}")
        elif rollback.ok:
            result.status = "rolled_back"
            result.message = (
                f"Update failed ({error.message}); rolled back to "
                f"{rollback.restored_version or checkpoint.name}"
            )
        else:
            result.status = "rollback_failed"
            result.message = (
                f"Update failed ({error.message}) and rollback left the stack unhealthy"
            )
            result.remediation = rollback.remediation or f"Restore a backup with {restore_hint}."

    async def _capture_diagnostics(
        self,
        result: UpdateResult,
        error: LifecycleError,
    ) -> Path | None:
        path = (
            self.config.deploy_path(self.config.logging.log_dir)
            / f"update_failure_{timestamp_slug()}.log"
        )
        lines = [
            f"Update {result.from_version} -> {result.to_version} failed",
            f"Error: {error.error_code}: {error.message}",
            f"Steps completed: {', '.join(result.steps)}",
        ]
        if result.launch is not None:
            for name, outcome in result.launch.per_service.items():
                lines.append(f"  {name}: {outcome.status.value} ({outcome.message})")
        try:
            logs = await self.runtime.logs(tail=DIAGNOSTIC_TAIL)
        except LifecycleError as e:
            logs = f"<logs unavailable: {e.message}>"
        lines.extend(["", f"--- last {DIAGNOSTIC_TAIL} log lines per service ---", logs])
        try:
            atomic_write_text(path, "\n".join(lines) + "\n", mode=0o600)
        except InternalError as e:
            logger.warning("Could not write diagnostics", extra={"error": e.message})
            return None
        logger.info("Captured failure diagnostics", extra={"path": str(path)})
        return path
