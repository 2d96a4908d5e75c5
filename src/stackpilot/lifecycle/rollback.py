"""
Rollback to a checkpoint.

A rollback stops the stack, puts back the deployment files an update
replaced (its side archive), restores every path captured by the checkpoint
and relaunches the stack under the restored configuration. The live
environment file is saved as ``.env.pre-rollback`` first.

Certificates are never byte-copied: the live certificate is compared with
the fingerprint recorded in the checkpoint and drift is reported as a
warning.

The whole stop/relaunch window runs inside ``StackDownGuard``, so an
interruption while services are stopped triggers an emergency restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from collections.abc import Awaitable, Callable
from typing import Any

from stackpilot.certificates import inspect_certificate
from stackpilot.config import AppConfig
from stackpilot.errors import (
    EXIT_CRITICAL,
    EXIT_OK,
    EXIT_RECOVERABLE,
    StateConflictError,
    ValidationError,
)
from stackpilot.lifecycle.checkpoints import (
    Checkpoint,
    CheckpointStore,
    copy_from_checkpoint,
)
from stackpilot.lifecycle.guard import StackDownGuard
from stackpilot.lifecycle.health import HealthChecker, VerificationReport
from stackpilot.lifecycle.launcher import LaunchResult, ServiceLauncher
from stackpilot.lifecycle.release_files import ReleaseFileUpdater
from stackpilot.locking import LockHandle, LockManager
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)

PRE_ROLLBACK_SUFFIX = ".pre-rollback"


class RollbackResult:
    """
    Outcome of a rollback.

    Status is ``succeeded``, ``failed`` or ``not_needed`` (auto mode found
    the stack healthy after the settle delay).
    """

    def __init__(
        self,
        status: str,
        checkpoint: str | None = None,
        *,
        restored_version: str | None = None,
        message: str = "",
        remediation: str | None = None,
    ) -> None:
        self.status = status
        self.checkpoint = checkpoint
        self.restored_version = restored_version
        self.restored_files: list[str] = []
        self.warnings: list[str] = []
        self.launch: LaunchResult | None = None
        self.verification: VerificationReport | None = None
        self.message = message
        self.remediation = remediation

    @property
    def ok(self) -> bool:
        return self.status in ("succeeded", "not_needed")

    @property
    def exit_code(self) -> int:
        if not self.ok:
            return EXIT_CRITICAL
        return EXIT_RECOVERABLE if self.warnings else EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checkpoint": self.checkpoint,
            "restored_version": self.restored_version,
            "restored_files": self.restored_files,
            "warnings": self.warnings,
            "launch": self.launch.to_dict() if self.launch else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "message": self.message,
            "remediation": self.remediation,
        }


class RollbackController:
    """
    Restores checkpoints and relaunches the stack.

    Attributes:
        checkpoints: Checkpoint store.
        launcher: Service launcher used to stop and relaunch the stack.
        checker: Verification pass run after relaunch.
    """

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        locks: LockManager | None = None,
        checkpoints: CheckpointStore | None = None,
        files: ReleaseFileUpdater | None = None,
        launcher: ServiceLauncher | None = None,
        checker: HealthChecker | None = None,
        install_signal_handlers: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.locks = locks or LockManager(config.deploy_path(config.locks.lock_dir))
        self.checkpoints = checkpoints or CheckpointStore(config)
        self.files = files or ReleaseFileUpdater(config)
        self.launcher = launcher or ServiceLauncher(
            runtime,
            poll_interval=config.launcher.poll_interval,
            stop_timeout=config.launcher.stop_timeout,
        )
        self.checker = checker or HealthChecker.from_config(runtime, config)
        self.install_signal_handlers = install_signal_handlers
        self._sleep = sleep

    def list_checkpoints(self) -> list[Checkpoint]:
        """Return checkpoints, newest first. Takes no lock."""
        return self.checkpoints.list_checkpoints()

    def verify_checkpoint(self, checkpoint_ref: str | None = None) -> dict[str, Any]:
        """
        Check a checkpoint's integrity and compare it with the live deployment.

        Takes no lock.

        Returns:
            Dictionary with ``intact``, ``problems`` and the drift report.
        """
        checkpoint = self.checkpoints.get(checkpoint_ref)
        problems = self.checkpoints.verify_integrity(checkpoint)
        report = self.checkpoints.compare(checkpoint)
        report.update({"intact": not problems, "problems": problems})
        return report

    async def rollback(
        self,
        checkpoint_ref: str | None = None,
        lock: LockHandle | None = None,
    ) -> RollbackResult:
        """
        Roll back to a checkpoint.

        Args:
            checkpoint_ref: Checkpoint name or ``"latest"``; defaults to latest.
            lock: Lifecycle lock already held by the caller (an update).

        Returns:
            RollbackResult.

        Raises:
            StateConflictError: If the checkpoint is missing or damaged, or
                the lock is held by another operation.
        """
        checkpoint = self.checkpoints.get(checkpoint_ref)
        problems = self.checkpoints.verify_integrity(checkpoint)
        if problems:
            raise StateConflictError(
                f"Checkpoint {checkpoint.name} is damaged",
                details={"checkpoint": checkpoint.name, "files": problems},
                remediation=(
                    "Roll back to an older checkpoint with 'stackpilot rollback --checkpoint "
                    "<name>' or restore a backup with 'stackpilot restore <archive>'."
                ),
            )

        with contextlib.ExitStack() as stack:
            if lock is None or not lock.held:
                stack.enter_context(
                    self.locks.acquire(holder="rollback", operation=f"rollback {checkpoint.name}")
                )
            return await self._rollback(checkpoint)

    async def _rollback(self, checkpoint: Checkpoint) -> RollbackResult:
        config = self.config
        deploy_dir = config.deploy_dir
        services = config.services
        result = RollbackResult(
            "succeeded",
            checkpoint.name,
            restored_version=checkpoint.manifest.source_version,
        )
        logger.warning(
            "Rolling back",
            extra={
                "checkpoint": checkpoint.name,
                "version": checkpoint.manifest.source_version,
            },
        )

        live_env = config.deploy_path(config.deployment.env_file)
        if live_env.is_file():
            shutil.copy2(live_env, live_env.with_name(live_env.name + PRE_ROLLBACK_SUFFIX))

        async with StackDownGuard(
            self.runtime,
            operation="rollback",
            install_signal_handlers=self.install_signal_handlers,
            restart_on_error=True,
        ) as guard:
            await self.launcher.stop_all(services)

            result.restored_files.extend(self.files.revert(checkpoint.name))
            for relative in checkpoint.captured_roots():
                copy_from_checkpoint(checkpoint, relative, deploy_dir)
                if relative not in result.restored_files:
                    result.restored_files.append(relative)
            result.warnings.extend(self._check_certificate(checkpoint))

            result.launch = await self.launcher.launch_all(services)
            guard.mark_restarted()

        result.verification = await self.checker.verify(services)
        if not result.launch.overall_ok or not result.verification.ok:
            result.status = "failed"
            result.message = "Stack unhealthy after rollback"
            result.remediation = (
                "Inspect service logs, then restore a backup with "
                "'stackpilot restore <archive>'."
            )
            logger.critical(
                "Rollback did not restore a healthy stack",
                extra={"checkpoint": checkpoint.name},
            )
        else:
            target = checkpoint.manifest.source_version or checkpoint.name
            result.message = f"Rolled back to {target}"
            logger.info("Rollback complete", extra={"checkpoint": checkpoint.name})
        return result

    def _check_certificate(self, checkpoint: Checkpoint) -> list[str]:
        recorded = checkpoint.manifest.certificate
        if recorded is None:
            return []
        cert_path = self.config.deploy_path(self.config.certificates.cert_path)
        if not cert_path.is_file():
            message = f"Certificate missing since checkpoint: {cert_path}"
        else:
            try:
                live = inspect_certificate(cert_path)
            except ValidationError as e:
                message = f"Certificate unreadable: {e.message}"
            else:
                if live.fingerprint_sha256 == recorded.fingerprint_sha256:
                    return []
                message = "Certificate changed since checkpoint"
        logger.warning(
            message,
            extra={"checkpoint": checkpoint.name, "fingerprint": recorded.fingerprint_sha256},
        )
        return [message]

    async def auto_rollback(
        self,
        checkpoint_ref: str | None = None,
        *,
        lock: LockHandle | None = None,
        settle_delay: float | None = None,
    ) -> RollbackResult:
        """
        Roll back only if the stack is still unhealthy after a settle delay.

        Args:
            checkpoint_ref: Checkpoint to roll back to; defaults to latest.
            lock: Lifecycle lock already held by the caller.
            settle_delay: Seconds to wait before re-checking; defaults to
                ``updates.auto_rollback_settle_delay``.
        """
        delay = (
            self.config.updates.auto_rollback_settle_delay
            if settle_delay is None
            else settle_delay
        )
        logger.info("Waiting before re-checking health", extra={"delay": delay})
        await self._sleep(delay)

        report = await self.checker.verify(self.config.services)
        if report.ok:
            logger.info("Stack recovered, rollback not needed")
            result = RollbackResult("not_needed", checkpoint_ref, message="Stack is healthy")
            result.verification = report
            return result
        return await self.rollback(checkpoint_ref, lock=lock)
