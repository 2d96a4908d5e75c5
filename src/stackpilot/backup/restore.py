"""
Restore from a backup archive.

The archive is verified before anything destructive happens. Restoring then
runs under the lifecycle lock:

1. Extract the archive into a private staging directory.
2. Configuration (metadata, full): save the live environment file as
   ``.env.pre-restore`` and copy the archived configuration into place.
3. Stop the stack. Data (data, full): start the datastore tier and restore
   each database from its custom dump, falling back to the SQL export.
4. Relaunch the stack, restore volume archives (full) and verify.

The stop/relaunch window is guarded: an interruption or error while the
stack is down triggers an emergency restart.
"""

from __future__ import annotations

import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Any

from stackpilot.backup.datastore import DatastoreClient, service_client
from stackpilot.backup.integrity import IntegrityVerifier
from stackpilot.backup.models import (
    BackupComponent,
    BackupKind,
    BackupManifest,
    ComponentKind,
)
from stackpilot.config import AppConfig
from stackpilot.errors import (
    EXIT_CRITICAL,
    EXIT_OK,
    EXIT_RECOVERABLE,
    HealthGateTimeout,
    InternalError,
    ValidationError,
)
from stackpilot.fsops import (
    atomic_write_bytes,
    copy_path,
    ensure_directory,
    safe_remove_directory,
)
from stackpilot.lifecycle.guard import StackDownGuard
from stackpilot.lifecycle.health import HealthChecker, VerificationReport
from stackpilot.lifecycle.launcher import LaunchResult, ServiceLauncher
from stackpilot.locking import LockManager
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)

PRE_RESTORE_SUFFIX = ".pre-restore"


class RestoreResult:
    """Outcome of a restore."""

    def __init__(
        self,
        status: str,
        archive: Path,
        kind: BackupKind,
        *,
        message: str = "",
    ) -> None:
        self.status = status
        self.archive = archive
        self.kind = kind
        self.message = message
        self.contents: list[str] = []
        self.restored: list[str] = []
        self.warnings: list[str] = []
        self.launch: LaunchResult | None = None
        self.verification: VerificationReport | None = None

    @property
    def exit_code(self) -> int:
        if self.status == "failed":
            return EXIT_CRITICAL
        if self.warnings:
            return EXIT_RECOVERABLE
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "archive": str(self.archive),
            "kind": self.kind.value,
            "message": self.message,
            "contents": self.contents,
            "restored": self.restored,
            "warnings": self.warnings,
            "launch": self.launch.to_dict() if self.launch else None,
            "verification": self.verification.to_dict() if self.verification else None,
        }


def _check_kind(requested: BackupKind, manifest: BackupManifest) -> None:
    available = manifest.kind
    allowed = requested == available or (
        available == BackupKind.FULL and requested in (BackupKind.DATA, BackupKind.METADATA)
    )
    if not allowed:
        raise ValidationError(
            f"Cannot restore {requested.value} from a {available.value} backup",
            details={"requested": requested.value, "archive_kind": available.value},
        )


class RestoreController:
    """Restores databases, configuration and volumes from an archive."""

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        locks: LockManager | None = None,
        verifier: IntegrityVerifier | None = None,
        launcher: ServiceLauncher | None = None,
        checker: HealthChecker | None = None,
        datastore: DatastoreClient | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.locks = locks or LockManager(config.deploy_path(config.locks.lock_dir))
        self.verifier = verifier or IntegrityVerifier(runtime, config.backups)
        self.launcher = launcher or ServiceLauncher(
            runtime,
            poll_interval=config.launcher.poll_interval,
            stop_timeout=config.launcher.stop_timeout,
        )
        self.checker = checker or HealthChecker.from_config(runtime, config)
        self.datastore = datastore or service_client(
            runtime, config.backups.datastore_service, config.backups.datastore_user
        )
        self.install_signal_handlers = install_signal_handlers

    async def restore(
        self,
        archive: Path | str,
        kind: BackupKind | str | None = None,
        *,
        dry_run: bool = False,
    ) -> RestoreResult:
        """
        Restore from ``archive``.

        Args:
            archive: Archive path.
            kind: What to restore; defaults to the archive's own kind.
            dry_run: Only list what would be restored.

        Returns:
            RestoreResult.

        Raises:
            IntegrityFailure: If the archive fails verification.
            ValidationError: If ``kind`` is not contained in the archive.
            StateConflictError: If another lifecycle operation is running.
        """
        archive = Path(archive)
        report = await self.verifier.ensure_valid(archive)
        manifest = report.manifest
        if manifest is None:
            raise InternalError(
                "Verified archive has no manifest", details={"archive": str(archive)}
            )
        requested = BackupKind.parse(kind) if kind is not None else manifest.kind
        _check_kind(requested, manifest)

        components = self._selected_components(requested, manifest)
        if dry_run:
            result = RestoreResult(
                "dry_run", archive, requested, message="Dry run, nothing changed"
            )
            result.contents = [
                f"{c.kind.value}:{c.name} ({', '.join(c.entries)})" for c in components
            ]
            return result

        with self.locks.acquire(holder="restore", operation=f"restore {archive.name}"):
            return await self._restore(archive, requested, manifest, components)

    @staticmethod
    def _selected_components(
        kind: BackupKind, manifest: BackupManifest
    ) -> list[BackupComponent]:
        selected = []
        for component in manifest.components:
            if component.kind == ComponentKind.DATABASE and kind.includes_data:
                selected.append(component)
            elif component.kind == ComponentKind.CONFIG and kind.includes_config:
                selected.append(component)
            elif component.kind == ComponentKind.VOLUME and kind == BackupKind.FULL:
                selected.append(component)
        return selected

    async def _restore(
        self,
        archive: Path,
        kind: BackupKind,
        manifest: BackupManifest,
        components: list[BackupComponent],
    ) -> RestoreResult:
        result = RestoreResult("succeeded", archive, kind)
        backup_dir = ensure_directory(
            self.config.deploy_path(self.config.backups.backup_dir), mode=0o700
        )
        staging = Path(tempfile.mkdtemp(prefix=".restore_", dir=backup_dir))
        logger.info("Restoring backup", extra={"archive": archive.name, "kind": kind.value})
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(staging, filter="data")
            top = staging / manifest.name

            for component in components:
                if component.kind == ComponentKind.CONFIG:
                    self._restore_config(top, component)
                    result.restored.append("config")

            services = self.config.services
            async with StackDownGuard(
                self.runtime,
                operation="restore",
                install_signal_handlers=self.install_signal_handlers,
                restart_on_error=True,
            ) as guard:
                await self.launcher.stop_all(services)
                databases = [c for c in components if c.kind == ComponentKind.DATABASE]
                if databases:
                    await self._start_datastores()
                    for component in databases:
                        if await self._restore_database(top, component):
                            result.restored.append(component.name)
                        else:
                            result.warnings.append(
                                f"Database {component.name} restored with errors"
                            )
                result.launch = await self.launcher.launch_all(services)
                guard.mark_restarted()

            for component in components:
                if component.kind == ComponentKind.VOLUME:
                    if await self._restore_volume(top, component):
                        result.restored.append(component.name)
                    else:
                        result.warnings.append(f"Volume {component.name} not restored")
        finally:
            safe_remove_directory(staging)

        result.verification = await self.checker.verify(services)
        if not result.launch.overall_ok or not result.verification.ok:
            result.status = "failed"
            result.message = "Stack unhealthy after restore"
        else:
            result.message = f"Restored {', '.join(result.restored) or 'nothing'}"
        logger.info(
            "Restore finished",
            extra={
                "status": result.status,
                "restored": result.restored,
                "warnings": result.warnings,
            },
        )
        return result

    def _restore_config(self, top: Path, component: BackupComponent) -> None:
        deploy_dir = self.config.deploy_dir
        env_name = self.config.deployment.env_file
        live_env = deploy_dir / env_name
        if live_env.is_file():
            shutil.copy2(live_env, live_env.with_name(live_env.name + PRE_RESTORE_SUFFIX))

        for entry in component.entries:
            source = top / entry
            relative = Path(entry).relative_to("config")
            if not source.exists():
                continue
            if source.is_file() and relative.name.startswith(".env"):
                atomic_write_bytes(deploy_dir / relative, source.read_bytes(), mode=0o600)
            else:
                copy_path(source, deploy_dir / relative)
        logger.info("Configuration restored", extra={"entries": len(component.entries)})

    async def _start_datastores(self) -> None:
        datastores = [d for d in self.config.services if d.datastore]
        launch = await self.launcher.launch_all(datastores)
        if not launch.overall_ok:
            raise HealthGateTimeout(
                "Datastore did not become healthy for restore",
                details={"failed": launch.failed_services},
            )

    async def _restore_database(self, top: Path, component: BackupComponent) -> bool:
        await self.datastore.create_database(component.name)
        dump = next((e for e in component.entries if e.endswith(".dump")), None)
        sql = next((e for e in component.entries if e.endswith(".sql")), None)
        if dump is not None and await self.datastore.restore(
            component.name, (top / dump).read_bytes()
        ):
            return True
        if sql is not None:
            logger.warning(
                "Falling back to SQL export",
                extra={"database": component.name},
            )
            return await self.datastore.restore_sql(component.name, (top / sql).read_bytes())
        return False

    async def _restore_volume(self, top: Path, component: BackupComponent) -> bool:
        volume = next((v for v in self.config.backups.volumes if v.name == component.name), None)
        if volume is None:
            logger.warning("Volume not configured", extra={"volume": component.name})
            return False
        data = (top / component.entries[0]).read_bytes()
        result = await self.runtime.exec(
            volume.service, ["tar", "xzf", "-", "-C", volume.path], stdin=data
        )
        if not result.ok:
            logger.warning(
                "Volume restore failed",
                extra={"volume": component.name, "stderr": result.stderr.strip()[-300:]},
            )
        return result.ok
