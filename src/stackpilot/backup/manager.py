"""
Backup archive production and retention.

``BackupManager.create`` writes one compressed archive per call:

- metadata: configuration files only
- data: a custom-format dump and a SQL export per database
- full: databases, configuration and volume archives

The archive is assembled in a staging directory, compressed to a hidden
partial file and renamed into place with mode 0600, so a failed backup
leaves nothing behind. After a successful backup, older archives of the same
kind beyond the retention count are deleted.

Data and full backups read from running services and therefore hold the
lifecycle lock, unless the caller (an update) already holds it.
"""

from __future__ import annotations

import contextlib
import os
import socket
import tarfile
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from stackpilot.backup.datastore import DatastoreClient, service_client
from stackpilot.backup.integrity import quick_status
from stackpilot.backup.models import (
    ARCHIVE_SUFFIX,
    MANIFEST_NAME,
    BackupArchive,
    BackupComponent,
    BackupKind,
    BackupManifest,
    ComponentKind,
    InventoryItem,
)
from stackpilot.config import AppConfig
from stackpilot.envfile import EnvironmentFile
from stackpilot.errors import InternalError
from stackpilot.fsops import (
    atomic_write_json,
    copy_path,
    ensure_directory,
    safe_remove_directory,
    sha256_file,
    timestamp_slug,
)
from stackpilot.locking import LockHandle, LockManager
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)


class BackupManager:
    """
    Creates, lists and prunes backup archives.

    Attributes:
        backup_dir: Directory holding archives.
        retention: Archives kept per kind.
    """

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        locks: LockManager | None = None,
        datastore: DatastoreClient | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._settings = config.backups
        self._locks = locks or LockManager(config.deploy_path(config.locks.lock_dir))
        self._datastore = datastore or service_client(
            runtime, config.backups.datastore_service, config.backups.datastore_user
        )
        self.backup_dir = config.deploy_path(config.backups.backup_dir)
        self.retention = config.backups.retention

    def _archive_name(self, kind: BackupKind) -> str:
        base = f"{self._settings.name_prefix}_backup_{kind.value}_{timestamp_slug()}"
        name = base
        suffix = 1
        while (self.backup_dir / f"{name}{ARCHIVE_SUFFIX}").exists():
            name = f"{base}_{suffix}"
            suffix += 1
        return name

    async def create(
        self,
        kind: BackupKind | str = BackupKind.FULL,
        *,
        lock: LockHandle | None = None,
    ) -> BackupArchive:
        """
        Produce one archive.

        Args:
            kind: Archive kind.
            lock: Lifecycle lock already held by the caller, if any.

        Returns:
            The new archive.

        Raises:
            ValidationError: If ``kind`` is unknown.
            StateConflictError: If the lock is needed and held elsewhere.
            InternalError: If a database dump or the archive write fails.
        """
        kind = BackupKind.parse(kind)
        with contextlib.ExitStack() as stack:
            if kind.includes_data and (lock is None or not lock.held):
                stack.enter_context(
                    self._locks.acquire(holder="backup", operation=f"backup {kind.value}")
                )
            archive = await self._create(kind)

        self.prune(kind)
        return archive

    async def _create(self, kind: BackupKind) -> BackupArchive:
        ensure_directory(self.backup_dir, mode=0o700)
        name = self._archive_name(kind)
        final = self.backup_dir / f"{name}{ARCHIVE_SUFFIX}"
        partial = self.backup_dir / f".{name}{ARCHIVE_SUFFIX}.partial"
        staging = Path(tempfile.mkdtemp(prefix=".staging_", dir=self.backup_dir))
        top = staging / name

        logger.info("Creating backup", extra={"kind": kind.value, "archive": final.name})
        try:
            components: list[BackupComponent] = []
            if kind.includes_data:
                components.extend(await self._dump_databases(top))
            if kind.includes_config:
                config_component = self._copy_config(top)
                if config_component is not None:
                    components.append(config_component)
            if kind == BackupKind.FULL:
                components.extend(await self._archive_volumes(top))

            manifest = BackupManifest(
                name=name,
                kind=kind,
                created_at=datetime.now(UTC).isoformat(),
                version=self._current_version(),
                hostname=socket.gethostname(),
                components=components,
                inventory=[
                    InventoryItem(
                        path=str(path.relative_to(top)),
                        size=path.stat().st_size,
                        sha256=sha256_file(path),
                    )
                    for path in sorted(top.rglob("*"))
                    if path.is_file()
                ],
            )
            atomic_write_json(top / MANIFEST_NAME, manifest.model_dump(mode="json"))

            with tarfile.open(partial, "w:gz") as tar:
                tar.add(top, arcname=name)
            os.chmod(partial, 0o600)
            os.replace(partial, final)
        except BaseException:
            if partial.exists():
                partial.unlink()
            raise
        finally:
            safe_remove_directory(staging)

        archive = BackupArchive(final, kind, datetime.now())
        logger.info(
            "Backup created",
            extra={
                "archive": str(final),
                "kind": kind.value,
                "size": archive.size,
                "components": [c.name for c in manifest.components],
            },
        )
        return archive

    async def _dump_databases(self, top: Path) -> list[BackupComponent]:
        databases_dir = ensure_directory(top / "databases")
        components = []
        for database in self._settings.databases:
            entries = []
            dump = await self._datastore.dump(database)
            (databases_dir / f"{database}.dump").write_bytes(dump)
            entries.append(f"databases/{database}.dump")
            try:
                sql = await self._datastore.dump_sql(database)
            except InternalError as e:
                logger.warning(
                    "SQL export failed, keeping custom dump only",
                    extra={"database": database, "error": e.message},
                )
            else:
                (databases_dir / f"{database}.sql").write_bytes(sql)
                entries.append(f"databases/{database}.sql")
            components.append(
                BackupComponent(name=database, kind=ComponentKind.DATABASE, entries=entries)
            )
        return components

    def _copy_config(self, top: Path) -> BackupComponent | None:
        deploy_dir = self._config.deploy_dir
        config_dir = top / "config"
        entries: list[str] = []
        for pattern in self._settings.config_paths:
            for source in sorted(deploy_dir.glob(pattern)):
                relative = source.relative_to(deploy_dir)
                copy_path(source, config_dir / relative)
                entries.append(f"config/{relative}")
        if not entries:
            logger.warning("No configuration files found to back up")
            return None
        return BackupComponent(name="config", kind=ComponentKind.CONFIG, entries=entries)

    async def _archive_volumes(self, top: Path) -> list[BackupComponent]:
        volumes_dir = ensure_directory(top / "volumes")
        components = []
        for volume in self._settings.volumes:
            result = await self._runtime.exec(
                volume.service, ["tar", "czf", "-", "-C", volume.path, "."]
            )
            if not result.ok or not result.stdout:
                logger.warning(
                    "Volume not archived",
                    extra={"volume": volume.name, "stderr": result.stderr.strip()[-300:]},
                )
                continue
            entry = f"volumes/{volume.name}.tar.gz"
            (top / entry).write_bytes(result.stdout)
            components.append(
                BackupComponent(name=volume.name, kind=ComponentKind.VOLUME, entries=[entry])
            )
        if not components:
            volumes_dir.rmdir()
        return components

    def _current_version(self) -> str | None:
        env_path = self._config.deploy_path(self._config.deployment.env_file)
        if not env_path.is_file():
            return None
        return EnvironmentFile.load(env_path).get(self._config.deployment.version_key)

    def list_archives(
        self,
        kind: BackupKind | str | None = None,
        *,
        check: bool = False,
    ) -> list[BackupArchive]:
        """
        Return archives, newest first, optionally of one kind.

        With ``check`` each archive's gzip stream is decoded and its
        ``integrity`` set to "ok" or "corrupt".
        """
        if not self.backup_dir.is_dir():
            return []
        wanted = BackupKind.parse(kind) if kind is not None else None
        archives = []
        for path in self.backup_dir.glob(f"*_backup_*{ARCHIVE_SUFFIX}"):
            archive = BackupArchive.from_path(path)
            if archive is None or (wanted is not None and archive.kind != wanted):
                continue
            if check:
                archive.integrity = quick_status(path)
            archives.append(archive)
        archives.sort(key=lambda a: (a.created or datetime.min, a.name), reverse=True)
        return archives

    def prune(self, kind: BackupKind | str) -> list[Path]:
        """
        Delete archives of ``kind`` beyond the retention count.

        Returns:
            Paths of deleted archives.
        """
        removed = []
        for archive in self.list_archives(kind)[self.retention :]:
            archive.path.unlink(missing_ok=True)
            removed.append(archive.path)
        if removed:
            logger.info(
                "Pruned old backups",
                extra={"kind": BackupKind.parse(kind).value, "removed": [p.name for p in removed]},
            )
        return removed
