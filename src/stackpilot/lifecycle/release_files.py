"""
Deployment file replacement with an update-scoped side archive.

Before release files are copied over the deployment, whatever they replace
is archived under ``.file-backups/<checkpoint-name>/`` together with a
manifest listing replaced and newly created paths. Rollback uses that
manifest to put replaced paths back and delete created ones.

The environment file, certificates, keys, backups and checkpoints are never
touched by a file update.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from stackpilot.config import AppConfig
from stackpilot.errors import ValidationError
from stackpilot.fsops import (
    atomic_write_json,
    copy_path,
    ensure_directory,
    safe_remove_directory,
)
from stackpilot.logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
FILES_DIR = "files"

PROTECTED_SUFFIXES = (".key", ".pem", ".crt")


class FileBackupManifest(BaseModel):
    """Side archive manifest."""

    checkpoint: str = Field(description="Checkpoint the update started from")
    created_at: str = Field(description="ISO 8601 creation time")
    release_dir: str = Field(description="Release directory files came from")
    replaced: list[str] = Field(default_factory=list, description="Paths that existed")
    created: list[str] = Field(default_factory=list, description="Paths that did not exist")


class ReleaseFileUpdater:
    """Copies release files into the deployment and reverts them."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self.root = config.deploy_path(config.updates.file_backup_dir)
        self.retention = config.updates.file_backup_retention

    def _protected(self) -> set[str]:
        config = self._config
        return {
            config.deployment.env_file,
            "ssl",
            config.backups.backup_dir,
            config.checkpoints.directory,
            config.updates.file_backup_dir,
            config.locks.lock_dir,
            config.install.state_file,
        }

    def plan(self, release_dir: Path) -> list[str]:
        """
        List deployment-relative paths a release directory would update.

        Raises:
            ValidationError: If ``release_dir`` is not a directory.
        """
        if not release_dir.is_dir():
            raise ValidationError(
                f"Release directory not found: {release_dir}",
                details={"release_dir": str(release_dir)},
            )
        updates = self._config.updates
        candidates = [p.name for p in sorted(release_dir.glob(updates.compose_pattern))]
        candidates.extend(updates.file_update_paths)
        candidates.append(self._config.deployment.env_template)

        protected = self._protected()
        planned = []
        for relative in candidates:
            if relative in planned or not (release_dir / relative).exists():
                continue
            if relative in protected or relative.endswith(PROTECTED_SUFFIXES):
                logger.warning("Refusing to update protected path", extra={"path": relative})
                continue
            planned.append(relative)
        return planned

    def apply(self, release_dir: Path, backup_name: str) -> list[str]:
        """
        Side-archive the paths a release replaces, then copy the release in.

        Args:
            release_dir: Directory holding the new release files.
            backup_name: Side archive name (the update's checkpoint name).

        Returns:
            Deployment-relative paths updated.
        """
        planned = self.plan(release_dir)
        deploy_dir = self._config.deploy_dir
        backup_dir = self.root / backup_name
        safe_remove_directory(backup_dir)
        files_dir = ensure_directory(backup_dir / FILES_DIR)

        manifest = FileBackupManifest(
            checkpoint=backup_name,
            created_at=datetime.now(UTC).isoformat(),
            release_dir=str(release_dir),
        )
        for relative in planned:
            live = deploy_dir / relative
            if live.exists():
                copy_path(live, files_dir / relative)
                manifest.replaced.append(relative)
            else:
                manifest.created.append(relative)
        # Manifest must exist before any live file changes
        atomic_write_json(backup_dir / MANIFEST_NAME, manifest.model_dump(mode="json"))

        for relative in planned:
            copy_path(release_dir / relative, deploy_dir / relative)
            logger.info("Updated deployment file", extra={"path": relative})

        self.prune(keep=backup_name)
        return planned

    def load(self, backup_name: str) -> FileBackupManifest | None:
        path = self.root / backup_name / MANIFEST_NAME
        if not path.is_file():
            return None
        return FileBackupManifest(**json.loads(path.read_text()))

    def revert(self, backup_name: str) -> list[str]:
        """
        Undo a file update recorded under ``backup_name``.

        Returns:
            Deployment-relative paths restored or removed; empty when no side
            archive exists.
        """
        manifest = self.load(backup_name)
        if manifest is None:
            return []
        deploy_dir = self._config.deploy_dir
        files_dir = self.root / backup_name / FILES_DIR

        reverted = []
        for relative in manifest.replaced:
            copy_path(files_dir / relative, deploy_dir / relative)
            reverted.append(relative)
        for relative in manifest.created:
            target = deploy_dir / relative
            if target.is_dir():
                safe_remove_directory(target, ignore_errors=False)
            elif target.exists():
                target.unlink()
            reverted.append(relative)
        logger.info(
            "Reverted deployment files",
            extra={"side_archive": backup_name, "paths": reverted},
        )
        return reverted

    def prune(self, keep: str | None = None) -> list[str]:
        """Delete side archives beyond the retention count, oldest names first."""
        if not self.root.is_dir():
            return []
        entries = sorted(
            (e for e in self.root.iterdir() if e.is_dir()),
            key=lambda e: e.name,
            reverse=True,
        )
        removed = []
        for entry in entries[self.retention :]:
            if entry.name == keep:
                continue
            safe_remove_directory(entry)
            removed.append(entry.name)
        return removed
