"""
Checkpoint store.

A checkpoint is an immutable snapshot of the deployment's mutable
configuration taken before a mutating operation:

    .checkpoint/
        pre_update_20260101_120000/
            manifest.json
            files/.env
            files/docker-compose.yml
            files/nginx/...
        latest -> pre_update_20260101_120000

Files are captured by value, hashed into the manifest, and made read-only.
A checkpoint is assembled in a hidden ``.partial`` directory and renamed into
place, so a half-written checkpoint is never listed. Certificates are
recorded as metadata only.
"""

from __future__ import annotations

import json
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from stackpilot.certificates import CertificateMetadata, inspect_certificate
from stackpilot.config import AppConfig
from stackpilot.envfile import EnvironmentFile
from stackpilot.errors import StateConflictError, ValidationError
from stackpilot.fsops import (
    atomic_symlink_switch,
    atomic_write_bytes,
    atomic_write_json,
    copy_path,
    ensure_directory,
    make_read_only,
    make_writable,
    safe_remove_directory,
    sha256_file,
    timestamp_slug,
)
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
FILES_DIR = "files"
LATEST_LINK = "latest"


class CapturedFile(BaseModel):
    """A file captured by value."""

    path: str = Field(description="Path relative to the deployment directory")
    sha256: str = Field(description="Hex SHA-256 of the captured copy")
    size: int = Field(description="Size in bytes")


class CheckpointManifest(BaseModel):
    """
    Checkpoint metadata written as ``manifest.json``.
    """

    name: str = Field(description="Checkpoint name")
    kind: str = Field(default="update", description="Operation that created it")
    created_at: str = Field(description="ISO 8601 creation time")
    source_version: str | None = Field(default=None, description="Version at capture")
    target_version: str | None = Field(default=None, description="Version being installed")
    deploy_dir: str = Field(description="Deployment directory")
    release_dir: str | None = Field(default=None, description="Release file source")
    files: list[CapturedFile] = Field(default_factory=list, description="Captured files")
    image_ids: list[str] = Field(default_factory=list, description="Image identifiers")
    services_running: list[str] = Field(
        default_factory=list, description="Services running at capture"
    )
    certificate: CertificateMetadata | None = Field(
        default=None, description="Certificate metadata (no key material)"
    )


class Checkpoint:
    """A checkpoint on disk."""

    def __init__(self, path: Path, manifest: CheckpointManifest) -> None:
        self.path = path
        self.manifest = manifest

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def files_dir(self) -> Path:
        return self.path / FILES_DIR

    def captured(self, relative: str) -> Path:
        """Return the captured copy of a deployment-relative path."""
        return self.files_dir / relative

    def has(self, relative: str) -> bool:
        return any(f.path == relative for f in self.manifest.files)

    def captured_roots(self) -> list[str]:
        """Top-level deployment paths present in the checkpoint."""
        if not self.files_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.files_dir.iterdir())

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "created_at": self.manifest.created_at,
            "source_version": self.manifest.source_version,
            "target_version": self.manifest.target_version,
            "files": len(self.manifest.files),
        }


class CheckpointStore:
    """
    Creates, lists, verifies and prunes checkpoints.

    Listing and verification are read-only and need no lock.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self.root = config.deploy_path(config.checkpoints.directory)
        self.retention = config.checkpoints.retention

    def _capture_sources(self) -> list[Path]:
        deploy_dir = self._config.deploy_dir
        sources: list[Path] = []
        env_file = self._config.deploy_path(self._config.deployment.env_file)
        if env_file.is_file():
            sources.append(env_file)
        sources.extend(sorted(deploy_dir.glob(self._config.updates.compose_pattern)))
        for relative in self._config.checkpoints.capture_paths:
            candidate = self._config.deploy_path(relative)
            if candidate.exists() and candidate not in sources:
                sources.append(candidate)
        return sources

    def current_version(self) -> str | None:
        """Read the version pointer from the live environment file."""
        env_path = self._config.deploy_path(self._config.deployment.env_file)
        if not env_path.is_file():
            return None
        return EnvironmentFile.load(env_path).get(self._config.deployment.version_key)

    def _certificate_metadata(self) -> CertificateMetadata | None:
        cert_path = self._config.deploy_path(self._config.certificates.cert_path)
        if not cert_path.is_file():
            return None
        try:
            return inspect_certificate(cert_path)
        except ValidationError as e:
            logger.warning(
                "Could not read certificate metadata",
                extra={"path": str(cert_path), "error": e.message},
            )
            return None

    async def create(
        self,
        runtime: ContainerRuntime,
        *,
        kind: str = "update",
        target_version: str | None = None,
        release_dir: Path | None = None,
    ) -> Checkpoint:
        """
        Capture the current deployment state.

        Args:
            runtime: Runtime queried for image identifiers and running services.
            kind: Operation creating the checkpoint (used in its name).
            target_version: Version the operation is moving to.
            release_dir: Source of new deployment files, if any.

        Returns:
            The new checkpoint; ``latest`` points at it.
        """
        ensure_directory(self.root)
        base_name = f"pre_{kind}_{timestamp_slug()}"
        name = base_name
        suffix = 1
        while (self.root / name).exists():
            name = f"{base_name}_{suffix}"
            suffix += 1

        staging = self.root / f".{name}.partial"
        safe_remove_directory(staging)
        files_dir = ensure_directory(staging / FILES_DIR)
        deploy_dir = self._config.deploy_dir

        captured: list[CapturedFile] = []
        try:
            for source in self._capture_sources():
                relative = source.relative_to(deploy_dir)
                for written in copy_path(source, files_dir / relative):
                    captured.append(
                        CapturedFile(
                            path=str(written.relative_to(files_dir)),
                            sha256=sha256_file(written),
                            size=written.stat().st_size,
                        )
                    )

            manifest = CheckpointManifest(
                name=name,
                kind=kind,
                created_at=datetime.now(UTC).isoformat(),
                source_version=self.current_version(),
                target_version=target_version,
                deploy_dir=str(deploy_dir),
                release_dir=str(release_dir) if release_dir else None,
                files=captured,
                image_ids=await runtime.image_ids(),
                services_running=await runtime.running_services(),
                certificate=self._certificate_metadata(),
            )
            atomic_write_json(staging / MANIFEST_NAME, manifest.model_dump(mode="json"))
            make_read_only(staging)
            final = self.root / name
            staging.rename(final)
        except BaseException:
            safe_remove_directory(staging)
            raise

        atomic_symlink_switch(final, self.root / LATEST_LINK, relative=True)
        checkpoint = Checkpoint(final, manifest)
        logger.info(
            "Checkpoint created",
            extra={
                "checkpoint": name,
                "files": len(captured),
                "source_version": manifest.source_version,
            },
        )
        self.prune(keep=name)
        return checkpoint

    def _read(self, path: Path) -> Checkpoint | None:
        manifest_path = path / MANIFEST_NAME
        try:
            data = json.loads(manifest_path.read_text())
            return Checkpoint(path, CheckpointManifest(**data))
        except (OSError, ValueError) as e:
            logger.warning(
                "Skipping unreadable checkpoint",
                extra={"path": str(path), "error": str(e)},
            )
            return None

    def list_checkpoints(self) -> list[Checkpoint]:
        """Return checkpoints, newest first."""
        if not self.root.is_dir():
            return []
        checkpoints = []
        for entry in self.root.iterdir():
            if entry.name.startswith(".") or entry.is_symlink() or not entry.is_dir():
                continue
            checkpoint = self._read(entry)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        checkpoints.sort(key=lambda c: (c.manifest.created_at, c.name), reverse=True)
        return checkpoints

    def get(self, ref: str | None = None) -> Checkpoint:
        """
        Resolve a checkpoint reference.

        Args:
            ref: Checkpoint name, ``"latest"`` or None (latest).

        Raises:
            StateConflictError: If no such checkpoint exists.
        """
        if ref in (None, LATEST_LINK):
            link = self.root / LATEST_LINK
            if link.is_symlink() and link.resolve().is_dir():
                checkpoint = self._read(link.resolve())
                if checkpoint is not None:
                    return checkpoint
            available = self.list_checkpoints()
            if available:
                return available[0]
            raise StateConflictError(
                "No checkpoint available",
                details={"checkpoint_dir": str(self.root)},
                remediation="Restore from a backup archive with 'stackpilot restore <archive>'.",
            )

        path = self.root / ref
        checkpoint = self._read(path) if path.is_dir() and "/" not in ref else None
        if checkpoint is None:
            raise StateConflictError(
                f"Checkpoint not found: {ref}",
                details={"checkpoint": ref, "checkpoint_dir": str(self.root)},
                remediation="List checkpoints with 'stackpilot rollback --list'.",
            )
        return checkpoint

    def verify_integrity(self, checkpoint: Checkpoint) -> list[str]:
        """
        Re-hash captured files against the manifest.

        Returns:
            Paths that are missing or whose hash changed; empty when intact.
        """
        problems = []
        for captured in checkpoint.manifest.files:
            path = checkpoint.captured(captured.path)
            if not path.is_file():
                problems.append(captured.path)
            elif sha256_file(path) != captured.sha256:
                problems.append(captured.path)
        if problems:
            logger.error(
                "Checkpoint integrity check failed",
                extra={"checkpoint": checkpoint.name, "files": problems},
            )
        return problems

    def compare(self, checkpoint: Checkpoint) -> dict[str, Any]:
        """
        Report drift between a checkpoint and the live deployment.

        Returns:
            Dictionary with the checkpoint and live versions, whether the
            environment file differs, and the list of changed captured files.
        """
        changed = []
        for captured in checkpoint.manifest.files:
            live = self._config.deploy_path(captured.path)
            if not live.is_file() or sha256_file(live) != captured.sha256:
                changed.append(captured.path)
        env_name = self._config.deployment.env_file
        return {
            "checkpoint": checkpoint.name,
            "checkpoint_version": checkpoint.manifest.source_version,
            "live_version": self.current_version(),
            "env_file_changed": env_name in changed,
            "changed_files": changed,
        }

    def prune(self, keep: str | None = None) -> list[str]:
        """
        Delete checkpoints beyond the retention count.

        Args:
            keep: Name of a checkpoint that must never be pruned.

        Returns:
            Names of removed checkpoints.
        """
        removed = []
        for checkpoint in self.list_checkpoints()[self.retention :]:
            if checkpoint.name == keep:
                continue
            safe_remove_directory(checkpoint.path)
            removed.append(checkpoint.name)
        if removed:
            logger.info("Pruned old checkpoints", extra={"removed": removed})
        return removed


def copy_from_checkpoint(checkpoint: Checkpoint, relative: str, deploy_dir: Path) -> Path:
    """
    Restore one captured top-level path into the deployment directory.

    Directories are replaced as a whole; the restored copy is writable.
    """
    source = checkpoint.captured(relative)
    destination = deploy_dir / relative
    if source.is_dir():
        if destination.exists():
            safe_remove_directory(destination, ignore_errors=False)
        shutil.copytree(source, destination, symlinks=True)
        make_writable(destination)
    else:
        mode = 0o600 if relative.startswith(".env") else 0o644
        atomic_write_bytes(destination, source.read_bytes(), mode=mode)
    return destination
