"""
Backup archive verification.

Verification runs in a fixed order and stops at the first failing stage:

1. decompression: the whole gzip stream decodes
2. structure: the tar member table reads
3. semantic: the manifest parses and every declared component has at least
   one recognized entry present in the archive
4. test_restore (optional): each database dump restores into a disposable
   datastore container and yields at least one table

A test-restore failure is reported according to the configured policy:
``advisory`` records a warning, ``enforce`` fails verification.
"""

from __future__ import annotations

import asyncio
import gzip
import json
import tarfile
import uuid
import zlib
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from stackpilot.backup.datastore import DatastoreClient, ephemeral_client
from stackpilot.backup.models import (
    MANIFEST_NAME,
    BackupComponent,
    BackupManifest,
    ComponentKind,
)
from stackpilot.config import BackupsConfig
from stackpilot.errors import (
    EXIT_CRITICAL,
    EXIT_OK,
    EXIT_RECOVERABLE,
    IntegrityFailure,
    LifecycleError,
)
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime

logger = get_logger(__name__)

STAGES = ("decompression", "structure", "semantic", "test_restore")

_RECOGNIZED_SUFFIXES = {
    ComponentKind.DATABASE: (".dump", ".sql"),
    ComponentKind.VOLUME: (".tar.gz",),
}


class IntegrityReport:
    """Outcome of verifying one archive."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.stages_passed: list[str] = []
        self.failed_stage: str | None = None
        self.message: str = ""
        self.warnings: list[str] = []
        self.manifest: BackupManifest | None = None

    @property
    def ok(self) -> bool:
        return self.failed_stage is None

    @property
    def exit_code(self) -> int:
        if not self.ok:
            return EXIT_CRITICAL
        return EXIT_RECOVERABLE if self.warnings else EXIT_OK

    def fail(self, stage: str, message: str) -> IntegrityReport:
        self.failed_stage = stage
        self.message = message
        logger.error(
            "Backup verification failed",
            extra={"archive": str(self.path), "stage": stage, "reason": message},
        )
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "archive": str(self.path),
            "ok": self.ok,
            "stages_passed": self.stages_passed,
            "failed_stage": self.failed_stage,
            "message": self.message,
            "warnings": self.warnings,
        }


def quick_status(path: Path) -> str:
    """Decode the whole gzip stream; return "ok" or "corrupt"."""
    try:
        with gzip.open(path, "rb") as stream:
            while stream.read(1024 * 1024):
                pass
    except (OSError, EOFError, zlib.error):
        return "corrupt"
    return "ok"


def _entry_present(component_kind: ComponentKind, entry: str, names: set[str]) -> bool:
    suffixes = _RECOGNIZED_SUFFIXES.get(component_kind)
    if suffixes is not None and not entry.endswith(suffixes):
        return False
    if entry in names:
        return True
    # Config components may name a directory
    return any(name.startswith(entry.rstrip("/") + "/") for name in names)


class IntegrityVerifier:
    """Verifies backup archives without extracting them to disk."""

    def __init__(
        self,
        runtime: ContainerRuntime | None,
        settings: BackupsConfig,
    ) -> None:
        self.runtime = runtime
        self.settings = settings

    async def verify(self, path: Path | str, *, test_restore: bool = False) -> IntegrityReport:
        """
        Verify an archive.

        Args:
            path: Archive to verify.
            test_restore: Also restore each database into a disposable container.

        Returns:
            IntegrityReport naming the first failing stage, if any.
        """
        path = Path(path)
        report = IntegrityReport(path)
        if not path.is_file():
            return report.fail("decompression", f"Archive not found: {path}")

        try:
            with gzip.open(path, "rb") as stream:
                while stream.read(1024 * 1024):
                    pass
        except (OSError, EOFError, zlib.error) as e:
            return report.fail("decompression", f"Corrupt compression stream: {e}")
        report.stages_passed.append("decompression")

        try:
            with tarfile.open(path, "r:gz") as tar:
                members = tar.getmembers()
                names = {m.name for m in members}
                tops = {name.split("/", 1)[0] for name in names}
                if len(tops) != 1:
                    return report.fail(
                        "structure", "Archive must contain exactly one top-level directory"
                    )
                report.stages_passed.append("structure")

                top = tops.pop()
                manifest_member = f"{top}/{MANIFEST_NAME}"
                if manifest_member not in names:
                    return report.fail("semantic", "Manifest missing")
                extracted = tar.extractfile(manifest_member)
                if extracted is None:
                    return report.fail("semantic", "Manifest is not a regular file")
                manifest = BackupManifest(**json.loads(extracted.read()))
        except tarfile.TarError as e:
            return report.fail("structure", f"Unreadable tar structure: {e}")
        except (ValueError, PydanticValidationError) as e:
            return report.fail("semantic", f"Unreadable manifest: {e}")

        relative_names = {name[len(top) + 1 :] for name in names if name.startswith(top + "/")}
        missing = [
            f"{component.name}:{entry}"
            for component in manifest.components
            for entry in (component.entries or ["<none>"])
            if not _entry_present(component.kind, entry, relative_names)
        ]
        incomplete = [
            component.name
            for component in manifest.components
            if not any(
                _entry_present(component.kind, entry, relative_names)
                for entry in component.entries
            )
        ]
        if incomplete:
            return report.fail(
                "semantic",
                f"Components without a valid entry: {', '.join(incomplete)}",
            )
        if missing:
            report.warnings.append(f"Missing optional entries: {', '.join(missing)}")
        report.manifest = manifest
        report.stages_passed.append("semantic")

        if test_restore:
            await self._test_restore(path, top, manifest, report)

        if report.ok:
            logger.info(
                "Backup verified",
                extra={"archive": path.name, "stages": report.stages_passed},
            )
        return report

    async def _test_restore(
        self,
        path: Path,
        top: str,
        manifest: BackupManifest,
        report: IntegrityReport,
    ) -> None:
        databases = manifest.components_of(ComponentKind.DATABASE)
        if not databases:
            report.warnings.append("No databases in archive; test restore skipped")
            report.stages_passed.append("test_restore")
            return

        try:
            problems = await self._restore_into_ephemeral(path, top, databases)
        except LifecycleError as e:
            problems = [e.message]

        if not problems:
            report.stages_passed.append("test_restore")
            return
        message = "; ".join(problems)
        if self.settings.test_restore_policy == "enforce":
            report.fail("test_restore", message)
        else:
            report.warnings.append(f"Test restore failed: {message}")
            logger.warning("Test restore failed", extra={"archive": path.name, "reason": message})

    async def _restore_into_ephemeral(
        self,
        path: Path,
        top: str,
        databases: list[BackupComponent],
    ) -> list[str]:
        if self.runtime is None:
            return ["No container runtime available for test restore"]

        name = f"stackpilot-verify-{uuid.uuid4().hex[:8]}"
        user = self.settings.datastore_user
        await self.runtime.run_ephemeral(
            self.settings.test_restore_image,
            name,
            {"POSTGRES_USER": user, "POSTGRES_PASSWORD": uuid.uuid4().hex},
        )
        problems: list[str] = []
        try:
            client = ephemeral_client(self.runtime, name, user)
            if not await self._wait_ready(client):
                return ["Test datastore did not become ready"]
            with tarfile.open(path, "r:gz") as tar:
                for component in databases:
                    dump_entry = next(
                        (e for e in component.entries if e.endswith(".dump")), None
                    )
                    if dump_entry is None:
                        problems.append(f"{component.name}: no custom dump")
                        continue
                    member = tar.extractfile(f"{top}/{dump_entry}")
                    if member is None:
                        problems.append(f"{component.name}: dump unreadable")
                        continue
                    await client.create_database(component.name)
                    await client.restore(component.name, member.read())
                    if await client.count_tables(component.name) < 1:
                        problems.append(f"{component.name}: no tables restored")
        finally:
            await self.runtime.remove_ephemeral(name)
        return problems

    async def _wait_ready(self, client: DatastoreClient) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.test_restore_timeout
        while loop.time() < deadline:
            if await client.is_ready():
                return True
            await asyncio.sleep(min(2.0, max(deadline - loop.time(), 0)))
        return False

    async def ensure_valid(
        self, path: Path | str, *, test_restore: bool = False
    ) -> IntegrityReport:
        """
        Verify an archive and raise when any stage fails.

        Raises:
            IntegrityFailure: Naming the failed stage.
        """
        report = await self.verify(path, test_restore=test_restore)
        if not report.ok:
            raise IntegrityFailure(
                report.message,
                stage=report.failed_stage or "decompression",
                details={"archive": str(report.path)},
            )
        return report
