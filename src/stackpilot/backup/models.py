"""
Backup archive data models.

An archive is a gzip-compressed tar holding a single top-level directory
named after the archive:

    stack_backup_full_20260101_120000/
        manifest.json
        databases/app.dump
        databases/app.sql
        config/.env
        config/nginx/...
        volumes/ml_models.tar.gz
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from stackpilot.errors import ValidationError

ARCHIVE_SUFFIX = ".tar.gz"
MANIFEST_NAME = "manifest.json"
ARCHIVE_PATTERN = re.compile(
    r"^(?P<prefix>.+)_backup_(?P<kind>metadata|data|full)_"
    r"(?P<stamp>\d{8}_\d{6})(?:_\d+)?\.tar\.gz$"
)


class BackupKind(str, Enum):
    """What an archive contains."""

    METADATA = "metadata"
    DATA = "data"
    FULL = "full"

    @property
    def includes_data(self) -> bool:
        return self in (BackupKind.DATA, BackupKind.FULL)

    @property
    def includes_config(self) -> bool:
        return self in (BackupKind.METADATA, BackupKind.FULL)

    @classmethod
    def parse(cls, value: str | BackupKind) -> BackupKind:
        """Parse a kind name, raising ValidationError for unknown kinds."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid backup kind: {value}. Must be one of: "
                + ", ".join(k.value for k in cls),
                details={"kind": str(value)},
            ) from None


class ComponentKind(str, Enum):
    DATABASE = "database"
    CONFIG = "config"
    VOLUME = "volume"


class BackupComponent(BaseModel):
    """A component declared by the manifest and the entries holding it."""

    name: str = Field(description="Component name (database, volume or 'config')")
    kind: ComponentKind = Field(description="Component kind")
    entries: list[str] = Field(
        default_factory=list,
        description="Archive paths relative to the top-level directory",
    )


class InventoryItem(BaseModel):
    path: str
    size: int
    sha256: str


class BackupManifest(BaseModel):
    """Archive manifest written as ``manifest.json``."""

    name: str = Field(description="Archive name without suffix")
    kind: BackupKind = Field(description="Archive kind")
    created_at: str = Field(description="ISO 8601 creation time")
    version: str | None = Field(default=None, description="Deployed version at backup time")
    hostname: str | None = Field(default=None, description="Host the backup ran on")
    components: list[BackupComponent] = Field(default_factory=list)
    inventory: list[InventoryItem] = Field(default_factory=list)

    def components_of(self, kind: ComponentKind) -> list[BackupComponent]:
        return [c for c in self.components if c.kind == kind]


class BackupArchive:
    """An archive file in the backup directory."""

    def __init__(
        self,
        path: Path,
        kind: BackupKind,
        created: datetime | None = None,
        integrity: str = "unknown",
    ) -> None:
        self.path = path
        self.kind = kind
        self.created = created
        self.integrity = integrity

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def retention_class(self) -> str:
        return self.kind.value

    @property
    def size(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0

    @classmethod
    def from_path(cls, path: Path) -> BackupArchive | None:
        """Build from a file name; None when the name is not an archive name."""
        match = ARCHIVE_PATTERN.match(path.name)
        if match is None:
            return None
        created = datetime.strptime(match.group("stamp"), "%Y%m%d_%H%M%S")
        return cls(path, BackupKind(match.group("kind")), created)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "kind": self.kind.value,
            "size": self.size,
            "created": self.created.isoformat() if self.created else None,
            "integrity": self.integrity,
        }
