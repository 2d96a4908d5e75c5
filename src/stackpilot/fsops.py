"""
Atomic file, directory and symlink operations for stackpilot.

Every piece of persisted lifecycle state (install state, checkpoints,
environment files, manifests, archives) is written through these helpers so
readers never observe a half-written file:

1. Write to a temporary sibling path
2. fsync, then atomically rename over the final path

Symlink switching follows the same temp-link + rename pattern, so the
``latest`` checkpoint pointer is never in an invalid state.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import stat
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from stackpilot.errors import InternalError
from stackpilot.logging import get_logger

logger = get_logger(__name__)

_READ_ONLY_FILE = stat.S_IRUSR | stat.S_IRGRP
_READ_ONLY_DIR = stat.S_IRUSR | stat.S_IXUSR | stat.S_IRGRP | stat.S_IXGRP


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory.
        parents: If True, create parent directories as needed.
        mode: Directory permissions (default 0o755).

    Returns:
        The directory path.

    Raises:
        InternalError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise InternalError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Safely remove a directory and its contents.

    Read-only trees (captured checkpoints) are made writable first.

    Args:
        path: Path to the directory to remove.
        ignore_errors: If True, ignore errors during removal.

    Returns:
        True if directory was removed, False if it didn't exist.

    Raises:
        InternalError: If removal fails and ignore_errors is False.
    """
    if not path.exists():
        return False

    try:
        make_writable(path)
        shutil.rmtree(path)
        logger.debug("Removed directory", extra={"path": str(path)})
        return True
    except OSError as e:
        if not ignore_errors:
            raise InternalError(
                f"Failed to remove directory: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e
        logger.warning(
            "Failed to remove directory",
            extra={"path": str(path), "error": str(e)},
        )
        return False


def atomic_write_bytes(path: Path, data: bytes, *, mode: int | None = None) -> None:
    """
    Atomically replace ``path`` with ``data``.

    Args:
        path: Destination file.
        data: File contents.
        mode: Optional permission bits applied before the rename.

    Raises:
        InternalError: If the write or rename fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except OSError as e:
        if temp_path.exists():
            temp_path.unlink()
        raise InternalError(
            f"Failed to write file atomically: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def atomic_write_text(path: Path, text: str, *, mode: int | None = None) -> None:
    """Atomically replace ``path`` with UTF-8 encoded ``text``."""
    atomic_write_bytes(path, text.encode("utf-8"), mode=mode)


def atomic_write_json(path: Path, payload: Any, *, mode: int | None = None) -> None:
    """Atomically write ``payload`` as indented JSON."""
    atomic_write_text(path, json.dumps(payload, indent=2, default=str) + "\n", mode=mode)


def sha256_file(path: Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def copy_path(source: Path, destination: Path) -> list[Path]:
    """
    Copy a file or directory tree, preserving file metadata.

    An existing destination directory is replaced, not merged.

    Args:
        source: File or directory to copy.
        destination: Destination path.

    Returns:
        The list of files written, relative to ``destination`` for trees.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        if destination.exists():
            safe_remove_directory(destination, ignore_errors=False)
        shutil.copytree(source, destination, symlinks=True)
        return sorted(p for p in destination.rglob("*") if p.is_file())

    if destination.exists() and not os.access(destination, os.W_OK):
        os.chmod(destination, stat.S_IRUSR | stat.S_IWUSR)
    shutil.copy2(source, destination)
    return [destination]


def make_read_only(path: Path) -> None:
    """Strip write permission from a file or every entry of a tree."""
    if path.is_dir():
        for entry in sorted(path.rglob("*"), reverse=True):
            if entry.is_symlink():
                continue
            os.chmod(entry, _READ_ONLY_DIR if entry.is_dir() else _READ_ONLY_FILE)
        os.chmod(path, _READ_ONLY_DIR)
    elif path.exists():
        os.chmod(path, _READ_ONLY_FILE)


def make_writable(path: Path) -> None:
    """Restore owner write permission on a file or tree."""
    if not path.exists():
        return
    entries = [path]
    if path.is_dir():
        entries.extend(path.rglob("*"))
    for entry in entries:
        if entry.is_symlink():
            continue
        bits = stat.S_IWUSR | stat.S_IRUSR
        if entry.is_dir():
            bits |= stat.S_IXUSR
        os.chmod(entry, entry.stat().st_mode | bits)


def atomic_symlink_switch(
    target: Path,
    symlink_path: Path,
    *,
    relative: bool = False,
) -> None:
    """
    Atomically switch a symlink to point to a new target.

    This operation is atomic on POSIX systems using the temp-symlink + rename
    pattern, so the symlink is never in an invalid state even if the operation
    is interrupted.

    Args:
        target: The target path the symlink should point to.
        symlink_path: The path where the symlink should be created/updated.
        relative: If True, create a relative symlink.

    Raises:
        InternalError: If the target doesn't exist or the switch fails.
    """
    if not target.exists():
        raise InternalError(
            f"Symlink target does not exist: {target}",
            details={"target": str(target)},
        )

    symlink_path.parent.mkdir(parents=True, exist_ok=True)

    if relative:
        link_target = os.path.relpath(target, symlink_path.parent)
    else:
        link_target = str(target)

    for _attempt in range(10):
        temp_path = symlink_path.parent / f".symlink_tmp_{uuid.uuid4().hex[:8]}"
        try:
            os.symlink(link_target, temp_path)
            break
        except FileExistsError:
            continue
    else:
        raise InternalError(
            "Failed to create a unique temporary symlink path after 10 attempts",
            details={"symlink": str(symlink_path), "target": str(target)},
        )

    try:
        os.rename(temp_path, symlink_path)
        logger.debug(
            "Atomic symlink switch completed",
            extra={"symlink": str(symlink_path), "target": str(target)},
        )
    except OSError as e:
        if os.path.lexists(temp_path):
            os.unlink(temp_path)
        raise InternalError(
            f"Failed to switch symlink atomically: {e}",
            details={
                "symlink": str(symlink_path),
                "target": str(target),
                "error": str(e),
            },
        ) from e


def timestamp_slug() -> str:
    """Return a local timestamp usable in file names (YYYYmmdd_HHMMSS)."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")
