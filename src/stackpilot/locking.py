"""
Host-local advisory locking for mutating lifecycle operations.

Update, rollback, restore and data backups hold a named lock for their full
duration. Acquisition never waits: the lock is granted immediately or a
StateConflictError naming the lock file and current holder is raised.

The lock is an exclusive ``flock`` on ``<lock_dir>/<name>.lock``. The file
stays on disk as a marker; while the lock is held it contains the holder's
identity as JSON, and it is truncated on release. A crashed holder's lock is
released by the kernel together with its file descriptor.
"""

from __future__ import annotations

import fcntl
import json
import os
import socket
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stackpilot.errors import StateConflictError
from stackpilot.logging import get_logger

logger = get_logger(__name__)

LIFECYCLE_LOCK = "lifecycle"


class LockHandle:
    """
    A held lock: named resource plus holder identity.

    Use as a context manager or call ``release()``; releasing twice is a
    no-op.
    """

    def __init__(self, name: str, path: Path, fd: int, holder: dict[str, Any]) -> None:
        self.name = name
        self.path = path
        self.holder = holder
        self._fd: int | None = fd

    @property
    def held(self) -> bool:
        """Whether this handle still owns the lock."""
        return self._fd is not None

    def release(self) -> None:
        """Release the lock and clear the holder record."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released lock", extra={"lock": self.name, "path": str(self.path)})

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"LockHandle(name={self.name!r}, path={str(self.path)!r}, held={self.held})"


class LockManager:
    """
    Grants named, non-blocking, exclusive locks under a lock directory.

    Example:
        >>> locks = LockManager(Path("/opt/stack/.locks"))
        >>> with locks.acquire("lifecycle", holder="update", operation="update 2.1.0"):
        ...     ...
    """

    def __init__(self, lock_dir: Path | str) -> None:
        self.lock_dir = Path(lock_dir)

    def path_for(self, name: str) -> Path:
        """Return the lock file path for a named resource."""
        return self.lock_dir / f"{name}.lock"

    def acquire(
        self,
        name: str = LIFECYCLE_LOCK,
        *,
        holder: str,
        operation: str | None = None,
    ) -> LockHandle:
        """
        Acquire a named lock without waiting.

        Args:
            name: Lock resource name.
            holder: Identity of the acquiring operation (e.g. "update").
            operation: Optional description recorded for diagnostics.

        Returns:
            The held LockHandle.

        Raises:
            StateConflictError: If another operation holds the lock.
        """
        path = self.path_for(name)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            current = self.holder(name)
            who = current.get("holder", "unknown") if current else "unknown"
            pid = current.get("pid") if current else None
            logger.warning(
                "Lock is held by another operation",
                extra={"lock": name, "path": str(path), "current_holder": who, "pid": pid},
            )
            raise StateConflictError(
                f"Lock '{name}' is held by {who} (pid {pid}); lock file: {path}",
                details={"lock": name, "path": str(path), "current_holder": current},
                remediation=(
                    "Wait for the running operation to finish. If no stackpilot "
                    f"process is running, inspect {path}."
                ),
            ) from None
        except OSError:
            os.close(fd)
            raise

        record: dict[str, Any] = {
            "holder": holder,
            "operation": operation or holder,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(record).encode())
        os.fsync(fd)

        logger.info("Acquired lock", extra={"lock": name, "holder": holder})
        return LockHandle(name, path, fd, record)

    def holder(self, name: str = LIFECYCLE_LOCK) -> dict[str, Any] | None:
        """
        Read the holder record of a lock without acquiring it.

        Returns:
            The holder record, or None when the lock is free or unreadable.
        """
        path = self.path_for(name)
        try:
            raw = path.read_text().strip()
        except FileNotFoundError:
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {"holder": "unknown", "raw": raw}
        return data if isinstance(data, dict) else None

    def is_locked(self, name: str = LIFECYCLE_LOCK) -> bool:
        """Probe whether a lock is currently held by anyone."""
        path = self.path_for(name)
        if not path.exists():
            return False
        fd = os.open(path, os.O_RDONLY)
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        finally:
            os.close(fd)
        return False
