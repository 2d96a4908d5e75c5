"""
Persisted installation state.

A single ``InstallState`` record per deployment tracks the install step
sequence. It is read and written only through ``InstallStateStore``, which
writes atomically (temp file + rename) and never deletes the record; a new
install overwrites it.
"""

from __future__ import annotations

import json
import os
import socket
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from stackpilot.fsops import atomic_write_json
from stackpilot.logging import get_logger

logger = get_logger(__name__)


class StepStatus(str, Enum):
    """Status of the current install step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class InstallState(BaseModel):
    """
    Persistent install progress, saved before and after every step.

    ``completed_steps`` always holds a prefix of the step order: a step is
    appended only after every earlier step completed.
    """

    step: str | None = Field(default=None, description="Current step name")
    status: StepStatus = Field(default=StepStatus.PENDING, description="Current step status")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO 8601 time of the last write",
    )
    completed_steps: list[str] = Field(
        default_factory=list,
        description="Steps completed, in order",
    )
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Target parameters (version, options)",
    )
    diagnostic: dict[str, Any] | None = Field(
        default=None,
        description="Error message and log path of the last failure",
    )
    installer: str = Field(
        default_factory=lambda: os.environ.get("SUDO_USER") or os.environ.get("USER", "unknown"),
        description="User that ran the install",
    )
    hostname: str = Field(
        default_factory=socket.gethostname,
        description="Host the install ran on",
    )

    @property
    def finished(self) -> bool:
        return self.status == StepStatus.COMPLETED and self.step == "complete"


class InstallStateStore:
    """Reads and writes the InstallState record."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> InstallState | None:
        """
        Load the persisted state.

        Returns:
            The state, or None when no readable record exists.
        """
        if not self.path.is_file():
            return None
        try:
            data = json.loads(self.path.read_text())
            state = InstallState(**data)
        except (OSError, ValueError) as e:
            logger.warning(
                "Failed to load install state",
                extra={"path": str(self.path), "error": str(e)},
            )
            return None
        logger.debug(
            "Loaded install state",
            extra={"path": str(self.path), "step": state.step, "status": state.status.value},
        )
        return state

    def save(self, state: InstallState) -> InstallState:
        """Stamp and atomically write the state (mode 0600)."""
        state.timestamp = datetime.now(UTC).isoformat()
        atomic_write_json(self.path, state.model_dump(mode="json"), mode=0o600)
        logger.debug(
            "Saved install state",
            extra={"path": str(self.path), "step": state.step, "status": state.status.value},
        )
        return state
