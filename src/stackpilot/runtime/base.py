"""
Container orchestration interface.

This module defines the ContainerRuntime abstract base class that the
lifecycle core depends on. The core never shells out to the container engine
itself; it is handed a runtime (``ComposeRuntime`` in production, a scripted
fake in tests).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class HealthStatus(str, Enum):
    """Health of a single service as reported by the engine."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    NOT_FOUND = "not_found"


def parse_health_status(raw: str) -> HealthStatus:
    """
    Map an engine state string to a HealthStatus.

    ``raw`` is the container health status when the image defines a
    healthcheck, otherwise the container state. A running container without
    a healthcheck counts as healthy.
    """
    value = raw.strip().strip("'\"").lower()
    if value in ("healthy", "running"):
        return HealthStatus.HEALTHY
    if value in ("unhealthy", "exited", "dead"):
        return HealthStatus.UNHEALTHY
    if value in ("starting", "created", "restarting", "paused"):
        return HealthStatus.STARTING
    return HealthStatus.NOT_FOUND


class CommandResult:
    """Outcome of one engine command."""

    def __init__(
        self,
        args: list[str],
        returncode: int,
        stdout: bytes = b"",
        stderr: str = "",
    ) -> None:
        self.args = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        """Decoded stdout."""
        return self.stdout.decode("utf-8", errors="replace")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (stdout truncated)."""
        return {
            "args": self.args,
            "returncode": self.returncode,
            "stdout": self.text[-2000:],
            "stderr": self.stderr[-2000:],
        }


class ContainerRuntime(ABC):
    """
    Abstract base class for container orchestration backends.

    Implementations must provide service start/stop, health inspection,
    command execution inside services, log capture, image fetches and
    ephemeral containers for test restores.
    """

    @abstractmethod
    async def check_available(self) -> str:
        """
        Verify the engine is reachable.

        Returns:
            Engine version string.

        Raises:
            InternalError: If the engine cannot be used.
        """

    @abstractmethod
    async def start(self, services: list[str]) -> CommandResult:
        """Start (create if needed) the given services in the background."""

    @abstractmethod
    async def stop(self, services: list[str], timeout: float) -> CommandResult:
        """Stop the given services, killing them after ``timeout`` seconds."""

    @abstractmethod
    async def down(self, timeout: float) -> CommandResult:
        """Stop and remove every service of the stack."""

    @abstractmethod
    async def kill(self) -> CommandResult:
        """Kill every service of the stack."""

    @abstractmethod
    async def up_all(self) -> CommandResult:
        """Start the whole stack from the configuration on disk."""

    @abstractmethod
    async def health(self, service: str) -> HealthStatus:
        """Return the current health of a service."""

    @abstractmethod
    async def exec(
        self,
        service: str,
        command: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` inside a running service."""

    @abstractmethod
    async def logs(self, tail: int = 50) -> str:
        """Return the last ``tail`` log lines of every service."""

    @abstractmethod
    async def pull(self) -> CommandResult:
        """
        Fetch the images referenced by the current configuration.

        Raises:
            TransientInfrastructureError: If the fetch fails.
        """

    @abstractmethod
    async def image_ids(self) -> list[str]:
        """Return identifiers of the images used by the stack."""

    @abstractmethod
    async def running_services(self) -> list[str]:
        """Return names of services currently running."""

    @abstractmethod
    async def run_ephemeral(self, image: str, name: str, env: dict[str, str]) -> str:
        """Start a disposable, detached container and return its name."""

    @abstractmethod
    async def exec_ephemeral(
        self,
        name: str,
        command: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` inside an ephemeral container."""

    @abstractmethod
    async def remove_ephemeral(self, name: str) -> None:
        """Force-remove an ephemeral container."""
