"""
Docker Compose implementation of the container orchestration interface.

All engine calls go through ``_run_engine``, an asyncio subprocess wrapper
with a timeout. Health is read with ``docker inspect`` from the container
that compose reports for a service.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from stackpilot.config import AppConfig
from stackpilot.errors import InternalError, TransientInfrastructureError
from stackpilot.logging import get_logger
from stackpilot.runtime.base import (
    CommandResult,
    ContainerRuntime,
    HealthStatus,
    parse_health_status,
)

logger = get_logger(__name__)

HEALTH_FORMAT = "{{if .State.Health}}{{.State.Health.Status}}{{else}}{{.State.Status}}{{end}}"


async def _run_engine(
    args: list[str],
    *,
    stdin: bytes | None = None,
    timeout: float = 300.0,
    cwd: Path | None = None,
) -> CommandResult:
    """
    Run a container engine command.

    Args:
        args: Full command line.
        stdin: Optional bytes written to the process.
        timeout: Command timeout in seconds.
        cwd: Working directory.

    Returns:
        CommandResult with raw stdout and decoded stderr.

    Raises:
        InternalError: If the engine binary is not available.
        TransientInfrastructureError: If the command times out.
    """
    logger.debug("Running engine command", extra={"command": args})
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
    except FileNotFoundError as exc:
        raise InternalError(
            f"{args[0]} not available",
            details={"args": args, "hint": "Install the container engine"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise TransientInfrastructureError(
            f"{' '.join(args[:3])} timed out after {timeout}s",
            details={"args": args},
        ) from exc

    return CommandResult(
        args=args,
        returncode=proc.returncode or 0,
        stdout=stdout or b"",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )


class ComposeRuntime(ContainerRuntime):
    """
    ContainerRuntime backed by ``docker compose`` in the deployment directory.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._deploy_dir = config.deploy_dir
        self._timeout = config.deployment.command_timeout

    def _compose(self, *args: str) -> list[str]:
        deployment = self._config.deployment
        command = [
            *deployment.compose_command,
            "--project-name",
            deployment.project_name,
            "--project-directory",
            str(self._deploy_dir),
        ]
        for profile in deployment.profiles:
            command.extend(["--profile", profile])
        command.extend(args)
        return command

    async def _run(
        self,
        args: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        result = await _run_engine(
            args,
            stdin=stdin,
            timeout=timeout or self._timeout,
            cwd=self._deploy_dir,
        )
        if not result.ok:
            logger.debug(
                "Engine command failed",
                extra={
                    "command": args,
                    "returncode": result.returncode,
                    "stderr": result.stderr[-500:],
                },
            )
        return result

    async def check_available(self) -> str:
        result = await self._run(self._compose("version", "--short"), timeout=30.0)
        if not result.ok:
            raise InternalError(
                "Container engine is not usable",
                details={"stderr": result.stderr.strip()},
            )
        return result.text.strip()

    async def start(self, services: list[str]) -> CommandResult:
        return await self._run(self._compose("up", "-d", *services))

    async def stop(self, services: list[str], timeout: float) -> CommandResult:
        return await self._run(
            self._compose("stop", "--timeout", str(int(timeout)), *services),
            timeout=timeout + self._timeout,
        )

    async def down(self, timeout: float) -> CommandResult:
        return await self._run(
            self._compose("down", "--timeout", str(int(timeout))),
            timeout=timeout + self._timeout,
        )

    async def kill(self) -> CommandResult:
        return await self._run(self._compose("kill"))

    async def up_all(self) -> CommandResult:
        return await self._run(self._compose("up", "-d"))

    async def health(self, service: str) -> HealthStatus:
        ps = await self._run(self._compose("ps", "-q", service), timeout=30.0)
        container_id = ps.text.strip().splitlines()[0] if ps.ok and ps.text.strip() else ""
        if not container_id:
            return HealthStatus.NOT_FOUND

        inspect = await self._run(
            ["docker", "inspect", "--format", HEALTH_FORMAT, container_id],
            timeout=30.0,
        )
        if not inspect.ok:
            return HealthStatus.NOT_FOUND
        return parse_health_status(inspect.text)

    async def exec(
        self,
        service: str,
        command: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return await self._run(
            self._compose("exec", "-T", service, *command),
            stdin=stdin,
            timeout=timeout or self._timeout,
        )

    async def logs(self, tail: int = 50) -> str:
        result = await self._run(self._compose("logs", "--no-color", f"--tail={tail}"))
        return result.text + result.stderr

    async def pull(self) -> CommandResult:
        result = await self._run(self._compose("pull"))
        if not result.ok:
            raise TransientInfrastructureError(
                "Image pull failed",
                details={"returncode": result.returncode, "stderr": result.stderr.strip()[-1000:]},
            )
        return result

    async def image_ids(self) -> list[str]:
        result = await self._run(self._compose("images", "-q"), timeout=60.0)
        if not result.ok:
            return []
        return sorted({line.strip() for line in result.text.splitlines() if line.strip()})

    async def running_services(self) -> list[str]:
        result = await self._run(
            self._compose("ps", "--services", "--filter", "status=running"),
            timeout=60.0,
        )
        if not result.ok:
            return []
        return [line.strip() for line in result.text.splitlines() if line.strip()]

    async def run_ephemeral(self, image: str, name: str, env: dict[str, str]) -> str:
        args = ["docker", "run", "-d", "--rm", "--name", name]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(image)
        result = await self._run(args)
        if not result.ok:
            raise InternalError(
                f"Failed to start ephemeral container {name}",
                details={"image": image, "stderr": result.stderr.strip()},
            )
        return name

    async def exec_ephemeral(
        self,
        name: str,
        command: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        return await self._run(
            ["docker", "exec", "-i", name, *command],
            stdin=stdin,
            timeout=timeout or self._timeout,
        )

    async def remove_ephemeral(self, name: str) -> None:
        result = await self._run(["docker", "rm", "-f", name], timeout=60.0)
        if not result.ok:
            logger.warning(
                "Failed to remove ephemeral container",
                extra={"container": name, "stderr": result.stderr.strip()},
            )
