"""
Tests for the Docker Compose runtime.

This test module validates:
- Health status mapping
- Compose command lines (project, directory, profiles)
- Health lookup through ps + inspect
- Pull failures surfacing as transient errors
- Subprocess timeouts and missing binaries
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest import mock

import pytest
from conftest import build_config

from stackpilot.errors import InternalError, TransientInfrastructureError
from stackpilot.runtime.base import CommandResult, HealthStatus, parse_health_status
from stackpilot.runtime.compose import ComposeRuntime, _run_engine


def _result(args: list[str], rc: int = 0, stdout: bytes = b"", stderr: str = "") -> CommandResult:
    return CommandResult(args, rc, stdout, stderr)


@pytest.fixture
def compose_runtime(tmp_path: Path) -> ComposeRuntime:
    config = build_config(
        tmp_path,
        deployment={
            "deploy_dir": str(tmp_path),
            "project_name": "demo",
            "profiles": ["monitoring"],
        },
    )
    return ComposeRuntime(config)


# =============================================================================
# Tests for parse_health_status
# =============================================================================


class TestParseHealthStatus:
    """Tests for engine state mapping."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("healthy\n", HealthStatus.HEALTHY),
            ("'running'", HealthStatus.HEALTHY),
            ("unhealthy", HealthStatus.UNHEALTHY),
            ("exited", HealthStatus.UNHEALTHY),
            ("starting", HealthStatus.STARTING),
            ("restarting", HealthStatus.STARTING),
            ("", HealthStatus.NOT_FOUND),
        ],
    )
    def test_mapping(self, raw: str, expected: HealthStatus) -> None:
        """Test state strings map to health statuses."""
        assert parse_health_status(raw) == expected


# =============================================================================
# Tests for ComposeRuntime
# =============================================================================


class TestComposeRuntime:
    """Tests for ComposeRuntime command construction and parsing."""

    @pytest.mark.asyncio
    async def test_start_command_line(
        self, compose_runtime: ComposeRuntime, tmp_path: Path
    ) -> None:
        """Test that compose calls carry project, directory and profiles."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(side_effect=lambda args, **kw: _result(args)),
        ) as run:
            await compose_runtime.start(["postgres", "redis"])

        args = run.call_args.args[0]
        assert args == [
            "docker",
            "compose",
            "--project-name",
            "demo",
            "--project-directory",
            str(tmp_path),
            "--profile",
            "monitoring",
            "up",
            "-d",
            "postgres",
            "redis",
        ]
        assert run.call_args.kwargs["cwd"] == tmp_path

    @pytest.mark.asyncio
    async def test_down_passes_timeout(self, compose_runtime: ComposeRuntime) -> None:
        """Test that the stop timeout reaches the engine."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(side_effect=lambda args, **kw: _result(args)),
        ) as run:
            await compose_runtime.down(45)

        assert run.call_args.args[0][-3:] == ["down", "--timeout", "45"]

    @pytest.mark.asyncio
    async def test_health_uses_inspect(self, compose_runtime: ComposeRuntime) -> None:
        """Test health lookup from the service container."""
        responses = [
            _result(["ps"], stdout=b"abc123\n"),
            _result(["inspect"], stdout=b"healthy\n"),
        ]
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(side_effect=responses),
        ) as run:
            status = await compose_runtime.health("backend")

        assert status == HealthStatus.HEALTHY
        assert run.call_args.args[0][:2] == ["docker", "inspect"]
        assert run.call_args.args[0][-1] == "abc123"

    @pytest.mark.asyncio
    async def test_health_without_container(self, compose_runtime: ComposeRuntime) -> None:
        """Test that a service without a container is not found."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(return_value=_result(["ps"], stdout=b"")),
        ):
            assert await compose_runtime.health("backend") == HealthStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_pull_failure_is_transient(self, compose_runtime: ComposeRuntime) -> None:
        """Test that a failed pull raises TransientInfrastructureError."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(return_value=_result(["pull"], rc=1, stderr="timeout")),
        ):
            with pytest.raises(TransientInfrastructureError) as exc_info:
                await compose_runtime.pull()

        assert exc_info.value.details["stderr"] == "timeout"

    @pytest.mark.asyncio
    async def test_running_services(self, compose_runtime: ComposeRuntime) -> None:
        """Test parsing of the running service list."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(return_value=_result(["ps"], stdout=b"postgres\nbackend\n\n")),
        ):
            assert await compose_runtime.running_services() == ["postgres", "backend"]

    @pytest.mark.asyncio
    async def test_run_ephemeral_env(self, compose_runtime: ComposeRuntime) -> None:
        """Test that ephemeral containers get their environment."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(side_effect=lambda args, **kw: _result(args)),
        ) as run:
            name = await compose_runtime.run_ephemeral(
                "postgres:17-alpine", "verify-1", {"POSTGRES_PASSWORD": "x"}
            )

        assert name == "verify-1"
        args = run.call_args.args[0]
        assert "-e" in args
        assert "POSTGRES_PASSWORD=x" in args
        assert args[-1] == "postgres:17-alpine"

    @pytest.mark.asyncio
    async def test_run_ephemeral_failure(self, compose_runtime: ComposeRuntime) -> None:
        """Test that a failed ephemeral start is an internal error."""
        with mock.patch(
            "stackpilot.runtime.compose._run_engine",
            new=mock.AsyncMock(return_value=_result(["run"], rc=125, stderr="no image")),
        ):
            with pytest.raises(InternalError):
                await compose_runtime.run_ephemeral("img", "verify-1", {})


# =============================================================================
# Tests for _run_engine
# =============================================================================


class TestRunEngine:
    """Tests for the subprocess wrapper."""

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        """Test that a missing binary raises InternalError."""
        with mock.patch(
            "asyncio.create_subprocess_exec",
            new=mock.AsyncMock(side_effect=FileNotFoundError("docker")),
        ):
            with pytest.raises(InternalError, match="not available"):
                await _run_engine(["docker", "version"])

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self) -> None:
        """Test that a hung command is killed and reported as transient."""

        async def hang(_stdin: bytes | None) -> tuple[bytes, bytes]:
            await asyncio.sleep(10)
            return b"", b""

        proc = mock.MagicMock()
        proc.communicate = hang
        proc.wait = mock.AsyncMock(return_value=-9)
        with mock.patch(
            "asyncio.create_subprocess_exec", new=mock.AsyncMock(return_value=proc)
        ):
            with pytest.raises(TransientInfrastructureError, match="timed out"):
                await _run_engine(["docker", "compose", "pull"], timeout=0.01)

        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_captures_output(self) -> None:
        """Test stdout and stderr capture."""
        proc = mock.MagicMock()
        proc.communicate = mock.AsyncMock(return_value=(b"out", b"err"))
        proc.returncode = 3
        with mock.patch(
            "asyncio.create_subprocess_exec", new=mock.AsyncMock(return_value=proc)
        ):
            result = await _run_engine(["docker", "ps"])

        assert result.returncode == 3
        assert result.stdout == b"out"
        assert result.stderr == "err"
        assert not result.ok
