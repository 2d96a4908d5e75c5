"""
Tests for the tiered service launcher.

This test module validates:
- Tier ordering and health gating
- Critical failures stopping the launch (later tiers not started)
- Non-critical timeouts degrading to warnings
- Start command failures
- Graceful and forced stops
"""

from __future__ import annotations

import pytest
from conftest import FakeRuntime

from stackpilot.config import ServiceDescriptor
from stackpilot.errors import InternalError
from stackpilot.lifecycle.launcher import ServiceLauncher, ServiceStatus, partition_tiers
from stackpilot.runtime.base import CommandResult, HealthStatus

# =============================================================================
# Fixtures
# =============================================================================


def _services() -> list[ServiceDescriptor]:
    return [
        ServiceDescriptor(name="nginx", tier=2, health_timeout=0.5),
        ServiceDescriptor(name="postgres", tier=0, health_timeout=0.5, datastore=True),
        ServiceDescriptor(name="redis", tier=0, health_timeout=0.5),
        ServiceDescriptor(name="backend", tier=1, health_timeout=0.5),
        ServiceDescriptor(name="worker", tier=1, critical=False, health_timeout=0.05),
    ]


def _launcher(runtime: FakeRuntime) -> ServiceLauncher:
    return ServiceLauncher(runtime, poll_interval=0.01, stop_timeout=5)


# =============================================================================
# Tests for launch_all
# =============================================================================


class TestLaunchAll:
    """Tests for ServiceLauncher.launch_all."""

    def test_partition_tiers(self) -> None:
        """Test grouping by ascending tier."""
        tiers = partition_tiers(_services())

        assert [tier for tier, _ in tiers] == [0, 1, 2]
        assert [s.name for s in tiers[0][1]] == ["postgres", "redis"]

    @pytest.mark.asyncio
    async def test_all_healthy(self) -> None:
        """Test a clean launch in tier order."""
        runtime = FakeRuntime()

        result = await _launcher(runtime).launch_all(_services())

        assert result.overall_ok
        assert result.tiers_started == [0, 1, 2]
        assert all(o.status == ServiceStatus.HEALTHY for o in result.per_service.values())
        starts = [call[1][0] for call in runtime.calls if call[0] == "start"]
        assert starts.index("postgres") < starts.index("backend") < starts.index("nginx")
        assert starts.index("redis") < starts.index("worker")

    @pytest.mark.asyncio
    async def test_waits_through_starting(self) -> None:
        """Test that starting probes are polled until healthy."""
        runtime = FakeRuntime(
            health={
                "postgres": [HealthStatus.STARTING, HealthStatus.STARTING, HealthStatus.HEALTHY]
            }
        )

        result = await _launcher(runtime).launch_all(_services())

        assert result.status_of("postgres") == ServiceStatus.HEALTHY
        assert sum(1 for c in runtime.calls if c == ("health", "postgres")) == 3

    @pytest.mark.asyncio
    async def test_critical_unhealthy_stops_later_tiers(self) -> None:
        """Test that an unhealthy critical service blocks later tiers."""
        runtime = FakeRuntime(health={"postgres": [HealthStatus.UNHEALTHY]})

        result = await _launcher(runtime).launch_all(_services())

        assert not result.overall_ok
        assert result.failed_services == ["postgres"]
        assert result.status_of("redis") == ServiceStatus.HEALTHY
        for name in ("backend", "worker", "nginx"):
            assert result.status_of(name) == ServiceStatus.NOT_STARTED
        assert result.tiers_started == [0]
        started = {call[1][0] for call in runtime.calls if call[0] == "start"}
        assert started == {"postgres", "redis"}

    @pytest.mark.asyncio
    async def test_critical_timeout_fails(self) -> None:
        """Test that a critical service stuck in starting fails."""
        runtime = FakeRuntime(health={"backend": [HealthStatus.STARTING]})

        result = await _launcher(runtime).launch_all(_services())

        assert result.status_of("backend") == ServiceStatus.FAILED
        assert "timed out" in result.per_service["backend"].message
        assert result.status_of("nginx") == ServiceStatus.NOT_STARTED

    @pytest.mark.asyncio
    async def test_non_critical_timeout_is_warning(self) -> None:
        """Test that a non-critical timeout does not block the launch."""
        runtime = FakeRuntime(health={"worker": [HealthStatus.STARTING]})

        result = await _launcher(runtime).launch_all(_services())

        assert result.overall_ok
        assert result.warnings == ["worker"]
        assert result.status_of("nginx") == ServiceStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_health_timeout_override(self) -> None:
        """Test that a launch-wide timeout replaces per-service timeouts."""
        runtime = FakeRuntime(health={"postgres": [HealthStatus.STARTING]})
        services = [ServiceDescriptor(name="postgres", health_timeout=60)]

        result = await _launcher(runtime).launch_all(services, health_timeout=0.05)

        assert result.status_of("postgres") == ServiceStatus.FAILED

    @pytest.mark.asyncio
    async def test_start_command_failure(self) -> None:
        """Test that a failing start command is a hard failure."""
        runtime = FakeRuntime()

        async def failing_start(services: list[str]) -> CommandResult:
            return CommandResult(["up"], 1, b"", "no such image")

        runtime.start = failing_start  # type: ignore[method-assign]

        result = await _launcher(runtime).launch_all(_services())

        assert not result.overall_ok
        assert "no such image" in result.per_service["postgres"].message
        assert runtime.count("health") == 0

    @pytest.mark.asyncio
    async def test_to_dict(self) -> None:
        """Test result serialization."""
        result = await _launcher(FakeRuntime()).launch_all(_services()[:1])

        data = result.to_dict()
        assert data["overall_ok"] is True
        assert data["services"]["nginx"]["status"] == "healthy"


# =============================================================================
# Tests for stop_all
# =============================================================================


class TestStopAll:
    """Tests for ServiceLauncher.stop_all."""

    @pytest.mark.asyncio
    async def test_background_services_stop_first(self) -> None:
        """Test that non-critical services get their grace period first."""
        runtime = FakeRuntime()
        services = _services()

        await _launcher(runtime).stop_all(services)

        assert runtime.calls[0] == ("stop", ("worker",), 10.0)
        assert runtime.calls[-1] == ("down", 5)

    @pytest.mark.asyncio
    async def test_forced_stop(self) -> None:
        """Test kill and second down after a failed graceful stop."""
        runtime = FakeRuntime()
        outcomes = iter([1, 0])

        async def down(timeout: float) -> CommandResult:
            runtime.calls.append(("down", timeout))
            return CommandResult(["down"], next(outcomes), b"", "")

        runtime.down = down  # type: ignore[method-assign]

        await _launcher(runtime).stop_all([])

        assert [c[0] for c in runtime.calls] == ["down", "kill", "down"]
        assert runtime.calls[-1] == ("down", 0)

    @pytest.mark.asyncio
    async def test_stop_failure_raises(self) -> None:
        """Test that an unstoppable stack raises InternalError."""
        runtime = FakeRuntime()

        async def down(timeout: float) -> CommandResult:
            return CommandResult(["down"], 1, b"", "daemon gone")

        runtime.down = down  # type: ignore[method-assign]

        with pytest.raises(InternalError):
            await _launcher(runtime).stop_all([])
