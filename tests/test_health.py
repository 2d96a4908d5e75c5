"""
Tests for aggregate health verification.

This test module validates:
- Service probes and criticality
- HTTP endpoint checks
- Report exit codes
- Datastore, disk and certificate system checks
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from conftest import FakeRuntime, build_config, write_certificate

from stackpilot.config import HttpEndpoint, ServiceDescriptor
from stackpilot.errors import EXIT_CRITICAL, EXIT_OK, EXIT_RECOVERABLE
from stackpilot.lifecycle.health import HealthChecker, HealthCheckResult, VerificationReport
from stackpilot.runtime.base import HealthStatus

SERVICES = [
    ServiceDescriptor(name="postgres", tier=0),
    ServiceDescriptor(name="worker", tier=1, critical=False),
]


def _client(status_code: int) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code))
    )


class TestVerificationReport:
    """Tests for VerificationReport."""

    def test_exit_codes(self) -> None:
        """Test exit codes for clean, degraded and failed reports."""
        passed = HealthCheckResult("a", True)
        warning = HealthCheckResult("b", False, critical=False)
        failure = HealthCheckResult("c", False)

        assert VerificationReport([passed]).exit_code == EXIT_OK
        assert VerificationReport([passed, warning]).exit_code == EXIT_RECOVERABLE
        assert VerificationReport([warning, failure]).exit_code == EXIT_CRITICAL
        assert VerificationReport([passed, warning]).ok
        assert not VerificationReport([failure]).ok

    def test_to_dict(self) -> None:
        """Test serialization."""
        report = VerificationReport(
            [HealthCheckResult("a", True), HealthCheckResult("b", False, critical=False)]
        )

        data = report.to_dict()
        assert data["ok"] is True
        assert data["passed"] == 1
        assert data["warnings"] == ["b"]


class TestHealthChecker:
    """Tests for HealthChecker."""

    @pytest.mark.asyncio
    async def test_all_healthy(self) -> None:
        """Test a healthy stack."""
        report = await HealthChecker(FakeRuntime()).verify(SERVICES)

        assert report.ok
        assert [r.name for r in report.results] == ["service_postgres", "service_worker"]

    @pytest.mark.asyncio
    async def test_non_critical_failure_is_warning(self) -> None:
        """Test that an unhealthy non-critical service only warns."""
        runtime = FakeRuntime(health={"worker": [HealthStatus.UNHEALTHY]})

        report = await HealthChecker(runtime).verify(SERVICES)

        assert report.ok
        assert report.exit_code == EXIT_RECOVERABLE
        assert report.warnings[0].message == "Service worker is unhealthy"

    @pytest.mark.asyncio
    async def test_critical_failure(self) -> None:
        """Test that a missing critical service fails verification."""
        runtime = FakeRuntime(health={"postgres": [HealthStatus.NOT_FOUND]})

        report = await HealthChecker(runtime).verify(SERVICES)

        assert not report.ok
        assert [r.name for r in report.critical_failures] == ["service_postgres"]

    @pytest.mark.asyncio
    async def test_probe_exception_is_not_found(self) -> None:
        """Test that a raising probe counts as not found."""
        runtime = FakeRuntime()

        async def broken(service: str) -> HealthStatus:
            raise RuntimeError("engine gone")

        runtime.health = broken  # type: ignore[method-assign]

        result = await HealthChecker(runtime).check_service(SERVICES[0])

        assert not result.passed
        assert result.details["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_endpoint_success(self) -> None:
        """Test a 2xx endpoint."""
        endpoint = HttpEndpoint(name="proxy", url="http://localhost/health")

        async with _client(200) as client:
            result = await HealthChecker(FakeRuntime()).check_endpoint(endpoint, client)

        assert result.passed
        assert result.name == "http_proxy"

    @pytest.mark.asyncio
    async def test_endpoint_error_status(self) -> None:
        """Test a 5xx endpoint."""
        endpoint = HttpEndpoint(name="api", url="http://localhost/api/health", critical=False)

        async with _client(503) as client:
            result = await HealthChecker(FakeRuntime()).check_endpoint(endpoint, client)

        assert not result.passed
        assert not result.critical
        assert result.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_endpoint_connection_error(self) -> None:
        """Test an unreachable endpoint."""
        endpoint = HttpEndpoint(name="proxy", url="http://localhost/health")

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            result = await HealthChecker(FakeRuntime()).check_endpoint(endpoint, client)

        assert not result.passed
        assert "HTTP check failed" in (result.message or "")

    @pytest.mark.asyncio
    async def test_skip_endpoints(self) -> None:
        """Test that endpoint checks can be skipped."""
        checker = HealthChecker(
            FakeRuntime(), [HttpEndpoint(name="proxy", url="http://127.0.0.1:9/none")]
        )

        report = await checker.verify(SERVICES, include_endpoints=False)

        assert len(report.results) == 2


# =============================================================================
# Tests for system checks
# =============================================================================


def _disk(percent: float, free_gb: float = 10.0) -> Callable[[str], SimpleNamespace]:
    return lambda path: SimpleNamespace(percent=percent, free=free_gb * 1024**3)


class TestSystemChecks:
    """Tests for datastore, disk and certificate checks."""

    @pytest.mark.parametrize(
        ("percent", "status", "exit_code"),
        [
            (42.0, "pass", EXIT_OK),
            (85.0, "warn", EXIT_OK),
            (93.0, "fail", EXIT_RECOVERABLE),
        ],
    )
    def test_disk_thresholds(
        self, tmp_path: Path, percent: float, status: str, exit_code: int
    ) -> None:
        """Test the warning and failure thresholds of the disk check."""
        checker = HealthChecker(FakeRuntime(), deploy_dir=tmp_path, disk_usage=_disk(percent))

        result = checker.check_disk()

        assert result.status == status
        assert not result.critical
        assert result.message == f"{percent:.0f}% used (10.0 GB free)"
        assert VerificationReport([result]).exit_code == exit_code

    def test_disk_usage_unavailable(self, tmp_path: Path) -> None:
        """Test that an unreadable filesystem only warns."""

        def broken(path: str) -> SimpleNamespace:
            raise OSError("no such device")

        result = HealthChecker(FakeRuntime(), deploy_dir=tmp_path, disk_usage=broken).check_disk()

        assert result.status == "warn"

    @pytest.mark.parametrize(
        ("days", "status"),
        [(90, "pass"), (20, "warn"), (5, "fail"), (-1, "fail")],
    )
    def test_certificate_expiry(self, deploy_dir: Path, days: int, status: str) -> None:
        """Test the expiry windows of the certificate check."""
        write_certificate(deploy_dir / "ssl", days=days)
        config = build_config(deploy_dir)

        result = HealthChecker.from_config(FakeRuntime(), config).check_certificate()

        assert result.status == status
        assert not result.critical
        if days < 0:
            assert result.message == "Expired"

    def test_certificate_not_configured(self, deploy_dir: Path) -> None:
        """Test that a missing optional certificate is a warning."""
        checker = HealthChecker.from_config(FakeRuntime(), build_config(deploy_dir))

        assert checker.check_certificate().status == "warn"

    def test_required_certificate_missing(self, deploy_dir: Path) -> None:
        """Test that a missing required certificate fails."""
        config = build_config(deploy_dir, certificates={"required": True})

        result = HealthChecker.from_config(FakeRuntime(), config).check_certificate()

        assert result.status == "fail"
        assert result.message == "Certificate not present"

    @pytest.mark.asyncio
    async def test_datastore_unreachable(self, deploy_dir: Path) -> None:
        """Test that an unreachable datastore is a critical failure."""
        runtime = FakeRuntime(failing_tools={"pg_isready"})
        checker = HealthChecker.from_config(runtime, build_config(deploy_dir))

        result = await checker.check_datastore()

        assert not result.passed
        assert result.critical
        assert result.name == "datastore_postgres"
        assert ("exec", "postgres", ("pg_isready", "-U", "postgres")) in runtime.calls

    @pytest.mark.asyncio
    async def test_system_checks_only_on_request(self, deploy_dir: Path) -> None:
        """Test that verification runs system checks only when asked."""
        config = build_config(deploy_dir)
        checker = HealthChecker.from_config(FakeRuntime(), config)
        checker._disk_usage = _disk(10.0)

        plain = await checker.verify(config.services)
        full = await checker.verify(config.services, include_system=True)

        assert [r.name for r in full.results][len(plain.results) :] == [
            "datastore_postgres",
            "disk_space",
            "certificate",
        ]
        assert full.ok
        assert full.exit_code == EXIT_OK
        assert [r.name for r in full.advisories] == ["certificate"]
