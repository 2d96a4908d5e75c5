"""
Aggregate health verification.

The verification pass re-probes every managed service once and, when
configured, requests HTTP endpoints (the reverse proxy, application health
routes). It is run at the end of install, update, rollback and restore, and
on its own by the ``health-check`` command.

The ``health-check`` command also runs the system checks: datastore
reachability, deploy-dir disk usage and certificate expiry. Disk and
certificate checks are never critical; a check may pass with a warning.

Exit codes for ``health-check``:
- 0: every check passed
- 1: only non-critical checks failed
- 2: at least one critical check failed
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import psutil

from stackpilot.certificates import inspect_certificate
from stackpilot.config import HttpEndpoint, ServiceDescriptor, VerificationConfig
from stackpilot.errors import EXIT_CRITICAL, EXIT_OK, EXIT_RECOVERABLE, LifecycleError
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime, HealthStatus

if TYPE_CHECKING:
    from stackpilot.backup.datastore import DatastoreClient
    from stackpilot.config import AppConfig, CertificatesConfig

logger = get_logger(__name__)

DiskUsage = Callable[[str], Any]


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        critical: bool = True,
        warning: bool = False,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            name: Name of the health check.
            passed: Whether the check passed.
            message: Optional message describing the result.
            details: Optional additional details.
            critical: Whether a failure of this check is critical.
            warning: Whether a passed check needs attention.
        """
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}
        self.critical = critical
        self.warning = warning and passed

    @property
    def status(self) -> str:
        if not self.passed:
            return "fail"
        return "warn" if self.warning else "pass"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status,
            "passed": self.passed,
            "critical": self.critical,
            "message": self.message,
            "details": self.details,
        }


class VerificationReport:
    """Outcome of one aggregate verification pass."""

    def __init__(self, results: list[HealthCheckResult]) -> None:
        self.results = results

    @property
    def critical_failures(self) -> list[HealthCheckResult]:
        return [r for r in self.results if not r.passed and r.critical]

    @property
    def warnings(self) -> list[HealthCheckResult]:
        return [r for r in self.results if not r.passed and not r.critical]

    @property
    def advisories(self) -> list[HealthCheckResult]:
        """Checks that passed with a warning; they never change the exit code."""
        return [r for r in self.results if r.warning]

    @property
    def ok(self) -> bool:
        """True iff no critical check failed."""
        return not self.critical_failures

    @property
    def exit_code(self) -> int:
        if self.critical_failures:
            return EXIT_CRITICAL
        if self.warnings:
            return EXIT_RECOVERABLE
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "passed": sum(1 for r in self.results if r.passed),
            "critical_failures": [r.name for r in self.critical_failures],
            "warnings": [r.name for r in self.warnings],
            "advisories": [r.name for r in self.advisories],
            "results": [r.to_dict() for r in self.results],
        }


class HealthChecker:
    """
    Runs the aggregate verification pass.

    Service checks go through the container runtime; endpoint checks use an
    ``httpx.AsyncClient``. System checks run only for the parts that were
    supplied (``deploy_dir``, ``certificates``, ``datastore``); use
    ``from_config`` to wire all of them.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        endpoints: list[HttpEndpoint] | None = None,
        *,
        settings: VerificationConfig | None = None,
        deploy_dir: Path | None = None,
        certificates: CertificatesConfig | None = None,
        datastore: DatastoreClient | None = None,
        datastore_service: str = "postgres",
        disk_usage: DiskUsage = psutil.disk_usage,
    ) -> None:
        self.runtime = runtime
        self.endpoints = endpoints or []
        self.settings = settings or VerificationConfig()
        self.deploy_dir = deploy_dir
        self.certificates = certificates
        self.datastore = datastore
        self.datastore_service = datastore_service
        self._disk_usage = disk_usage

    @classmethod
    def from_config(cls, runtime: ContainerRuntime, config: AppConfig) -> HealthChecker:
        """Build a checker with endpoints and every system check configured."""
        # stackpilot.backup imports this module
        from stackpilot.backup.datastore import service_client

        return cls(
            runtime,
            config.verification.endpoints,
            settings=config.verification,
            deploy_dir=config.deploy_dir,
            certificates=config.certificates,
            datastore=service_client(
                runtime, config.backups.datastore_service, config.backups.datastore_user
            ),
            datastore_service=config.backups.datastore_service,
        )

    async def check_service(self, descriptor: ServiceDescriptor) -> HealthCheckResult:
        """Probe one service once."""
        try:
            status = await self.runtime.health(descriptor.name)
        except Exception as e:
            logger.warning(
                "Health probe raised",
                extra={"service": descriptor.name, "error": str(e)},
            )
            status = HealthStatus.NOT_FOUND

        passed = status == HealthStatus.HEALTHY
        return HealthCheckResult(
            name=f"service_{descriptor.name}",
            passed=passed,
            message=f"Service {descriptor.name} is {status.value}",
            details={"status": status.value, "tier": descriptor.tier},
            critical=descriptor.critical,
        )

    async def check_endpoint(
        self,
        endpoint: HttpEndpoint,
        client: httpx.AsyncClient,
    ) -> HealthCheckResult:
        """Request an HTTP endpoint once and expect a 2xx answer."""
        name = f"http_{endpoint.name}"
        try:
            response = await client.get(endpoint.url, timeout=endpoint.timeout)
        except httpx.HTTPError as e:
            return HealthCheckResult(
                name=name,
                passed=False,
                message=f"HTTP check failed: {e}",
                details={"url": endpoint.url},
                critical=endpoint.critical,
            )

        passed = response.is_success
        return HealthCheckResult(
            name=name,
            passed=passed,
            message=(
                f"HTTP check passed at {endpoint.url}"
                if passed
                else f"HTTP check returned {response.status_code}"
            ),
            details={"url": endpoint.url, "status_code": response.status_code},
            critical=endpoint.critical,
        )

    async def check_datastore(self) -> HealthCheckResult:
        """Ask the datastore whether it accepts connections."""
        name = f"datastore_{self.datastore_service}"
        if self.datastore is None:
            return HealthCheckResult(name, True, "Datastore check not configured")
        try:
            ready = await self.datastore.is_ready()
        except LifecycleError as e:
            logger.warning(
                "Datastore probe raised",
                extra={"service": self.datastore_service, "error": e.message},
            )
            ready = False
        return HealthCheckResult(
            name=name,
            passed=ready,
            message="Accepting connections" if ready else "Not accepting connections",
            details={"service": self.datastore_service},
        )

    def check_disk(self) -> HealthCheckResult:
        """Report disk usage of the filesystem holding the deployment."""
        name = "disk_space"
        if self.deploy_dir is None:
            return HealthCheckResult(name, True, "Disk check not configured", critical=False)
        try:
            usage = self._disk_usage(str(self.deploy_dir))
        except OSError as e:
            return HealthCheckResult(
                name,
                True,
                f"Could not determine disk usage: {e}",
                critical=False,
                warning=True,
            )

        percent = float(usage.percent)
        free_gb = usage.free / 1024**3
        details = {"path": str(self.deploy_dir), "percent": percent, "free_gb": round(free_gb, 1)}
        message = f"{percent:.0f}% used ({free_gb:.1f} GB free)"
        if percent >= self.settings.disk_fail_percent:
            return HealthCheckResult(name, False, message, details, critical=False)
        warning = percent >= self.settings.disk_warn_percent
        return HealthCheckResult(name, True, message, details, critical=False, warning=warning)

    def check_certificate(self, now: datetime | None = None) -> HealthCheckResult:
        """Report how long the served certificate remains valid."""
        name = "certificate"
        if self.certificates is None or self.deploy_dir is None:
            return HealthCheckResult(name, True, "Certificate check not configured", critical=False)

        path = self.deploy_dir / self.certificates.cert_path
        if not path.is_file():
            if self.certificates.required:
                return HealthCheckResult(
                    name, False, "Certificate not present", {"path": str(path)}, critical=False
                )
            return HealthCheckResult(
                name, True, "Not configured", {"path": str(path)}, critical=False, warning=True
            )

        try:
            metadata = inspect_certificate(path)
        except LifecycleError as e:
            return HealthCheckResult(
                name, True, f"Could not read: {e.message}", critical=False, warning=True
            )

        days = metadata.days_remaining(now)
        details = {"path": str(path), "days_remaining": days, "subject": metadata.subject}
        if days <= 0:
            return HealthCheckResult(name, False, "Expired", details, critical=False)
        message = f"{days} days remaining"
        if days <= self.settings.certificate_fail_days:
            return HealthCheckResult(name, False, message, details, critical=False)
        warning = days <= self.certificates.warn_days
        return HealthCheckResult(name, True, message, details, critical=False, warning=warning)

    async def check_system(self) -> list[HealthCheckResult]:
        """Run the datastore, disk and certificate checks."""
        return [await self.check_datastore(), self.check_disk(), self.check_certificate()]

    async def verify(
        self,
        descriptors: list[ServiceDescriptor],
        *,
        include_endpoints: bool = True,
        include_system: bool = False,
    ) -> VerificationReport:
        """
        Re-probe every service and endpoint once.

        Args:
            descriptors: Services to probe.
            include_endpoints: Whether to run HTTP endpoint checks.
            include_system: Whether to run the datastore, disk and
                certificate checks.

        Returns:
            VerificationReport; ``ok`` is False iff a critical check failed.
        """
        results = list(
            await asyncio.gather(*(self.check_service(d) for d in descriptors))
        )

        if include_endpoints and self.endpoints:
            async with httpx.AsyncClient() as client:
                results.extend(
                    await asyncio.gather(
                        *(self.check_endpoint(e, client) for e in self.endpoints)
                    )
                )

        if include_system:
            results.extend(await self.check_system())

        report = VerificationReport(results)
        if report.ok:
            logger.info(
                "Verification passed",
                extra={"checks": len(results), "warnings": len(report.warnings)},
            )
        else:
            logger.error(
                "Verification failed",
                extra={"critical_failures": [r.name for r in report.critical_failures]},
            )
        for result in report.advisories:
            logger.warning(f"{result.name}: {result.message}", extra={"check": result.name})
        return report
