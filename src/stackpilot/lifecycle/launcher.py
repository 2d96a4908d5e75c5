"""
Dependency-ordered, health-gated service startup.

Services are partitioned into tiers by ``ServiceDescriptor.tier``. For each
tier in increasing order, every service in the tier is started concurrently
and then polled until it reaches a terminal status:

- healthy: success
- unhealthy, or still not healthy when its timeout elapses: a hard failure
  for critical services, a warning for non-critical ones

The next tier starts only once every service of the current tier is
terminal and no critical service failed. A hard failure stops the launch;
services of later tiers are reported as not started.

Stopping runs the other way round: non-critical services first, each with
its own grace period, then the rest of the stack.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from itertools import groupby
from typing import Any

from stackpilot.config import ServiceDescriptor
from stackpilot.errors import InternalError, LifecycleError
from stackpilot.logging import get_logger
from stackpilot.runtime.base import ContainerRuntime, HealthStatus

logger = get_logger(__name__)


class ServiceStatus(str, Enum):
    """Terminal launch status of one service."""

    HEALTHY = "healthy"
    FAILED = "failed"
    WARNING = "warning"
    NOT_STARTED = "not_started"


class ServiceOutcome:
    """Launch outcome of one service."""

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        status: ServiceStatus,
        message: str,
        elapsed: float = 0.0,
        last_probe: HealthStatus | None = None,
    ) -> None:
        self.name = descriptor.name
        self.tier = descriptor.tier
        self.critical = descriptor.critical
        self.status = status
        self.message = message
        self.elapsed = elapsed
        self.last_probe = last_probe

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tier": self.tier,
            "critical": self.critical,
            "status": self.status.value,
            "message": self.message,
            "elapsed": round(self.elapsed, 2),
            "last_probe": self.last_probe.value if self.last_probe else None,
        }


class LaunchResult:
    """Aggregate launch outcome."""

    def __init__(self) -> None:
        self.per_service: dict[str, ServiceOutcome] = {}
        self.tiers_started: list[int] = []

    @property
    def overall_ok(self) -> bool:
        """True iff no service recorded a hard failure."""
        return not self.failed_services

    @property
    def failed_services(self) -> list[str]:
        return [
            name
            for name, outcome in self.per_service.items()
            if outcome.status == ServiceStatus.FAILED
        ]

    @property
    def warnings(self) -> list[str]:
        return [
            name
            for name, outcome in self.per_service.items()
            if outcome.status == ServiceStatus.WARNING
        ]

    def status_of(self, name: str) -> ServiceStatus | None:
        outcome = self.per_service.get(name)
        return outcome.status if outcome else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_ok": self.overall_ok,
            "tiers_started": self.tiers_started,
            "failed": self.failed_services,
            "warnings": self.warnings,
            "services": {name: o.to_dict() for name, o in self.per_service.items()},
        }


async def _immediate(outcome: ServiceOutcome) -> ServiceOutcome:
    return outcome


def partition_tiers(
    descriptors: list[ServiceDescriptor],
) -> list[tuple[int, list[ServiceDescriptor]]]:
    """Group descriptors by tier, lowest tier first."""
    ordered = sorted(descriptors, key=lambda d: d.tier)
    return [(tier, list(group)) for tier, group in groupby(ordered, key=lambda d: d.tier)]


class ServiceLauncher:
    """
    Starts and stops services through a ContainerRuntime.

    Attributes:
        runtime: Container runtime.
        poll_interval: Seconds between health probes.
        stop_timeout: Timeout handed to ``down`` when stopping the stack.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        poll_interval: float = 5.0,
        stop_timeout: float = 60.0,
    ) -> None:
        self.runtime = runtime
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout

    async def launch_all(
        self,
        descriptors: list[ServiceDescriptor],
        *,
        health_timeout: float | None = None,
    ) -> LaunchResult:
        """
        Start services tier by tier, gating each tier on health.

        Args:
            descriptors: Services to launch.
            health_timeout: Optional timeout applied to every service instead
                of its own ``health_timeout``.

        Returns:
            LaunchResult with one outcome per descriptor.
        """
        result = LaunchResult()
        tiers = partition_tiers(descriptors)

        for index, (tier, services) in enumerate(tiers):
            logger.info(
                f"Starting tier {tier}",
                extra={"tier": tier, "services": [s.name for s in services]},
            )
            result.tiers_started.append(tier)

            started = await asyncio.gather(*(self._start_service(s) for s in services))
            outcomes = await asyncio.gather(
                *(
                    self.wait_until_terminal(s, health_timeout or s.health_timeout)
                    if failure is None
                    else _immediate(failure)
                    for s, failure in zip(services, started, strict=True)
                )
            )
            for outcome in outcomes:
                result.per_service[outcome.name] = outcome

            if any(o.status == ServiceStatus.FAILED for o in outcomes):
                logger.error(
                    f"Tier {tier} failed, aborting launch",
                    extra={
                        "tier": tier,
                        "failed": [o.name for o in outcomes if o.status == ServiceStatus.FAILED],
                    },
                )
                for _later_tier, later_services in tiers[index + 1 :]:
                    for descriptor in later_services:
                        result.per_service[descriptor.name] = ServiceOutcome(
                            descriptor,
                            ServiceStatus.NOT_STARTED,
                            f"Not started: tier {tier} failed",
                        )
                return result

        logger.info(
            "Launch complete",
            extra={"services": len(result.per_service), "warnings": result.warnings},
        )
        return result

    async def _start_service(self, descriptor: ServiceDescriptor) -> ServiceOutcome | None:
        """Issue the start command; return an outcome only if it failed."""
        failure = ServiceStatus.FAILED if descriptor.critical else ServiceStatus.WARNING

        try:
            started = await self.runtime.start([descriptor.name])
        except LifecycleError as e:
            return ServiceOutcome(descriptor, failure, f"Start command failed: {e.message}")
        if not started.ok:
            return ServiceOutcome(
                descriptor,
                failure,
                f"Start command failed: {started.stderr.strip()[-300:]}",
            )

        return None

    async def wait_until_terminal(
        self,
        descriptor: ServiceDescriptor,
        timeout: float,
    ) -> ServiceOutcome:
        """
        Poll a service's health until it is terminal or ``timeout`` elapses.

        Args:
            descriptor: Service to poll.
            timeout: Seconds to wait for a healthy status.

        Returns:
            ServiceOutcome with status healthy, failed or warning.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        failure = ServiceStatus.FAILED if descriptor.critical else ServiceStatus.WARNING
        status = HealthStatus.NOT_FOUND

        while True:
            try:
                status = await self.runtime.health(descriptor.name)
            except LifecycleError as e:
                logger.debug(
                    "Health probe failed",
                    extra={"service": descriptor.name, "error": e.message},
                )
                status = HealthStatus.NOT_FOUND

            elapsed = loop.time() - start_time

            if status == HealthStatus.HEALTHY:
                logger.info(
                    f"{descriptor.name} is healthy",
                    extra={"service": descriptor.name, "elapsed": round(elapsed, 2)},
                )
                return ServiceOutcome(
                    descriptor, ServiceStatus.HEALTHY, "healthy", elapsed, status
                )

            if status == HealthStatus.UNHEALTHY:
                logger.log(
                    logging.ERROR if descriptor.critical else logging.WARNING,
                    f"{descriptor.name} reported unhealthy",
                    extra={"service": descriptor.name, "critical": descriptor.critical},
                )
                return ServiceOutcome(
                    descriptor, failure, "reported unhealthy", elapsed, status
                )

            if elapsed >= timeout:
                logger.log(
                    logging.ERROR if descriptor.critical else logging.WARNING,
                    f"{descriptor.name} did not become healthy within {timeout}s",
                    extra={
                        "service": descriptor.name,
                        "critical": descriptor.critical,
                        "last_status": status.value,
                    },
                )
                return ServiceOutcome(
                    descriptor,
                    failure,
                    f"timed out after {timeout}s (last status: {status.value})",
                    elapsed,
                    status,
                )

            await asyncio.sleep(min(self.poll_interval, max(timeout - elapsed, 0)))

    async def stop_all(self, descriptors: list[ServiceDescriptor]) -> None:
        """
        Stop the stack gracefully.

        Non-critical services are stopped first, each with its own grace
        period; then the whole stack is brought down. If that fails, the
        stack is killed and brought down again.

        Raises:
            InternalError: If the stack cannot be stopped at all.
        """
        background = [d for d in descriptors if not d.critical]
        if background:
            logger.info(
                "Stopping background services",
                extra={"services": [d.name for d in background]},
            )
            results = await asyncio.gather(
                *(self.runtime.stop([d.name], d.stop_grace_period) for d in background)
            )
            for descriptor, stopped in zip(background, results, strict=True):
                if not stopped.ok:
                    logger.warning(
                        f"Failed to stop {descriptor.name} gracefully",
                        extra={"service": descriptor.name, "stderr": stopped.stderr.strip()},
                    )

        logger.info("Stopping all services", extra={"timeout": self.stop_timeout})
        result = await self.runtime.down(self.stop_timeout)
        if result.ok:
            return

        logger.warning(
            "Graceful stop failed, forcing",
            extra={"stderr": result.stderr.strip()[-500:]},
        )
        await self.runtime.kill()
        result = await self.runtime.down(0)
        if not result.ok:
            raise InternalError(
                "Failed to stop services",
                details={"stderr": result.stderr.strip()[-500:]},
            )
