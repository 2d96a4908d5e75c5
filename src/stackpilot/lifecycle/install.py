"""
Resumable first-time installation.

Installation is a fixed, ordered sequence of named steps driven by
``StepSequencer``. Progress is persisted in the InstallState record
immediately before (``in_progress``) and after (``completed``) every step.
When a step body raises, the state is marked ``failed`` with a pointer to
the install log and the sequence stops.

Resuming skips exactly the steps recorded as completed, which are always a
prefix of the step order. The failed (or interrupted) step and every step
after it run again, so each step body must be idempotent.

Default steps:
    preflight, directory_setup, config_render, secrets_generation,
    certificate_check, image_fetch, database_init, services_start,
    verification, complete
"""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

import psutil
from pydantic import BaseModel, Field

from stackpilot.certificates import validate_certificate_pair
from stackpilot.config import AppConfig
from stackpilot.envfile import EnvironmentFile
from stackpilot.errors import (
    HealthGateTimeout,
    LifecycleError,
    StepFailedError,
    ValidationError,
)
from stackpilot.fsops import ensure_directory, timestamp_slug
from stackpilot.lifecycle.health import HealthChecker
from stackpilot.lifecycle.launcher import ServiceLauncher
from stackpilot.lifecycle.state import InstallState, InstallStateStore, StepStatus
from stackpilot.locking import LockManager
from stackpilot.logging import get_logger, operation_log
from stackpilot.retry import retry_async
from stackpilot.runtime.base import ContainerRuntime
from stackpilot.secrets import SecretGenerator, TokenSecretGenerator, fill_placeholders

logger = get_logger(__name__)

GIB = 1024**3


# =============================================================================
# Step Sequencer
# =============================================================================


class InstallOptions(BaseModel):
    """Target parameters of an install."""

    version: str | None = Field(default=None, description="Version to install")
    domain: str | None = Field(default=None, description="Public domain name")


class InstallContext:
    """Collaborators handed to every step body."""

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        options: InstallOptions | None = None,
        launcher: ServiceLauncher | None = None,
        checker: HealthChecker | None = None,
        renderer: ConfigRenderer | None = None,
        secret_generator: SecretGenerator | None = None,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.options = options or InstallOptions()
        self.launcher = launcher or ServiceLauncher(
            runtime,
            poll_interval=config.launcher.poll_interval,
            stop_timeout=config.launcher.stop_timeout,
        )
        self.checker = checker or HealthChecker.from_config(runtime, config)
        self.renderer = renderer or TemplateCopyRenderer()
        self.secret_generator = secret_generator or TokenSecretGenerator()

    @property
    def env_path(self) -> Path:
        return self.config.deploy_path(self.config.deployment.env_file)


StepBody = Callable[[InstallContext], Awaitable[None]]


class StepDefinition:
    """A named installation step. Its ordinal is its position in the sequence."""

    def __init__(self, name: str, body: StepBody, description: str = "") -> None:
        self.name = name
        self.body = body
        self.description = description

    def __repr__(self) -> str:
        return f"StepDefinition(name={self.name!r})"


class StepSequencer:
    """
    Runs step definitions in order, persisting progress around each step.

    Attributes:
        store: InstallState persistence.
        context: Collaborators passed to step bodies.
        log_path: Install log recorded in failure diagnostics.
    """

    def __init__(
        self,
        store: InstallStateStore,
        context: InstallContext,
        *,
        log_path: Path | None = None,
    ) -> None:
        self.store = store
        self.context = context
        self.log_path = log_path

    async def run(
        self,
        steps: Sequence[StepDefinition],
        resume: bool = False,
        parameters: dict[str, Any] | None = None,
    ) -> InstallState:
        """
        Execute the step sequence.

        Args:
            steps: Ordered step definitions.
            resume: Skip steps a previous run recorded as completed.
            parameters: Target parameters stored in the state. On resume the
                persisted parameters are kept.

        Returns:
            The final InstallState (status completed).

        Raises:
            ValidationError: If step names are empty or duplicated.
            StepFailedError: If a step body raised; the state is persisted
                as failed at that step first.
        """
        names = [step.name for step in steps]
        if not steps or any(not n for n in names) or len(set(names)) != len(names):
            raise ValidationError(
                "Step names must be non-empty and unique",
                details={"steps": names},
            )

        state = self.store.load() if resume else None
        if resume and state is None:
            logger.info("No install state found, starting a fresh install")
        if state is None:
            state = InstallState(parameters=dict(parameters or {}))
        elif not state.parameters and parameters:
            state.parameters = dict(parameters)

        if resume and state.parameters:
            # Values given on this invocation win; the rest come from the failed run
            self.context.options = InstallOptions.model_validate(
                {**state.parameters, **self.context.options.model_dump(exclude_none=True)}
            )

        skippable = self._completed_prefix(names, state.completed_steps)
        if resume and len(skippable) == len(names):
            logger.info("Installation already complete, nothing to resume")
            return state

        for index, step in enumerate(steps):
            if resume and step.name in skippable:
                logger.info(
                    f"Skipping completed step {step.name}",
                    extra={"step": step.name, "ordinal": index + 1},
                )
                continue

            state.step = step.name
            state.status = StepStatus.IN_PROGRESS
            state.diagnostic = None
            state.completed_steps = names[:index]
            self.store.save(state)
            logger.info(
                f"Step {index + 1}/{len(steps)}: {step.name}",
                extra={"step": step.name, "ordinal": index + 1},
            )

            try:
                await step.body(self.context)
            except Exception as e:
                state.status = StepStatus.FAILED
                state.diagnostic = {
                    "error": e.message if isinstance(e, LifecycleError) else str(e),
                    "error_type": type(e).__name__,
                    "log_path": str(self.log_path) if self.log_path else None,
                }
                self.store.save(state)
                logger.error(
                    f"Step {step.name} failed",
                    extra={"step": step.name, "error": str(e)},
                    exc_info=not isinstance(e, LifecycleError),
                )
                raise StepFailedError(
                    step.name,
                    f"Installation failed at step '{step.name}': {e}",
                    details={
                        "log_path": state.diagnostic["log_path"],
                        "remediation": "Fix the problem and run 'stackpilot install --resume'.",
                    },
                ) from e

            state.completed_steps = names[: index + 1]
            state.status = StepStatus.COMPLETED
            self.store.save(state)

        logger.info("Installation complete", extra={"steps": len(steps)})
        return state

    @staticmethod
    def _completed_prefix(names: list[str], completed: list[str]) -> set[str]:
        prefix: set[str] = set()
        for name, done in zip(names, completed, strict=False):
            if name != done:
                break
            prefix.add(name)
        return prefix


# =============================================================================
# Configuration Rendering
# =============================================================================


class ConfigRenderer(ABC):
    """Produces the live configuration from templates."""

    @abstractmethod
    async def render(self, context: InstallContext) -> None:
        """Render configuration into the deployment directory."""


class TemplateCopyRenderer(ConfigRenderer):
    """Copies the environment template when no live file exists yet."""

    async def render(self, context: InstallContext) -> None:
        config = context.config
        live = context.env_path
        if live.exists():
            logger.info("Environment file exists, keeping it", extra={"path": str(live)})
            return
        template = config.deploy_path(config.deployment.env_template)
        if not template.is_file():
            raise ValidationError(
                f"Environment template not found: {template}",
                details={"path": str(template)},
            )
        shutil.copyfile(template, live)
        live.chmod(0o600)
        logger.info("Created environment file from template", extra={"path": str(live)})


# =============================================================================
# Default Install Steps
# =============================================================================


def _existing_ancestor(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path("/")


async def step_preflight(ctx: InstallContext) -> None:
    """Check disk space, memory and the container engine."""
    install = ctx.config.install
    disk = psutil.disk_usage(str(_existing_ancestor(ctx.config.deploy_dir)))
    free_gb = disk.free / GIB
    if free_gb < install.min_disk_gb:
        raise ValidationError(
            f"Insufficient disk space: {free_gb:.1f} GiB free, {install.min_disk_gb} GiB required",
            details={"free_gb": round(free_gb, 1)},
        )

    memory_gb = psutil.virtual_memory().total / GIB
    if memory_gb < install.min_memory_gb:
        logger.warning(
            "Host memory is below the recommended minimum",
            extra={"memory_gb": round(memory_gb, 1), "recommended_gb": install.min_memory_gb},
        )

    version = await ctx.runtime.check_available()
    logger.info(
        "Preflight checks passed",
        extra={"free_disk_gb": round(free_gb, 1), "engine_version": version},
    )


async def step_directory_setup(ctx: InstallContext) -> None:
    """Create the deployment directory layout."""
    config = ctx.config
    for relative in (
        ".",
        config.logging.log_dir,
        config.backups.backup_dir,
        config.checkpoints.directory,
        config.locks.lock_dir,
    ):
        ensure_directory(config.deploy_path(relative))


async def step_config_render(ctx: InstallContext) -> None:
    """Render configuration and record the target version and domain."""
    await ctx.renderer.render(ctx)
    env = EnvironmentFile.load(ctx.env_path)
    if ctx.options.version:
        env.set_value(ctx.config.deployment.version_key, ctx.options.version)
    if ctx.options.domain:
        env.set_value("DOMAIN", ctx.options.domain)
    env.save()


async def step_secrets_generation(ctx: InstallContext) -> None:
    """Fill unresolved secret placeholders only."""
    env = EnvironmentFile.load(ctx.env_path)
    filled = fill_placeholders(env, ctx.secret_generator, ctx.config.install.secret_placeholder)
    if filled:
        env.save()
    else:
        logger.info("No unresolved secrets")


async def step_certificate_check(ctx: InstallContext) -> None:
    """Validate the provided certificate and key."""
    certs = ctx.config.certificates
    cert_path = ctx.config.deploy_path(certs.cert_path)
    key_path = ctx.config.deploy_path(certs.key_path)
    if not cert_path.exists():
        if certs.required:
            raise ValidationError(
                f"Certificate not found: {cert_path}",
                details={"path": str(cert_path)},
            )
        logger.warning("No certificate installed", extra={"path": str(cert_path)})
        return
    validate_certificate_pair(cert_path, key_path, warn_days=certs.warn_days)


async def step_image_fetch(ctx: InstallContext) -> None:
    """Pull images with bounded retries."""
    await retry_async(
        ctx.runtime.pull,
        ctx.config.updates.fetch_retry,
        description="Image pull",
    )


async def step_database_init(ctx: InstallContext) -> None:
    """Start the datastore tier and wait for it to become healthy."""
    datastores = [d for d in ctx.config.services if d.datastore]
    if not datastores:
        logger.info("No datastore services configured")
        return
    result = await ctx.launcher.launch_all(datastores)
    if not result.overall_ok:
        raise HealthGateTimeout(
            "Datastore did not become healthy",
            details={"failed": result.failed_services},
        )


async def step_services_start(ctx: InstallContext) -> None:
    """Launch the whole stack."""
    result = await ctx.launcher.launch_all(ctx.config.services)
    if not result.overall_ok:
        raise HealthGateTimeout(
            f"Services failed to start: {', '.join(result.failed_services)}",
            details=result.to_dict(),
        )


async def step_verification(ctx: InstallContext) -> None:
    """Run the aggregate verification pass."""
    report = await ctx.checker.verify(ctx.config.services)
    if not report.ok:
        raise HealthGateTimeout(
            "Verification failed",
            details=report.to_dict(),
        )


async def step_complete(ctx: InstallContext) -> None:
    logger.info(
        "Deployment installed",
        extra={"deploy_dir": str(ctx.config.deploy_dir), "version": ctx.options.version},
    )


def default_install_steps() -> list[StepDefinition]:
    """Return the standard installation sequence."""
    return [
        StepDefinition("preflight", step_preflight, "Check host prerequisites"),
        StepDefinition("directory_setup", step_directory_setup, "Create directories"),
        StepDefinition("config_render", step_config_render, "Render configuration"),
        StepDefinition("secrets_generation", step_secrets_generation, "Generate secrets"),
        StepDefinition("certificate_check", step_certificate_check, "Validate TLS certificate"),
        StepDefinition("image_fetch", step_image_fetch, "Pull images"),
        StepDefinition("database_init", step_database_init, "Start the datastore"),
        StepDefinition("services_start", step_services_start, "Start all services"),
        StepDefinition("verification", step_verification, "Verify the deployment"),
        StepDefinition("complete", step_complete, "Finish"),
    ]


async def run_install(
    context: InstallContext,
    *,
    resume: bool = False,
    steps: Sequence[StepDefinition] | None = None,
    locks: LockManager | None = None,
) -> InstallState:
    """
    Run (or resume) the installation under the lifecycle lock.

    Args:
        context: Install collaborators and options.
        resume: Continue from the persisted state.
        steps: Step sequence (defaults to ``default_install_steps()``).
        locks: Lock manager (defaults to the configured lock directory).

    Returns:
        Final InstallState.

    Raises:
        StateConflictError: If another lifecycle operation is running.
        StepFailedError: If a step failed.
    """
    config = context.config
    ensure_directory(config.deploy_dir)
    locks = locks or LockManager(config.deploy_path(config.locks.lock_dir))
    store = InstallStateStore(config.deploy_path(config.install.state_file))
    log_path = config.deploy_path(config.logging.log_dir) / f"install_{timestamp_slug()}.log"

    with locks.acquire(holder="install", operation="install"):
        with operation_log(
            log_path,
            header={"operation": "install", "resume": resume, "version": context.options.version},
        ):
            sequencer = StepSequencer(store, context, log_path=log_path)
            return await sequencer.run(
                steps or default_install_steps(),
                resume=resume,
                parameters=context.options.model_dump(),
            )
