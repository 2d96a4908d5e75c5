"""
Configuration management for stackpilot.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/stackpilot/config.yml or --config path)
3. Environment variables (STACKPILOT_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)

Relative paths in the configuration are resolved against
``deployment.deploy_dir`` through ``AppConfig.deploy_path``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from stackpilot.retry import RetryPolicy

DEFAULT_CONFIG_PATH = Path("/etc/stackpilot/config.yml")
DEFAULT_ENV_PREFIX = "STACKPILOT_"

# =============================================================================
# Deployment Configuration
# =============================================================================


class DeploymentConfig(BaseModel):
    """Deployment directory and container engine settings.

    Attributes:
        deploy_dir: Directory holding the compose files and environment file.
        project_name: Compose project name.
        compose_command: Command used to invoke compose.
        profiles: Compose profiles enabled for every call.
        env_file: Live environment file, relative to deploy_dir.
        env_template: Environment template, relative to deploy_dir.
        version_key: Environment key holding the running version tag.
        command_timeout: Timeout for a single engine command in seconds.
    """

    deploy_dir: str = Field(
        default="/opt/stackpilot/deploy",
        description="Directory holding compose files and the environment file",
    )
    project_name: str = Field(
        default="stack",
        description="Compose project name",
    )
    compose_command: list[str] = Field(
        default_factory=lambda: ["docker", "compose"],
        description="Command used to invoke compose",
    )
    profiles: list[str] = Field(
        default_factory=list,
        description="Compose profiles enabled for every call",
    )
    env_file: str = Field(
        default=".env",
        description="Live environment file, relative to deploy_dir",
    )
    env_template: str = Field(
        default=".env.example",
        description="Environment template, relative to deploy_dir",
    )
    version_key: str = Field(
        default="IMAGE_TAG",
        description="Environment key holding the running version tag",
    )
    command_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Timeout for a single engine command in seconds",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON records on stdout instead of plain text.
        log_dir: Directory for operation logs, relative to deploy_dir.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=False,
        description="Emit JSON records on stdout",
    )
    log_dir: str = Field(
        default="logs",
        description="Directory for operation logs, relative to deploy_dir",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Service Configuration
# =============================================================================


class ServiceDescriptor(BaseModel):
    """Static description of one managed service.

    Attributes:
        name: Compose service name.
        tier: Dependency rank; lower tiers start first.
        critical: Whether a failure of this service fails the launch.
        health_timeout: Seconds to wait for a healthy status.
        stop_grace_period: Seconds given to finish in-flight work on stop.
        datastore: Whether the service is the primary datastore.
    """

    name: str = Field(description="Compose service name")
    tier: int = Field(default=0, ge=0, description="Dependency rank")
    critical: bool = Field(default=True, description="Failure fails the launch")
    health_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for a healthy status",
    )
    stop_grace_period: float = Field(
        default=10.0,
        ge=0,
        description="Seconds given to finish in-flight work on stop",
    )
    datastore: bool = Field(
        default=False,
        description="Whether the service is the primary datastore",
    )


def _default_services() -> list[ServiceDescriptor]:
    return [
        ServiceDescriptor(name="postgres", tier=0, health_timeout=120, datastore=True),
        ServiceDescriptor(name="redis", tier=1, health_timeout=60),
        ServiceDescriptor(name="backend", tier=2, health_timeout=90),
        ServiceDescriptor(name="superset", tier=2, health_timeout=120),
        ServiceDescriptor(name="ml-service", tier=2, health_timeout=90),
        ServiceDescriptor(name="frontend", tier=3, health_timeout=60),
        ServiceDescriptor(name="nginx", tier=4, health_timeout=60),
        ServiceDescriptor(
            name="celery-worker",
            tier=5,
            critical=False,
            health_timeout=60,
            stop_grace_period=30,
        ),
        ServiceDescriptor(
            name="celery-beat",
            tier=5,
            critical=False,
            health_timeout=60,
            stop_grace_period=30,
        ),
    ]


class LauncherConfig(BaseModel):
    """Service launch and stop settings.

    Attributes:
        poll_interval: Seconds between health probes.
        stop_timeout: Timeout handed to ``down`` when stopping the stack.
    """

    poll_interval: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between health probes",
    )
    stop_timeout: float = Field(
        default=60.0,
        ge=0,
        description="Timeout handed to 'down' when stopping the stack",
    )


class HttpEndpoint(BaseModel):
    """An HTTP endpoint probed by the verification pass."""

    name: str = Field(description="Check name")
    url: str = Field(description="URL expected to answer 2xx")
    critical: bool = Field(default=True, description="Failure is critical")
    timeout: float = Field(default=5.0, gt=0, description="Request timeout")


class VerificationConfig(BaseModel):
    """Aggregate verification settings.

    Attributes:
        endpoints: HTTP endpoints checked after service probes.
        disk_warn_percent: Deploy-dir disk usage reported as a warning.
        disk_fail_percent: Deploy-dir disk usage reported as a failure.
        certificate_fail_days: Certificate validity left that counts as a failure.
    """

    endpoints: list[HttpEndpoint] = Field(
        default_factory=list,
        description="HTTP endpoints checked after service probes",
    )
    disk_warn_percent: float = Field(
        default=80.0,
        gt=0,
        le=100,
        description="Deploy-dir disk usage reported as a warning",
    )
    disk_fail_percent: float = Field(
        default=90.0,
        gt=0,
        le=100,
        description="Deploy-dir disk usage reported as a failure",
    )
    certificate_fail_days: int = Field(
        default=7,
        ge=0,
        description="Certificate validity left that counts as a failure",
    )

    @model_validator(mode="after")
    def validate_disk_thresholds(self) -> VerificationConfig:
        if self.disk_warn_percent > self.disk_fail_percent:
            raise ValueError("disk_warn_percent must not exceed disk_fail_percent")
        return self


# =============================================================================
# Update / Checkpoint Configuration
# =============================================================================


class MigrationHook(BaseModel):
    """A command run inside a healthy service after an update."""

    service: str = Field(description="Service the command runs in")
    command: list[str] = Field(description="Command and arguments")
    required: bool = Field(
        default=False,
        description="Whether a failure fails the update (otherwise a warning)",
    )


def _default_migrations() -> list[MigrationHook]:
    return [
        MigrationHook(service="backend", command=["npm", "run", "db:migrate"]),
        MigrationHook(service="superset", command=["superset", "db", "upgrade"]),
    ]


class UpdatesConfig(BaseModel):
    """Update settings.

    Attributes:
        auto_rollback: Roll back automatically when a relaunch fails.
        release_dir: Default directory holding new deployment files.
        compose_pattern: Glob matching compose files.
        file_update_paths: Directories copied from the release directory.
        file_backup_dir: Side-archive directory, relative to deploy_dir.
        file_backup_retention: Number of side archives kept.
        fetch_retry: Retry policy for image fetches.
        migrations: Hooks run after a successful relaunch.
        auto_rollback_settle_delay: Seconds waited before re-checking health
            in auto-rollback mode.
    """

    auto_rollback: bool = Field(
        default=True,
        description="Roll back automatically when a relaunch fails",
    )
    release_dir: str | None = Field(
        default=None,
        description="Default directory holding new deployment files",
    )
    compose_pattern: str = Field(
        default="docker-compose*.yml",
        description="Glob matching compose files",
    )
    file_update_paths: list[str] = Field(
        default_factory=lambda: ["nginx", "scripts", "monitoring", "logging"],
        description="Directories copied from the release directory",
    )
    file_backup_dir: str = Field(
        default=".file-backups",
        description="Side-archive directory, relative to deploy_dir",
    )
    file_backup_retention: int = Field(
        default=5,
        ge=1,
        description="Number of side archives kept",
    )
    fetch_retry: RetryPolicy = Field(
        default_factory=RetryPolicy,
        description="Retry policy for image fetches",
    )
    migrations: list[MigrationHook] = Field(
        default_factory=_default_migrations,
        description="Hooks run after a successful relaunch",
    )
    auto_rollback_settle_delay: float = Field(
        default=30.0,
        ge=0,
        description="Seconds waited before re-checking health in auto-rollback mode",
    )


class CheckpointsConfig(BaseModel):
    """Checkpoint store settings.

    Attributes:
        directory: Checkpoint store, relative to deploy_dir.
        retention: Number of checkpoints kept.
        capture_paths: Extra files or directories captured by value.
    """

    directory: str = Field(
        default=".checkpoint",
        description="Checkpoint store, relative to deploy_dir",
    )
    retention: int = Field(
        default=5,
        ge=1,
        description="Number of checkpoints kept",
    )
    capture_paths: list[str] = Field(
        default_factory=lambda: ["nginx"],
        description="Extra files or directories captured by value",
    )


# =============================================================================
# Backup Configuration
# =============================================================================

BACKUP_KINDS = ("metadata", "data", "full")
TEST_RESTORE_POLICIES = ("advisory", "enforce")


class VolumeSpec(BaseModel):
    """A data directory archived by full backups."""

    name: str = Field(description="Archive entry name")
    service: str = Field(description="Service whose filesystem holds the data")
    path: str = Field(description="Absolute path inside the service")


class BackupsConfig(BaseModel):
    """Backup, verification and restore settings.

    Attributes:
        backup_dir: Archive directory, relative to deploy_dir.
        retention: Archives kept per kind.
        name_prefix: Archive file name prefix.
        datastore_service: Service running the datastore.
        datastore_user: Datastore superuser.
        databases: Databases dumped by data and full backups.
        volumes: Data directories archived by full backups.
        config_paths: Files and directories included in configuration backups.
        test_restore_policy: "advisory" or "enforce".
        test_restore_image: Image used for the ephemeral datastore.
        test_restore_timeout: Seconds to wait for the ephemeral datastore.
    """

    backup_dir: str = Field(
        default="backups",
        description="Archive directory, relative to deploy_dir",
    )
    retention: int = Field(
        default=7,
        ge=1,
        description="Archives kept per kind",
    )
    name_prefix: str = Field(
        default="stack",
        description="Archive file name prefix",
    )
    datastore_service: str = Field(
        default="postgres",
        description="Service running the datastore",
    )
    datastore_user: str = Field(
        default="postgres",
        description="Datastore superuser",
    )
    databases: list[str] = Field(
        default_factory=lambda: ["app", "superset"],
        description="Databases dumped by data and full backups",
    )
    volumes: list[VolumeSpec] = Field(
        default_factory=lambda: [
            VolumeSpec(name="ml_models", service="ml-service", path="/app/models"),
        ],
        description="Data directories archived by full backups",
    )
    config_paths: list[str] = Field(
        default_factory=lambda: [
            ".env",
            "docker-compose*.yml",
            "nginx",
            "ssl",
            "monitoring",
            "logging",
        ],
        description="Files and directories included in configuration backups",
    )
    test_restore_policy: str = Field(
        default="advisory",
        description="Whether a failed test-restore fails verification",
    )
    test_restore_image: str = Field(
        default="postgres:17-alpine",
        description="Image used for the ephemeral datastore",
    )
    test_restore_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for the ephemeral datastore",
    )

    @field_validator("test_restore_policy")
    @classmethod
    def validate_test_restore_policy(cls, v: str) -> str:
        """Validate test-restore policy."""
        v_lower = v.lower()
        if v_lower not in TEST_RESTORE_POLICIES:
            raise ValueError(
                f"Invalid test-restore policy: {v}. "
                f"Must be one of: {', '.join(TEST_RESTORE_POLICIES)}"
            )
        return v_lower


# =============================================================================
# Install / Certificate / Lock Configuration
# =============================================================================


class InstallConfig(BaseModel):
    """First-time installation settings.

    Attributes:
        state_file: Install state record, relative to deploy_dir.
        min_disk_gb: Minimum free disk space.
        min_memory_gb: Memory below which a warning is logged.
        secret_placeholder: Marker of unresolved secret values.
    """

    state_file: str = Field(
        default=".install_state",
        description="Install state record, relative to deploy_dir",
    )
    min_disk_gb: float = Field(
        default=10.0,
        ge=0,
        description="Minimum free disk space in GiB",
    )
    min_memory_gb: float = Field(
        default=4.0,
        ge=0,
        description="Memory below which a warning is logged, in GiB",
    )
    secret_placeholder: str = Field(
        default="CHANGE_ME",
        description="Marker of unresolved secret values",
    )


class CertificatesConfig(BaseModel):
    """TLS certificate locations supplied by the certificate provider.

    Attributes:
        cert_path: Certificate chain, relative to deploy_dir.
        key_path: Private key, relative to deploy_dir.
        required: Fail installation when no certificate is present.
        warn_days: Warn when the certificate expires within this many days.
    """

    cert_path: str = Field(
        default="ssl/fullchain.pem",
        description="Certificate chain, relative to deploy_dir",
    )
    key_path: str = Field(
        default="ssl/privkey.pem",
        description="Private key, relative to deploy_dir",
    )
    required: bool = Field(
        default=False,
        description="Fail installation when no certificate is present",
    )
    warn_days: int = Field(
        default=30,
        ge=0,
        description="Warn when the certificate expires within this many days",
    )


class LocksConfig(BaseModel):
    """Lock settings.

    Attributes:
        lock_dir: Directory holding lock files, relative to deploy_dir.
    """

    lock_dir: str = Field(
        default=".locks",
        description="Directory holding lock files, relative to deploy_dir",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        deployment: Deployment directory and engine settings.
        logging: Logging configuration.
        services: Managed service descriptors.
        launcher: Launch and stop settings.
        verification: Aggregate verification settings.
        updates: Update settings.
        checkpoints: Checkpoint store settings.
        backups: Backup settings.
        install: Installation settings.
        certificates: Certificate locations.
        locks: Lock settings.
    """

    deployment: DeploymentConfig = Field(
        default_factory=DeploymentConfig,
        description="Deployment directory and engine settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    services: list[ServiceDescriptor] = Field(
        default_factory=_default_services,
        description="Managed service descriptors",
    )
    launcher: LauncherConfig = Field(
        default_factory=LauncherConfig,
        description="Launch and stop settings",
    )
    verification: VerificationConfig = Field(
        default_factory=VerificationConfig,
        description="Aggregate verification settings",
    )
    updates: UpdatesConfig = Field(
        default_factory=UpdatesConfig,
        description="Update settings",
    )
    checkpoints: CheckpointsConfig = Field(
        default_factory=CheckpointsConfig,
        description="Checkpoint store settings",
    )
    backups: BackupsConfig = Field(
        default_factory=BackupsConfig,
        description="Backup settings",
    )
    install: InstallConfig = Field(
        default_factory=InstallConfig,
        description="Installation settings",
    )
    certificates: CertificatesConfig = Field(
        default_factory=CertificatesConfig,
        description="Certificate locations",
    )
    locks: LocksConfig = Field(
        default_factory=LocksConfig,
        description="Lock settings",
    )

    @model_validator(mode="after")
    def validate_services(self) -> AppConfig:
        """Service names must be unique."""
        names = [s.name for s in self.services]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate service names: {', '.join(duplicates)}")
        return self

    @property
    def deploy_dir(self) -> Path:
        return Path(self.deployment.deploy_dir)

    def deploy_path(self, path: str | Path) -> Path:
        """Resolve ``path`` against the deployment directory."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.deploy_dir / candidate

    def service(self, name: str) -> ServiceDescriptor | None:
        """Return the descriptor named ``name``."""
        for descriptor in self.services:
            if descriptor.name == name:
                return descriptor
        return None


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary with configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # Comma-separated lists
    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: STACKPILOT_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: STACKPILOT_DEPLOYMENT__DEPLOY_DIR=/srv/stack

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Configuration is loaded from multiple sources in order:
    1. Built-in defaults (from AppConfig model)
    2. YAML config file (if specified or default exists)
    3. Environment variables (STACKPILOT_* prefix)
    4. Explicit overrides (from the command line)

    Later sources override earlier ones.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary applied last.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        pydantic.ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"deployment": {"deploy_dir": "/srv/stack"}})
        >>> config.deploy_path(".env")
        PosixPath('/srv/stack/.env')
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, overrides or {})

    return AppConfig(**config_dict)
