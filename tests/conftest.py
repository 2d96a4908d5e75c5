"""
Pytest configuration for the stackpilot tests.

Provides a scripted in-memory ContainerRuntime and a configuration builder
rooted in a temporary deployment directory with short timings.
"""

from __future__ import annotations

import gzip
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from stackpilot.config import AppConfig
from stackpilot.errors import TransientInfrastructureError
from stackpilot.runtime.base import CommandResult, ContainerRuntime, HealthStatus

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fake Runtime
# =============================================================================


def _ok(command: list[str], stdout: bytes = b"") -> CommandResult:
    return CommandResult(command, 0, stdout, "")


class FakeRuntime(ContainerRuntime):
    """
    Scripted ContainerRuntime recording every call.

    Health answers come from per-service sequences; the last entry of a
    sequence repeats. Commands run through ``exec`` emulate the datastore
    tools unless their tool name is listed in ``failing_tools``.
    """

    def __init__(
        self,
        *,
        health: dict[str, list[HealthStatus]] | None = None,
        default_health: HealthStatus = HealthStatus.HEALTHY,
        pull_failures: int = 0,
        failing_tools: set[str] | None = None,
        up_all_ok: bool = True,
    ) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.health_sequences = {name: list(seq) for name, seq in (health or {}).items()}
        self.default_health = default_health
        self.pull_failures = pull_failures
        self.failing_tools = failing_tools or set()
        self.up_all_ok = up_all_ok
        self.started: list[str] = []
        self.stdin_by_tool: dict[str, bytes] = {}
        self.on_stop: Callable[[], None] | None = None

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def check_available(self) -> str:
        self.calls.append(("check_available",))
        return "27.0.0"

    async def start(self, services: list[str]) -> CommandResult:
        self.calls.append(("start", tuple(services)))
        self.started.extend(services)
        return _ok(["start", *services])

    async def stop(self, services: list[str], timeout: float) -> CommandResult:
        self.calls.append(("stop", tuple(services), timeout))
        return _ok(["stop", *services])

    async def down(self, timeout: float) -> CommandResult:
        self.calls.append(("down", timeout))
        if self.on_stop is not None:
            self.on_stop()
        self.started.clear()
        return _ok(["down"])

    async def kill(self) -> CommandResult:
        self.calls.append(("kill",))
        return _ok(["kill"])

    async def up_all(self) -> CommandResult:
        self.calls.append(("up_all",))
        if self.up_all_ok:
            return _ok(["up"])
        return CommandResult(["up"], 1, b"", "boom")

    async def health(self, service: str) -> HealthStatus:
        self.calls.append(("health", service))
        sequence = self.health_sequences.get(service)
        if not sequence:
            return self.default_health
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]

    async def exec(
        self,
        service: str,
        command: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append(("exec", service, tuple(command)))
        return self._emulate(command, stdin)

    async def logs(self, tail: int = 50) -> str:
        self.calls.append(("logs", tail))
        return "backend  | listening on :8000\n"

    async def pull(self) -> CommandResult:
        self.calls.append(("pull",))
        if self.pull_failures > 0:
            self.pull_failures -= 1
            raise TransientInfrastructureError("Image pull failed")
        return _ok(["pull"])

    async def image_ids(self) -> list[str]:
        return ["sha256:1111", "sha256:2222"]

    async def running_services(self) -> list[str]:
        return list(dict.fromkeys(self.started))

    async def run_ephemeral(self, image: str, name: str, env: dict[str, str]) -> str:
        self.calls.append(("run_ephemeral", image, name))
        return name

    async def exec_ephemeral(
        self,
        name: str,
        command: list[str],
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append(("exec_ephemeral", name, tuple(command)))
        return self._emulate(command, stdin)

    async def remove_ephemeral(self, name: str) -> None:
        self.calls.append(("remove_ephemeral", name))

    def _emulate(self, command: list[str], stdin: bytes | None) -> CommandResult:
        tool = command[0]
        if stdin is not None:
            self.stdin_by_tool[tool] = stdin
        if tool in self.failing_tools:
            return CommandResult(command, 1, b"", f"{tool}: simulated failure")
        if tool == "pg_dump":
            if "-Fc" in command:
                return _ok(command, b"PGDMP\x01fake custom dump of " + command[-1].encode())
            return _ok(command, b"CREATE TABLE items (id integer);\n")
        if tool == "tar" and command[1] == "czf":
            return _ok(command, gzip.compress(b"model weights"))
        if tool == "psql" and "-tAc" in command:
            query = command[-1]
            if "pg_database" in query:
                return _ok(command, b"")
            return _ok(command, b"3\n")
        return _ok(command)


# =============================================================================
# Configuration
# =============================================================================


SERVICES = [
    {"name": "postgres", "tier": 0, "health_timeout": 0.2, "datastore": True},
    {"name": "backend", "tier": 1, "health_timeout": 0.2},
    {
        "name": "worker",
        "tier": 2,
        "critical": False,
        "health_timeout": 0.2,
        "stop_grace_period": 1,
    },
]


def build_config(deploy_dir: Path, **sections: Any) -> AppConfig:
    """AppConfig rooted at ``deploy_dir`` with fast timings."""
    data: dict[str, Any] = {
        "deployment": {"deploy_dir": str(deploy_dir)},
        "logging": {"log_to_stdout": False},
        "services": SERVICES,
        "launcher": {"poll_interval": 0.01, "stop_timeout": 1},
        "updates": {
            "fetch_retry": {"max_attempts": 3, "base_delay": 0, "max_delay": 0},
            "migrations": [],
            "auto_rollback_settle_delay": 0,
        },
        "backups": {
            "databases": ["app"],
            "volumes": [{"name": "ml_models", "service": "backend", "path": "/app/models"}],
            "test_restore_timeout": 1,
        },
    }
    for section, values in sections.items():
        if isinstance(values, dict) and isinstance(data.get(section), dict):
            data[section] = {**data[section], **values}
        else:
            data[section] = values
    return AppConfig(**data)


def write_deployment(deploy_dir: Path, version: str = "1.0.0") -> None:
    """Populate a minimal live deployment."""
    deploy_dir.mkdir(parents=True, exist_ok=True)
    (deploy_dir / ".env").write_text(
        f"IMAGE_TAG={version}\nPOSTGRES_PASSWORD=secret\nDOMAIN=example.org\n"
    )
    (deploy_dir / ".env.example").write_text(
        "IMAGE_TAG=latest\nPOSTGRES_PASSWORD=CHANGE_ME\nDOMAIN=localhost\n"
    )
    (deploy_dir / "docker-compose.yml").write_text("services:\n  backend:\n    image: app\n")
    (deploy_dir / "nginx").mkdir(exist_ok=True)
    (deploy_dir / "nginx" / "nginx.conf").write_text("server { listen 80; }\n")


@pytest.fixture
def deploy_dir(tmp_path: Path) -> Iterator[Path]:
    """A populated deployment directory."""
    path = tmp_path / "deploy"
    write_deployment(path)
    yield path


@pytest.fixture
def config(deploy_dir: Path) -> AppConfig:
    return build_config(deploy_dir)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


# =============================================================================
# Certificates
# =============================================================================


def write_certificate(
    directory: Path,
    *,
    days: int = 90,
    key: ec.EllipticCurvePrivateKey | None = None,
    common_name: str = "example.org",
) -> tuple[Path, Path]:
    """Write a self-signed certificate and its key as fullchain.pem/privkey.pem."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(min(now, now + timedelta(days=days)) - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / "fullchain.pem"
    key_path = directory / "privkey.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert_path, key_path
