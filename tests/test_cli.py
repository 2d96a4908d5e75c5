"""
Tests for the command line interface.

This test module validates:
- Exit codes for invalid invocations and configuration
- Command dispatch with a scripted runtime
- Error reporting for lifecycle errors
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from conftest import FakeRuntime

from stackpilot.cli import build_parser, main
from stackpilot.errors import EXIT_CRITICAL, EXIT_INVALID, EXIT_OK, EXIT_RECOVERABLE
from stackpilot.runtime.base import HealthStatus


@pytest.fixture
def config_file(tmp_path: Path, deploy_dir: Path) -> Path:
    path = tmp_path / "stackpilot.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "deployment": {"deploy_dir": str(deploy_dir)},
                "logging": {"log_to_stdout": False},
                "services": [
                    {"name": "postgres", "tier": 0, "health_timeout": 0.2, "datastore": True},
                    {"name": "backend", "tier": 1, "health_timeout": 0.2},
                ],
                "launcher": {"poll_interval": 0.01, "stop_timeout": 1},
                "updates": {"migrations": []},
                "backups": {"databases": ["app"], "volumes": []},
                "verification": {"disk_warn_percent": 100, "disk_fail_percent": 100},
            }
        )
    )
    return path


def _run(config_file: Path, runtime: FakeRuntime, *argv: str) -> int:
    return main(["--config", str(config_file), *argv], runtime_factory=lambda config: runtime)


class TestInvocation:
    """Tests for argument and configuration errors."""

    @pytest.mark.parametrize(
        "argv",
        [
            [],
            ["bogus"],
            ["update"],
            ["backup", "--kind", "everything"],
            ["rollback", "--list", "--auto"],
        ],
    )
    def test_invalid_arguments(self, argv: list[str]) -> None:
        """Test that argument errors exit with the invalid-invocation code."""
        assert main(argv) == EXIT_INVALID

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test the version flag."""
        assert main(["--version"]) == EXIT_OK
        assert capsys.readouterr().out.startswith("stackpilot ")

    def test_missing_config_file(self, tmp_path: Path) -> None:
        """Test that a missing configuration file is an invalid invocation."""
        assert main(["--config", str(tmp_path / "missing.yml"), "health-check"]) == EXIT_INVALID

    def test_invalid_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test that invalid configuration values are reported."""
        path = tmp_path / "bad.yml"
        path.write_text("logging:\n  level: loud\n")

        assert main(["--config", str(path), "health-check"]) == EXIT_INVALID
        assert "invalid configuration" in capsys.readouterr().err

    def test_parser_commands(self) -> None:
        """Test that every command parses."""
        parser = build_parser()

        args = parser.parse_args(["update", "2.0.0", "--skip-backup", "--timeout", "30"])
        assert args.version == "2.0.0"
        assert args.skip_backup is True
        assert args.timeout == 30.0
        assert parser.parse_args(["install", "--resume"]).resume is True
        assert parser.parse_args(["restore", "a.tar.gz", "--kind", "data"]).kind == "data"


class TestCommands:
    """Tests for command dispatch."""

    def test_health_check_json(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test the JSON health report."""
        code = _run(config_file, FakeRuntime(), "health-check", "--json")

        assert code == EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["ok"] is True
        names = [r["name"] for r in report["results"]]
        assert names[-3:] == ["datastore_postgres", "disk_space", "certificate"]
        assert report["advisories"] == ["certificate"]

    def test_health_check_failure(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test that a critical failure exits with the critical code."""
        runtime = FakeRuntime(health={"backend": [HealthStatus.UNHEALTHY]})

        code = _run(config_file, runtime, "health-check")

        assert code == EXIT_CRITICAL
        assert "[FAIL] service_backend" in capsys.readouterr().out

    def test_rollback_list_empty(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test listing checkpoints when none exist."""
        assert _run(config_file, FakeRuntime(), "rollback", "--list") == EXIT_RECOVERABLE
        assert "No checkpoints found" in capsys.readouterr().out

    def test_rollback_without_checkpoint(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test that a lifecycle error prints its remediation."""
        assert _run(config_file, FakeRuntime(), "rollback") == EXIT_RECOVERABLE
        err = capsys.readouterr().err
        assert err.startswith("Error: ")
        assert "Next step:" in err

    def test_backup_and_verify(
        self, config_file: Path, deploy_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test creating, listing and verifying a backup."""
        runtime = FakeRuntime()

        assert _run(config_file, runtime, "backup", "--kind", "data") == EXIT_OK
        archives = list((deploy_dir / "backups").glob("*.tar.gz"))
        assert len(archives) == 1

        assert _run(config_file, runtime, "backup", "--list") == EXIT_OK
        assert _run(config_file, runtime, "verify-backup") == EXIT_OK
        out = capsys.readouterr().out
        assert f"{archives[0].name}  data" in out
        assert f"{archives[0].name}: OK (decompression, structure, semantic)" in out

    def test_verify_without_backups(self, config_file: Path) -> None:
        """Test that verifying with no archives is a recoverable error."""
        assert _run(config_file, FakeRuntime(), "verify-backup") == EXIT_RECOVERABLE

    def test_verify_corrupt_backup(self, config_file: Path, tmp_path: Path) -> None:
        """Test that a corrupt archive exits with the critical code."""
        path = tmp_path / "stack_backup_data_20260101_000000.tar.gz"
        path.write_bytes(b"\x1f\x8b\x08\x00corrupt")

        assert _run(config_file, FakeRuntime(), "verify-backup", str(path)) == EXIT_CRITICAL

    def test_update_dry_run(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test that the update plan is printed."""
        runtime = FakeRuntime()

        assert _run(config_file, runtime, "update", "2.0.0", "--dry-run") == EXIT_OK
        out = capsys.readouterr().out
        assert "Update plan 1.0.0 -> 2.0.0:" in out
        assert "  1. checkpoint" in out
        assert runtime.calls == []

    @pytest.mark.parametrize("timeout", ["0", "-5", "soon"])
    def test_update_rejects_non_positive_timeout(
        self, config_file: Path, timeout: str, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test that a timeout that is not a positive number is an invalid invocation."""
        runtime = FakeRuntime()

        code = _run(config_file, runtime, "update", "2.0.0", "--timeout", timeout, "--dry-run")

        assert code == EXIT_INVALID
        assert "--timeout" in capsys.readouterr().err
        assert runtime.calls == []

    def test_update_with_undecodable_env(self, config_file: Path, deploy_dir: Path) -> None:
        """Test that an environment file that is not UTF-8 is reported, not raised."""
        with (deploy_dir / ".env").open("ab") as handle:
            handle.write(b"NOTE=caf\xe9\n")

        assert _run(config_file, FakeRuntime(), "update", "2.0.0", "--dry-run") == EXIT_INVALID

    def test_update_same_version(self, config_file: Path) -> None:
        """Test that a validation error exits with the invalid code."""
        assert _run(config_file, FakeRuntime(), "update", "1.0.0") == EXIT_INVALID

    def test_restore_dry_run(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test listing what a restore would bring back."""
        runtime = FakeRuntime()
        assert _run(config_file, runtime, "backup", "--kind", "metadata") == EXIT_OK
        out = capsys.readouterr().out
        archive = out.split("Backup created: ", 1)[1].strip()

        assert _run(config_file, runtime, "restore", archive, "--dry-run") == EXIT_OK
        out = capsys.readouterr().out
        assert "Would restore (metadata)" in out
        assert "config:config" in out
