"""
Tests for release file replacement.

This test module validates:
- Planning from a release directory and protected paths
- Side-archiving replaced paths before copying
- Reverting replaced and created paths
- Side archive retention
"""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import build_config

from stackpilot.config import AppConfig
from stackpilot.errors import ValidationError
from stackpilot.lifecycle.release_files import ReleaseFileUpdater


@pytest.fixture
def release_dir(tmp_path: Path) -> Path:
    path = tmp_path / "release"
    (path / "nginx").mkdir(parents=True)
    (path / "scripts").mkdir()
    (path / "docker-compose.yml").write_text("services: {}\n")
    (path / "docker-compose.prod.yml").write_text("services: {prod: {}}\n")
    (path / "nginx" / "nginx.conf").write_text("server { listen 443; }\n")
    (path / "scripts" / "health.sh").write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def updater(config: AppConfig) -> ReleaseFileUpdater:
    return ReleaseFileUpdater(config)


class TestPlan:
    """Tests for ReleaseFileUpdater.plan."""

    def test_plan(self, updater: ReleaseFileUpdater, release_dir: Path) -> None:
        """Test the planned paths."""
        assert updater.plan(release_dir) == [
            "docker-compose.prod.yml",
            "docker-compose.yml",
            "nginx",
            "scripts",
        ]

    def test_missing_release_dir(self, updater: ReleaseFileUpdater, tmp_path: Path) -> None:
        """Test that a missing release directory is rejected."""
        with pytest.raises(ValidationError, match="Release directory not found"):
            updater.plan(tmp_path / "missing")

    def test_protected_paths_skipped(self, deploy_dir: Path, release_dir: Path) -> None:
        """Test that secrets, certificates and state are never updated."""
        config = build_config(
            deploy_dir,
            updates={"file_update_paths": ["nginx", ".env", "ssl", "server.key", ".checkpoint"]},
        )
        (release_dir / ".env").write_text("IMAGE_TAG=evil\n")
        (release_dir / "ssl").mkdir()
        (release_dir / "server.key").write_text("key")
        (release_dir / ".checkpoint").mkdir()

        planned = ReleaseFileUpdater(config).plan(release_dir)

        assert planned == ["docker-compose.prod.yml", "docker-compose.yml", "nginx"]


class TestApplyAndRevert:
    """Tests for apply and revert."""

    def test_apply_side_archives_replaced(
        self, updater: ReleaseFileUpdater, release_dir: Path, deploy_dir: Path
    ) -> None:
        """Test that replaced paths are archived and created ones recorded."""
        updated = updater.apply(release_dir, "pre_update_20260101_000000")

        assert "nginx" in updated
        assert (deploy_dir / "nginx" / "nginx.conf").read_text() == "server { listen 443; }\n"
        assert (deploy_dir / "scripts" / "health.sh").is_file()
        manifest = updater.load("pre_update_20260101_000000")
        assert manifest is not None
        assert manifest.replaced == ["docker-compose.yml", "nginx"]
        assert manifest.created == ["docker-compose.prod.yml", "scripts"]
        archived = updater.root / "pre_update_20260101_000000" / "files" / "nginx" / "nginx.conf"
        assert archived.read_text() == "server { listen 80; }\n"

    def test_revert(
        self, updater: ReleaseFileUpdater, release_dir: Path, deploy_dir: Path
    ) -> None:
        """Test that revert restores replaced paths and removes created ones."""
        updater.apply(release_dir, "pre_update_20260101_000000")

        reverted = updater.revert("pre_update_20260101_000000")

        assert sorted(reverted) == [
            "docker-compose.prod.yml",
            "docker-compose.yml",
            "nginx",
            "scripts",
        ]
        assert (deploy_dir / "nginx" / "nginx.conf").read_text() == "server { listen 80; }\n"
        assert "image: app" in (deploy_dir / "docker-compose.yml").read_text()
        assert not (deploy_dir / "scripts").exists()
        assert not (deploy_dir / "docker-compose.prod.yml").exists()

    def test_revert_without_side_archive(self, updater: ReleaseFileUpdater) -> None:
        """Test that reverting an unknown side archive does nothing."""
        assert updater.revert("pre_update_19700101_000000") == []

    def test_retention(self, deploy_dir: Path, release_dir: Path) -> None:
        """Test that old side archives are pruned."""
        config = build_config(deploy_dir, updates={"file_backup_retention": 2})
        updater = ReleaseFileUpdater(config)

        for stamp in ("20260101_000000", "20260102_000000", "20260103_000000"):
            updater.apply(release_dir, f"pre_update_{stamp}")

        remaining = sorted(p.name for p in updater.root.iterdir())
        assert remaining == ["pre_update_20260102_000000", "pre_update_20260103_000000"]
