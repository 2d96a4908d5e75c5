"""
Tests for environment file handling.

This test module validates:
- Parsing keys, values and quoting
- In-place edits preserving the rest of the file
- Template merge adding only missing keys with a provenance comment
"""

from __future__ import annotations

import stat
from datetime import date
from pathlib import Path

import pytest

from stackpilot.envfile import EnvironmentFile, EnvironmentMerger, parse_key
from stackpilot.errors import ValidationError

# =============================================================================
# Tests for EnvironmentFile
# =============================================================================


class TestEnvironmentFile:
    """Tests for EnvironmentFile."""

    def test_parse_key(self) -> None:
        """Test key detection on assignment lines only."""
        assert parse_key("IMAGE_TAG=1.0.0\n") == "IMAGE_TAG"
        assert parse_key("  DOMAIN=example.org") == "DOMAIN"
        assert parse_key("# IMAGE_TAG=old") is None
        assert parse_key("") is None

    def test_get_strips_quotes(self, tmp_path: Path) -> None:
        """Test value lookup with quotes stripped."""
        env = EnvironmentFile(tmp_path / ".env", "A='one'\nB=\"two\"\nC=three=3\n")

        assert env.get("A") == "one"
        assert env.get("B") == "two"
        assert env.get("C") == "three=3"
        assert env.get("D", "default") == "default"
        assert env.raw_value("A") == "'one'"

    def test_first_occurrence_wins(self, tmp_path: Path) -> None:
        """Test that a repeated key resolves to its first line."""
        env = EnvironmentFile(tmp_path / ".env", "A=1\nA=2\n")

        assert env.keys() == ["A"]
        assert env.get("A") == "1"

    def test_set_value_in_place(self, tmp_path: Path) -> None:
        """Test that only the target line changes."""
        text = "# header\nIMAGE_TAG=1.0.0\nDOMAIN=example.org\n"
        env = EnvironmentFile(tmp_path / ".env", text)

        env.set_value("IMAGE_TAG", "2.0.0")

        assert env.to_text() == "# header\nIMAGE_TAG=2.0.0\nDOMAIN=example.org\n"

    def test_set_value_appends_missing(self, tmp_path: Path) -> None:
        """Test that a missing key is appended."""
        env = EnvironmentFile(tmp_path / ".env", "A=1")

        env.set_value("B", "2")

        assert env.to_text() == "A=1\nB=2\n"

    def test_append_existing_key_rejected(self, tmp_path: Path) -> None:
        """Test that append refuses to duplicate a key."""
        env = EnvironmentFile(tmp_path / ".env", "A=1\n")

        with pytest.raises(ValidationError):
            env.append("A", "2")

    def test_load_missing_file(self, tmp_path: Path) -> None:
        """Test that loading a missing file raises ValidationError."""
        with pytest.raises(ValidationError, match="not found"):
            EnvironmentFile.load(tmp_path / ".env")

    def test_load_non_utf8_file(self, tmp_path: Path) -> None:
        """Test that undecodable bytes raise ValidationError naming the file."""
        path = tmp_path / ".env"
        path.write_bytes(b"IMAGE_TAG=1.0.0\nNOTE=caf\xe9\n")

        with pytest.raises(ValidationError, match="not valid UTF-8") as exc_info:
            EnvironmentFile.load(path)

        assert exc_info.value.details["path"] == str(path)
        assert exc_info.value.details["offset"] == 24

    def test_save_round_trip_and_mode(self, tmp_path: Path) -> None:
        """Test that saving writes the text with mode 0600."""
        path = tmp_path / ".env"
        path.write_text("A=1\n")
        env = EnvironmentFile.load(path)
        env.set_value("A", "2")

        env.save()

        assert path.read_text() == "A=2\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600


# =============================================================================
# Tests for EnvironmentMerger
# =============================================================================


class TestEnvironmentMerger:
    """Tests for template merging."""

    def test_adds_only_missing_keys(self, tmp_path: Path) -> None:
        """Test a five-key template merged into a three-key live file."""
        template = tmp_path / ".env.example"
        template.write_text("A=a\nB=b\nC=c\nD=CHANGE_ME\nE=e\n")
        live = tmp_path / ".env"
        live.write_text("A=live-a\nB=live-b\nC=live-c\n")

        added = EnvironmentMerger(today=date(2026, 3, 1)).merge(template, live, "2.0.0")

        assert added == 2
        text = live.read_text()
        assert text.startswith("A=live-a\nB=live-b\nC=live-c\n")
        assert "# Added in version 2.0.0 (2026-03-01)" in text
        assert text.count("# Added in version") == 2
        merged = EnvironmentFile.load(live)
        assert merged.keys() == ["A", "B", "C", "D", "E"]
        assert merged.get("D") == "CHANGE_ME"

    def test_existing_values_untouched(self, tmp_path: Path) -> None:
        """Test that no live value is modified when nothing is missing."""
        template = tmp_path / ".env.example"
        template.write_text("A=template\n")
        live = tmp_path / ".env"
        live.write_text("A=live\n")

        assert EnvironmentMerger().merge(template, live, "2.0.0") == 0
        assert live.read_text() == "A=live\n"

    def test_missing_template(self, tmp_path: Path) -> None:
        """Test that a missing template adds nothing."""
        live = tmp_path / ".env"
        live.write_text("A=1\n")

        assert EnvironmentMerger().merge(tmp_path / "missing", live, "2.0.0") == 0
        assert live.read_text() == "A=1\n"

    def test_missing_live_file(self, tmp_path: Path) -> None:
        """Test that a missing live file is a validation error."""
        template = tmp_path / ".env.example"
        template.write_text("A=1\n")

        with pytest.raises(ValidationError):
            EnvironmentMerger().merge(template, tmp_path / ".env", "2.0.0")
