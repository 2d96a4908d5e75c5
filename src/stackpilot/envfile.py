"""
Environment file handling.

An environment file is an ordered ``KEY=value`` text store. ``EnvironmentFile``
keeps every original line (comments, blank lines, separators and line
endings) so rewriting a file changes only what was explicitly changed.

``EnvironmentMerger`` adds keys that appear in a template but are missing
from the live file. It never changes the value of a key that already exists.
"""

from __future__ import annotations

import re
from datetime import date
from pathlib import Path

from stackpilot.errors import ValidationError
from stackpilot.fsops import atomic_write_bytes
from stackpilot.logging import get_logger

logger = get_logger(__name__)

KEY_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=")
SEPARATOR_PATTERN = re.compile(r"^[=\-]+$")


def parse_key(line: str) -> str | None:
    """Return the key defined by ``line``, or None for non-assignment lines."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or SEPARATOR_PATTERN.match(stripped):
        return None
    match = KEY_PATTERN.match(stripped)
    return match.group(1) if match else None


class EnvironmentFile:
    """
    Ordered key/value store backed by a text file.

    Keys are unique; when a file repeats a key, the first occurrence is
    authoritative for ``get`` and ``set_value``.
    """

    def __init__(self, path: Path | str, text: str = "") -> None:
        self.path = Path(path)
        self._lines: list[str] = text.splitlines(keepends=True)

    @classmethod
    def load(cls, path: Path | str) -> EnvironmentFile:
        """
        Read an environment file.

        Raises:
            ValidationError: If the file does not exist or is not UTF-8 text.
        """
        path = Path(path)
        if not path.is_file():
            raise ValidationError(
                f"Environment file not found: {path}",
                details={"path": str(path)},
            )
        try:
            text = path.read_bytes().decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(
                f"Environment file is not valid UTF-8: {path}",
                details={"path": str(path), "offset": e.start},
            ) from e
        return cls(path, text)

    def keys(self) -> list[str]:
        """Return keys in file order."""
        seen: list[str] = []
        for line in self._lines:
            key = parse_key(line)
            if key is not None and key not in seen:
                seen.append(key)
        return seen

    def __contains__(self, key: object) -> bool:
        return key in self.keys()

    def raw_value(self, key: str) -> str | None:
        """Return the value of ``key`` exactly as written."""
        index = self._find(key)
        if index is None:
            return None
        return self._lines[index].strip().split("=", 1)[1]

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value of ``key`` with surrounding quotes stripped."""
        value = self.raw_value(key)
        if value is None:
            return default
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        return value

    def items(self) -> list[tuple[str, str | None]]:
        """Return (key, value) pairs in file order."""
        return [(key, self.get(key)) for key in self.keys()]

    def set_value(self, key: str, value: str) -> None:
        """
        Set ``key`` in place, or append it when absent.

        Only the line holding ``key`` is rewritten; its line ending is kept.
        """
        index = self._find(key)
        if index is None:
            self._append_line(f"{key}={value}")
            return
        line = self._lines[index]
        ending = line[len(line.rstrip("\r\n")) :]
        indent = line[: len(line) - len(line.lstrip())]
        self._lines[index] = f"{indent}{key}={value}{ending}"

    def append(self, key: str, value: str, comment: str | None = None) -> None:
        """Append a new key, optionally preceded by a comment line."""
        if key in self:
            raise ValidationError(
                f"Key already present in {self.path.name}: {key}",
                details={"key": key, "path": str(self.path)},
            )
        if comment:
            self._append_line("")
            self._append_line(f"# {comment}")
        self._append_line(f"{key}={value}")

    def to_text(self) -> str:
        return "".join(self._lines)

    def save(self, *, mode: int | None = 0o600) -> None:
        """Atomically write the file back."""
        atomic_write_bytes(self.path, self.to_text().encode("utf-8"), mode=mode)

    def _find(self, key: str) -> int | None:
        for index, line in enumerate(self._lines):
            if parse_key(line) == key:
                return index
        return None

    def _append_line(self, line: str) -> None:
        if self._lines and not self._lines[-1].endswith(("\n", "\r")):
            self._lines[-1] += "\n"
        self._lines.append(line + "\n")


class EnvironmentMerger:
    """
    Adds template keys missing from a live environment file.

    Each appended key is preceded by a provenance comment
    ``# Added in version <version> (<date>)``.
    """

    def __init__(self, today: date | None = None) -> None:
        self._today = today

    def merge(
        self,
        template: Path | str,
        live: Path | str,
        version: str,
    ) -> int:
        """
        Append every template key that the live file lacks.

        Args:
            template: Template environment file (e.g. ``.env.example``).
            live: Live environment file (e.g. ``.env``).
            version: Version recorded in the provenance comment.

        Returns:
            Number of keys added. Zero when the template does not exist.

        Raises:
            ValidationError: If the live file does not exist.
        """
        template_path = Path(template)
        if not template_path.is_file():
            logger.warning(
                "Environment template not found, skipping merge",
                extra={"template": str(template_path)},
            )
            return 0

        live_file = EnvironmentFile.load(live)
        template_file = EnvironmentFile.load(template_path)
        existing = set(live_file.keys())
        stamp = (self._today or date.today()).isoformat()

        added: list[str] = []
        for key in template_file.keys():
            if key in existing:
                continue
            live_file.append(
                key,
                template_file.raw_value(key) or "",
                comment=f"Added in version {version} ({stamp})",
            )
            added.append(key)

        if added:
            live_file.save()
            logger.info(
                f"Added {len(added)} new environment variable(s)",
                extra={"keys": added, "live": str(live_file.path)},
            )
        else:
            logger.info("No new environment variables to add")
        return len(added)
