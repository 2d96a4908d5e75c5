"""
Structured logging framework for stackpilot.

This module provides JSON-formatted structured logging for the command line
and an append-only per-operation log file for lifecycle operations.

Features:
- JSON-formatted log output for machine-readable logs
- Consistent field structure across all log entries
- Plain-text mode for interactive use
- Per-operation log files (update_<ts>.log, install_<ts>.log) with a header
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from stackpilot.config import LoggingConfig

ROOT_LOGGER_NAME = "stackpilot"

# Default log format for plain-text output and operation logs
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
    "asctime",
}


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Fields passed via the `extra` parameter in logging calls
        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class OperationFormatter(logging.Formatter):
    """Plain-text formatter that appends `extra` fields as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(DEFAULT_LOG_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {
            key: getattr(record, key)
            for key in sorted(set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS)
            if getattr(record, key, None) is not None
        }
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure the logging system for stackpilot.

    Args:
        config: Optional LoggingConfig object with logging settings.
            If provided, overrides other parameters.
        level: Default log level if no config is provided.
        json_format: Whether to use JSON formatting (default: True).
        log_to_stdout: Whether to log to stdout (default: True).
        stream: Console stream (default: stdout). The command line passes
            stderr so command output stays parseable.

    Returns:
        The root logger configured for the stackpilot package.

    Example:
        >>> from stackpilot.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Update started", extra={"target_version": "2.1.0"})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    if log_to_stdout:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setLevel(getattr(logging, log_level, logging.INFO))

        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

        logger.addHandler(handler)

    # Prevent propagation to root logger to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    This function returns a child logger of the main stackpilot logger,
    ensuring consistent configuration across all modules.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "stackpilot." prefix is added automatically if not present.

    Returns:
        A configured logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


@contextmanager
def operation_log(
    path: Path,
    header: dict[str, Any] | None = None,
) -> Iterator[Path]:
    """
    Mirror all stackpilot log records into an append-only operation log.

    The file is opened in append mode and a header block is written before
    any record. The handler is detached when the context exits, whatever
    the outcome of the operation.

    Args:
        path: Log file path (parent directories are created).
        header: Optional key/value pairs written in the header block.

    Yields:
        The log file path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write("=" * 60 + "\n")
        f.write(f"stackpilot operation log - {datetime.now(UTC).isoformat()}\n")
        for key, value in (header or {}).items():
            f.write(f"{key}: {value}\n")
        f.write("=" * 60 + "\n")

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    handler = logging.FileHandler(path, mode="a")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(OperationFormatter())
    previous_level = logger.level
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    try:
        yield path
    finally:
        logger.removeHandler(handler)
        handler.close()
        logger.setLevel(previous_level)
