"""
Datastore command-line interface.

``PostgresClient`` issues ``pg_dump``/``pg_restore``/``psql`` commands
through an executor, which is either ``runtime.exec`` bound to the datastore
service or ``runtime.exec_ephemeral`` bound to a disposable container.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from functools import partial

from stackpilot.errors import InternalError, ValidationError
from stackpilot.logging import get_logger
from stackpilot.runtime.base import CommandResult, ContainerRuntime

logger = get_logger(__name__)

Executor = Callable[..., Awaitable[CommandResult]]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

PGDMP_MAGIC = b"PGDMP"


def validate_database_name(name: str) -> str:
    """Reject database names that are not plain identifiers."""
    if not _IDENTIFIER.match(name):
        raise ValidationError(
            f"Invalid database name: {name!r}",
            details={"database": name},
        )
    return name


class DatastoreClient(ABC):
    """Dump and restore operations against a datastore instance."""

    @abstractmethod
    async def is_ready(self) -> bool:
        """Whether the datastore accepts connections."""

    @abstractmethod
    async def dump(self, database: str) -> bytes:
        """Return a custom-format dump of ``database``."""

    @abstractmethod
    async def dump_sql(self, database: str) -> bytes:
        """Return a plain SQL export of ``database``."""

    @abstractmethod
    async def create_database(self, database: str) -> None:
        """Create ``database`` if it does not exist."""

    @abstractmethod
    async def restore(self, database: str, dump: bytes) -> bool:
        """Restore a custom-format dump; False when the tool reported errors."""

    @abstractmethod
    async def restore_sql(self, database: str, sql: bytes) -> bool:
        """Replay a plain SQL export; False when the tool reported errors."""

    @abstractmethod
    async def count_tables(self, database: str) -> int:
        """Count user tables in ``database``."""


class PostgresClient(DatastoreClient):
    """DatastoreClient for PostgreSQL."""

    def __init__(self, execute: Executor, user: str = "postgres") -> None:
        self._execute = execute
        self.user = user

    async def is_ready(self) -> bool:
        result = await self._execute(["pg_isready", "-U", self.user], timeout=15.0)
        return result.ok

    async def dump(self, database: str) -> bytes:
        validate_database_name(database)
        result = await self._execute(["pg_dump", "-U", self.user, "-Fc", database])
        if not result.ok or not result.stdout.startswith(PGDMP_MAGIC):
            raise InternalError(
                f"Database dump failed: {database}",
                details={"database": database, "stderr": result.stderr.strip()[-500:]},
            )
        logger.info(
            "Dumped database",
            extra={"database": database, "size": len(result.stdout)},
        )
        return result.stdout

    async def dump_sql(self, database: str) -> bytes:
        validate_database_name(database)
        result = await self._execute(["pg_dump", "-U", self.user, "--no-owner", database])
        if not result.ok:
            raise InternalError(
                f"SQL export failed: {database}",
                details={"database": database, "stderr": result.stderr.strip()[-500:]},
            )
        return result.stdout

    async def create_database(self, database: str) -> None:
        validate_database_name(database)
        exists = await self._execute(
            [
                "psql", "-U", self.user, "-tAc",
                f"SELECT 1 FROM pg_database WHERE datname = '{database}'",
            ]
        )
        if exists.ok and exists.text.strip() == "1":
            return
        result = await self._execute(
            ["psql", "-U", self.user, "-c", f'CREATE DATABASE "{database}"']
        )
        if not result.ok:
            raise InternalError(
                f"Failed to create database {database}",
                details={"stderr": result.stderr.strip()[-500:]},
            )

    async def restore(self, database: str, dump: bytes) -> bool:
        validate_database_name(database)
        result = await self._execute(
            [
                "pg_restore", "-U", self.user, "-d", database,
                "--clean", "--if-exists", "--no-owner",
            ],
            stdin=dump,
        )
        if not result.ok:
            logger.warning(
                "pg_restore reported errors",
                extra={"database": database, "stderr": result.stderr.strip()[-500:]},
            )
        return result.ok

    async def restore_sql(self, database: str, sql: bytes) -> bool:
        validate_database_name(database)
        result = await self._execute(
            ["psql", "-U", self.user, "-d", database, "-v", "ON_ERROR_STOP=0"],
            stdin=sql,
        )
        if not result.ok:
            logger.warning(
                "SQL replay reported errors",
                extra={"database": database, "stderr": result.stderr.strip()[-500:]},
            )
        return result.ok

    async def count_tables(self, database: str) -> int:
        validate_database_name(database)
        result = await self._execute(
            [
                "psql", "-U", self.user, "-d", database, "-tAc",
                "SELECT count(*) FROM information_schema.tables "
                "WHERE table_schema NOT IN ('pg_catalog', 'information_schema')",
            ]
        )
        try:
            return int(result.text.strip()) if result.ok else 0
        except ValueError:
            return 0


def service_client(runtime: ContainerRuntime, service: str, user: str) -> PostgresClient:
    """Client running commands inside a stack service."""
    return PostgresClient(partial(runtime.exec, service), user)


def ephemeral_client(runtime: ContainerRuntime, name: str, user: str) -> PostgresClient:
    """Client running commands inside an ephemeral container."""
    return PostgresClient(partial(runtime.exec_ephemeral, name), user)
