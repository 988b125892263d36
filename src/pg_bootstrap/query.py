from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import psycopg

from .errors import CommandFailed
from .helpers import as_user, run_command

__all__ = [
    "EXISTENCE_QUERIES",
    "PsqlQueryRunner",
    "PsycopgQueryRunner",
    "QueryFailed",
    "QueryRunner",
    "quote_ident",
    "quote_literal",
]

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"

# kind -> (catalog, name column)
EXISTENCE_QUERIES = {
    "role": ("pg_catalog.pg_roles", "rolname"),
    "database": ("pg_catalog.pg_database", "datname"),
}


class QueryFailed(RuntimeError):
    pass


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _existence_sql(kind: str, placeholder: str) -> str:
    try:
        catalog, column = EXISTENCE_QUERIES[kind]
    except KeyError:
        raise ValueError(f"Unknown object kind {kind!r}") from None
    return f"SELECT 1 FROM {catalog} WHERE {column} = {placeholder}"  # noqa: S608


class QueryRunner(Protocol):
    def exists(self, kind: str, name: str) -> bool: ...

    def execute(self, statement: str, database: str | None = None) -> None: ...


class PsqlQueryRunner:
    """Run queries through ``psql`` over the local socket as the service account."""

    def __init__(
        self,
        bin_dir: Path,
        port: int,
        admin_user: str,
        service_user: str,
        socket_dir: Path | None = None,
    ):
        self.bin_dir = bin_dir
        self.port = port
        self.admin_user = admin_user
        self.service_user = service_user
        self.socket_dir = socket_dir

    def _psql(self, database: str | None, *args: str) -> list[str]:
        cmd = [
            str(self.bin_dir / "psql"),
            "-X",
            "-q",
            "-v",
            "ON_ERROR_STOP=1",
            "-p",
            str(self.port),
            "-U",
            self.admin_user,
            "-d",
            database or MAINTENANCE_DB,
        ]
        if self.socket_dir is not None:
            cmd += ["-h", str(self.socket_dir)]
        return as_user([*cmd, *args], self.service_user)

    def exists(self, kind: str, name: str) -> bool:
        sql = _existence_sql(kind, quote_literal(name))
        try:
            result = run_command(self._psql(None, "-tAc", sql))
        except (CommandFailed, OSError) as e:
            raise QueryFailed(f"Existence check for {kind} {name!r} failed: {e}") from e
        return result.stdout.strip() == "1"

    def execute(self, statement: str, database: str | None = None) -> None:
        try:
            run_command(self._psql(database, "-f", "-"), input=statement)
        except (CommandFailed, OSError) as e:
            raise QueryFailed(f"Statement failed on {database or MAINTENANCE_DB}: {e}") from e


class PsycopgQueryRunner:
    """In-process runner on ``psycopg``; connects over the local socket.

    Peer authentication means the process must run as the admin account.
    """

    def __init__(self, port: int, admin_user: str, socket_dir: Path | None = None):
        self.port = port
        self.admin_user = admin_user
        self.socket_dir = socket_dir

    def _connect(self, database: str | None) -> psycopg.Connection:
        return psycopg.connect(
            host=str(self.socket_dir) if self.socket_dir is not None else None,
            port=self.port,
            user=self.admin_user,
            dbname=database or MAINTENANCE_DB,
            autocommit=True,
        )

    def exists(self, kind: str, name: str) -> bool:
        sql = _existence_sql(kind, "%s")
        try:
            with self._connect(None) as conn:
                row = conn.execute(sql, (name,)).fetchone()
        except psycopg.Error as e:
            raise QueryFailed(f"Existence check for {kind} {name!r} failed: {e}") from e
        return row is not None

    def execute(self, statement: str, database: str | None = None) -> None:
        try:
            with self._connect(database) as conn:
                conn.execute(statement)
        except psycopg.Error as e:
            raise QueryFailed(f"Statement failed on {database or MAINTENANCE_DB}: {e}") from e
