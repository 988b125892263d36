from __future__ import annotations

import re
from pathlib import Path

import pytest

from pg_bootstrap.config import BootstrapConfig
from pg_bootstrap.query import QueryFailed

# TEST CONSTANTS
TEST_PORT = 5001
TEST_SERVICE_USER = "postgres"

_ROLE_STMT = re.compile(
    r"""^(CREATE|ALTER) ROLE "((?:[^"]|"")*)" """ r"""WITH LOGIN PASSWORD '((?:[^']|'')*)'$"""
)
_DB_STMT = re.compile(r'^CREATE DATABASE "((?:[^"]|"")*)" OWNER "((?:[^"]|"")*)"$')


class FakeQueryRunner:
    """In-memory stand-in for a running engine's catalog."""

    def __init__(self) -> None:
        self.roles: dict[str, str] = {}
        self.databases: dict[str, str] = {}
        self.statements: list[tuple[str | None, str]] = []
        self.fail_on: str | None = None

    def exists(self, kind: str, name: str) -> bool:
        return name in (self.roles if kind == "role" else self.databases)

    def execute(self, statement: str, database: str | None = None) -> None:
        if self.fail_on and self.fail_on in statement:
            raise QueryFailed(f"boom: {statement}")
        self.statements.append((database, statement))
        if match := _ROLE_STMT.match(statement):
            verb, role, password = match.groups()
            role, password = role.replace('""', '"'), password.replace("''", "'")
            if verb == "CREATE" and role in self.roles:
                raise QueryFailed(f'role "{role}" already exists')
            if verb == "ALTER" and role not in self.roles:
                raise QueryFailed(f'role "{role}" does not exist')
            self.roles[role] = password
        elif match := _DB_STMT.match(statement):
            name, owner = (g.replace('""', '"') for g in match.groups())
            if name in self.databases:
                raise QueryFailed(f'database "{name}" already exists')
            self.databases[name] = owner

    def authenticates(self, role: str, password: str) -> bool:
        return self.roles.get(role) == password


class FakeChecker:
    """Health check that turns ready after ``ready_after`` failed polls."""

    def __init__(self, ready_after: int | None = 0) -> None:
        self.ready_after = ready_after
        self.calls: list[tuple[str, int]] = []

    def is_ready(self, host: str, port: int) -> bool:
        self.calls.append((host, port))
        if self.ready_after is None:
            return False
        return len(self.calls) > self.ready_after


@pytest.fixture
def config(tmp_path: Path) -> BootstrapConfig:
    """A config rooted entirely under the test's temp dir."""
    return BootstrapConfig(
        db_name="testdb",
        db_user="tester",
        db_password="pw1",
        port=TEST_PORT,
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "log",
        pg_lib_dir=tmp_path / "lib",
        service_user=TEST_SERVICE_USER,
        artifacts_dir=tmp_path / "out",
        ready_attempts=5,
    )


@pytest.fixture
def fake_runner() -> FakeQueryRunner:
    return FakeQueryRunner()


@pytest.fixture
def fake_checker() -> FakeChecker:
    return FakeChecker()


@pytest.fixture
def pg_lib(tmp_path: Path) -> Path:
    """A fake /usr/lib/postgresql with versions 9.6, 10 and 16 installed."""
    lib = tmp_path / "lib"
    for version in ("9.6", "10", "16"):
        bin_dir = lib / version / "bin"
        bin_dir.mkdir(parents=True)
        server = bin_dir / "postgres"
        server.write_text("#!/bin/sh\n")
        server.chmod(0o755)
    return lib
