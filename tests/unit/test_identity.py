# tests/unit/test_identity.py
from __future__ import annotations

import logging

import pytest

from pg_bootstrap.errors import IdentityConvergenceFailed
from pg_bootstrap.identity import Identity, IdentityConverger, grant_statements
from pg_bootstrap.query import QueryFailed

IDENTITY = Identity(role="tester", password="pw1", database="testdb")


def test_fresh_instance_creates_everything(fake_runner) -> None:
    report = IdentityConverger(fake_runner).converge(IDENTITY)
    assert report.role_created is True
    assert report.database_created is True
    assert fake_runner.roles == {"tester": "pw1"}
    assert fake_runner.databases == {"testdb": "tester"}


def test_second_run_creates_nothing_but_reapplies(fake_runner) -> None:
    IdentityConverger(fake_runner).converge(IDENTITY)
    fake_runner.statements.clear()

    report = IdentityConverger(fake_runner).converge(IDENTITY)
    assert report.role_created is False
    assert report.database_created is False
    executed = [stmt for _, stmt in fake_runner.statements]
    assert not any(stmt.startswith("CREATE") for stmt in executed)
    assert executed[0] == """ALTER ROLE "tester" WITH LOGIN PASSWORD 'pw1'"""
    assert executed[1] == 'GRANT ALL PRIVILEGES ON DATABASE "testdb" TO "tester"'
    assert executed[2:] == grant_statements("tester")


def test_password_converges(fake_runner) -> None:
    IdentityConverger(fake_runner).converge(IDENTITY)
    assert fake_runner.authenticates("tester", "pw1")

    IdentityConverger(fake_runner).converge(
        Identity(role="tester", password="pw2", database="testdb")
    )
    assert fake_runner.authenticates("tester", "pw2")
    assert not fake_runner.authenticates("tester", "pw1")


def test_existing_role_with_drifted_password(fake_runner) -> None:
    fake_runner.roles["tester"] = "old"
    report = IdentityConverger(fake_runner).converge(IDENTITY)
    assert report.role_created is False
    assert fake_runner.roles["tester"] == "pw1"


def test_grants_run_in_target_database(fake_runner) -> None:
    IdentityConverger(fake_runner).converge(IDENTITY)
    grants = set(grant_statements("tester"))
    targets = {db for db, stmt in fake_runner.statements if stmt in grants}
    assert targets == {"testdb"}


def test_grant_battery() -> None:
    statements = grant_statements("tester")
    assert statements[0] == 'GRANT USAGE, CREATE ON SCHEMA "public" TO "tester"'
    defaults = [s for s in statements if s.startswith("ALTER DEFAULT PRIVILEGES")]
    assert [s.split(" ON ")[1].split()[0] for s in defaults] == [
        "TABLES",
        "SEQUENCES",
        "FUNCTIONS",
        "TYPES",
    ]
    existing = [s for s in statements if " ON ALL " in s]
    assert len(existing) == 3


def test_identifiers_are_quoted(fake_runner) -> None:
    identity = Identity(role='odd"name', password="it's", database="My DB")
    IdentityConverger(fake_runner).converge(identity)
    assert fake_runner.roles == {'odd"name': "it's"}
    assert fake_runner.databases == {"My DB": 'odd"name'}


def test_lost_create_race_is_tolerated(fake_runner) -> None:
    """Another invocation creates the role between our check and our create."""
    original_execute = fake_runner.execute

    def racing_execute(statement: str, database: str | None = None) -> None:
        if statement.startswith("CREATE ROLE"):
            fake_runner.roles["tester"] = "other"
            raise QueryFailed('role "tester" already exists')
        original_execute(statement, database)

    fake_runner.execute = racing_execute
    report = IdentityConverger(fake_runner).converge(IDENTITY)
    assert report.role_created is False
    assert fake_runner.roles["tester"] == "pw1"


def test_failure_is_fatal_and_masks_password(fake_runner) -> None:
    fake_runner.fail_on = "ALTER ROLE"
    with pytest.raises(IdentityConvergenceFailed) as exc_info:
        IdentityConverger(fake_runner).converge(IDENTITY)
    assert "pw1" not in str(exc_info.value)
    assert "PASSWORD '*****'" in str(exc_info.value)


def test_grant_failure_is_fatal(fake_runner) -> None:
    fake_runner.fail_on = "ALTER DEFAULT PRIVILEGES"
    with pytest.raises(IdentityConvergenceFailed):
        IdentityConverger(fake_runner).converge(IDENTITY)


def test_password_never_logged(fake_runner, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.DEBUG, logger="pg_bootstrap"):
        IdentityConverger(fake_runner).converge(IDENTITY)
    assert "pw1" not in caplog.text
