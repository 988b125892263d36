"""Role, database and privilege convergence.

Existence decides only whether to *create*; everything mutable (password,
grants) is re-applied on every run so a partially failed earlier run, or a
changed password, converges on the next one.

Grants on existing objects cover what is in the schema at the time of the
run. Objects another process creates later are picked up by the default
privileges when that process is the admin role, otherwise only on the next
convergence pass.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .errors import IdentityConvergenceFailed
from .query import QueryFailed, QueryRunner, quote_ident, quote_literal

__all__ = ["Identity", "IdentityConverger", "IdentityReport", "grant_statements"]

logger = logging.getLogger(__name__)

_PASSWORD_LITERAL = re.compile(r"PASSWORD '(?:[^']|'')*'")


@dataclass(frozen=True)
class Identity:
    role: str
    password: str = field(repr=False)
    database: str


@dataclass
class IdentityReport:
    role_created: bool = False
    database_created: bool = False
    statements: int = 0


def _mask(statement: str) -> str:
    return _PASSWORD_LITERAL.sub("PASSWORD '*****'", statement)


def grant_statements(role: str, schema: str = "public") -> list[str]:
    """Schema-level grants applied inside the target database."""
    r, s = quote_ident(role), quote_ident(schema)
    statements = [f"GRANT USAGE, CREATE ON SCHEMA {s} TO {r}"]
    for kind in ("TABLES", "SEQUENCES", "FUNCTIONS", "TYPES"):
        statements.append(f"ALTER DEFAULT PRIVILEGES IN SCHEMA {s} GRANT ALL ON {kind} TO {r}")
    for kind in ("TABLES", "SEQUENCES", "FUNCTIONS"):
        statements.append(f"GRANT ALL PRIVILEGES ON ALL {kind} IN SCHEMA {s} TO {r}")
    return statements


class IdentityConverger:
    def __init__(self, runner: QueryRunner, schema: str = "public"):
        self.runner = runner
        self.schema = schema
        self.report = IdentityReport()

    def _execute(self, statement: str, database: str | None = None) -> None:
        logger.debug("[%s] %s", database or "postgres", _mask(statement))
        try:
            self.runner.execute(statement, database)
        except QueryFailed as e:
            raise IdentityConvergenceFailed(_mask(str(e))) from e
        self.report.statements += 1

    def _exists(self, kind: str, name: str) -> bool:
        try:
            return self.runner.exists(kind, name)
        except QueryFailed as e:
            raise IdentityConvergenceFailed(str(e)) from e

    def _create(self, kind: str, name: str, statement: str) -> bool:
        """Create unless present. A lost race with a concurrent run is tolerated."""
        if self._exists(kind, name):
            logger.info("%s %r already exists", kind.capitalize(), name)
            return False
        try:
            self.runner.execute(statement, None)
        except QueryFailed as e:
            if self._exists(kind, name):
                logger.info("%s %r was created concurrently", kind.capitalize(), name)
                return False
            raise IdentityConvergenceFailed(_mask(str(e))) from e
        self.report.statements += 1
        logger.info("Created %s %r", kind, name)
        return True

    def ensure_role(self, identity: Identity) -> bool:
        role, password = quote_ident(identity.role), quote_literal(identity.password)
        created = self._create(
            "role", identity.role, f"CREATE ROLE {role} WITH LOGIN PASSWORD {password}"
        )
        self._execute(f"ALTER ROLE {role} WITH LOGIN PASSWORD {password}")
        self.report.role_created = created
        return created

    def ensure_database(self, identity: Identity) -> bool:
        db, role = quote_ident(identity.database), quote_ident(identity.role)
        created = self._create(
            "database", identity.database, f"CREATE DATABASE {db} OWNER {role}"
        )
        self._execute(f"GRANT ALL PRIVILEGES ON DATABASE {db} TO {role}")
        self.report.database_created = created
        return created

    def apply_grants(self, identity: Identity) -> None:
        for statement in grant_statements(identity.role, self.schema):
            self._execute(statement, identity.database)

    def converge(self, identity: Identity) -> IdentityReport:
        logger.info(
            "Ensuring database %r and user %r exist...", identity.database, identity.role
        )
        self.ensure_role(identity)
        self.ensure_database(identity)
        self.apply_grants(identity)
        return self.report
