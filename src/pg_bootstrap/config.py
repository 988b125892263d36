from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError
from .identity import Identity

__all__ = ["DRIVERS", "BootstrapConfig"]

DRIVERS = ("psql", "psycopg")

_ENV_KEYS = {
    "db_name": "DB_NAME",
    "db_user": "DB_USER",
    "db_password": "DB_PASSWORD",
    "port": "DB_PORT",
    "data_dir": "PGDATA",
    "log_dir": "PGLOGDIR",
    "pg_lib_dir": "PG_LIB_DIR",
    "service_user": "PG_SERVICE_USER",
    "admin_user": "PG_ADMIN_USER",
    "socket_dir": "PG_SOCKET_DIR",
    "ready_attempts": "DB_READY_ATTEMPTS",
    "ready_interval": "DB_READY_INTERVAL",
    "artifacts_dir": "DB_ARTIFACTS_DIR",
    "driver": "DB_DRIVER",
}


@dataclass
class BootstrapConfig:
    """Everything one bootstrap run needs, resolved once at the entry point.

    Key features:
    - ``port`` / ``listen_addresses`` / ``bind_host`` → what the server binds to
    - ``check_host`` → where readiness is probed (loopback)
    - ``service_user`` → OS account owning the data directory and running ``pg_ctl``
    - ``admin_user`` → superuser role used for identity convergence
    - ``socket_dir`` → unix socket directory, ``None`` keeps the engine default
    """

    db_name: str = "myapp"
    db_user: str = "appuser"
    db_password: str = "dbuser123"  # noqa: S105
    port: int = 5001
    data_dir: Path = Path("/var/lib/postgresql/data")
    log_dir: Path = Path("/var/lib/postgresql")
    log_name: str = "startup.log"
    pg_lib_dir: Path | None = Path("/usr/lib/postgresql")
    service_user: str = "postgres"
    admin_user: str = "postgres"
    socket_dir: Path | None = None
    listen_addresses: str = "*"
    bind_host: str = "0.0.0.0"  # noqa: S104
    check_host: str = "127.0.0.1"
    ready_attempts: int = 60
    ready_interval: float = 1.0
    artifacts_dir: Path = Path(".")
    connection_file: str = "db_connection.txt"
    env_file: str = "db_visualizer/postgres.env"
    driver: str = "psql"

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Port out of range: {self.port}")
        if self.ready_attempts < 1:
            raise ConfigurationError(f"ready_attempts must be >= 1, got {self.ready_attempts}")
        if self.ready_interval < 0:
            raise ConfigurationError(f"ready_interval must be >= 0, got {self.ready_interval}")
        if self.driver not in DRIVERS:
            raise ConfigurationError(
                f"Unknown driver {self.driver!r}, expected one of: {', '.join(DRIVERS)}"
            )

    @property
    def log_file(self) -> Path:
        return self.log_dir / self.log_name

    @property
    def identity(self) -> Identity:
        return Identity(role=self.db_user, password=self.db_password, database=self.db_name)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BootstrapConfig:
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        def get(field: str) -> str | None:
            value = env.get(_ENV_KEYS[field])
            return value if value else None

        for field in ("db_name", "db_user", "db_password", "service_user", "admin_user", "driver"):
            value = get(field)
            if value is not None:
                values[field] = value

        for field in ("data_dir", "log_dir", "pg_lib_dir", "socket_dir", "artifacts_dir"):
            value = get(field)
            if value is not None:
                values[field] = Path(value)

        for field, kind in (("port", int), ("ready_attempts", int), ("ready_interval", float)):
            value = get(field)
            if value is None:
                continue
            try:
                values[field] = kind(value)
            except ValueError as e:
                raise ConfigurationError(
                    f"{_ENV_KEYS[field]} must be {kind.__name__}, got {value!r}"
                ) from e

        return cls(**values)  # type: ignore[arg-type]
