from __future__ import annotations

import logging
import shlex
from pathlib import Path
from urllib.parse import quote

from .identity import Identity

__all__ = ["ConnectionArtifactWriter", "connection_url"]

logger = logging.getLogger(__name__)


def connection_url(identity: Identity, host: str, port: int, with_credentials: bool = True) -> str:
    database = quote(identity.database, safe="")
    if not with_credentials:
        return f"postgresql://{host}:{port}/{database}"
    auth = f"{quote(identity.role, safe='')}:{quote(identity.password, safe='')}"
    return f"postgresql://{auth}@{host}:{port}/{database}"


class ConnectionArtifactWriter:
    """Write the connection string and shell env snippet, always overwriting."""

    def __init__(
        self,
        root: Path,
        connection_file: str = "db_connection.txt",
        env_file: str = "db_visualizer/postgres.env",
    ):
        self.connection_path = root / connection_file
        self.env_path = root / env_file

    def render_env(self, identity: Identity, host: str, port: int) -> str:
        values = {
            "POSTGRES_URL": connection_url(identity, host, port, with_credentials=False),
            "POSTGRES_USER": identity.role,
            "POSTGRES_PASSWORD": identity.password,
            "POSTGRES_DB": identity.database,
            "POSTGRES_PORT": str(port),
        }
        return "".join(f"export {key}={shlex.quote(value)}\n" for key, value in values.items())

    def write(self, identity: Identity, host: str, port: int) -> tuple[Path, Path]:
        self.connection_path.parent.mkdir(parents=True, exist_ok=True)
        url = connection_url(identity, host, port)
        self.connection_path.write_text(url + "\n", encoding="utf-8")

        self.env_path.parent.mkdir(parents=True, exist_ok=True)
        self.env_path.write_text(self.render_env(identity, host, port), encoding="utf-8")

        logger.info("Wrote %s and %s", self.connection_path, self.env_path)
        return self.connection_path, self.env_path
