from __future__ import annotations

import socket
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from pg_bootstrap import BootstrapConfig
from pg_bootstrap.errors import BinariesNotFound
from pg_bootstrap.helpers import current_user, find_pg_bin_dir, is_root

PG_LIB_DIR = Path("/usr/lib/postgresql")


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(scope="session", autouse=True)
def pg_bin_dir() -> Path:
    """Skip the whole suite when no PostgreSQL toolchain is installed."""
    if is_root():
        pytest.skip("PostgreSQL refuses to run as root; run integration tests unprivileged")
    try:
        return find_pg_bin_dir(PG_LIB_DIR)
    except BinariesNotFound as e:
        pytest.skip(str(e))


@pytest.fixture(scope="class")
def cluster_config(
    tmp_path_factory: pytest.TempPathFactory,
) -> Generator[BootstrapConfig, None, None]:
    """One throwaway cluster per test class, owned by the invoking user."""
    root = tmp_path_factory.mktemp("cluster")
    # unix socket paths are length limited, keep this one short
    with tempfile.TemporaryDirectory(prefix="pgb") as socket_dir:
        user = current_user()
        yield BootstrapConfig(
            db_name="itest",
            db_user="itest_user",
            db_password="pw1",
            port=_free_port(),
            data_dir=root / "data",
            log_dir=root,
            pg_lib_dir=PG_LIB_DIR,
            service_user=user,
            admin_user=user,
            socket_dir=Path(socket_dir),
            artifacts_dir=root / "out",
            ready_attempts=30,
            ready_interval=0.5,
        )
