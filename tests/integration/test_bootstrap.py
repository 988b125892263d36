from __future__ import annotations

import dataclasses
from collections.abc import Generator

import psycopg
import pytest

from pg_bootstrap import Bootstrap, BootstrapConfig
from pg_bootstrap.core import BootstrapResult
from pg_bootstrap.pgconf import REQUIRED_RULES, AccessRulesFile, SettingsFile

pytestmark = pytest.mark.integration


def _connect(config: BootstrapConfig, password: str) -> psycopg.Connection:
    return psycopg.connect(
        host=config.check_host,
        port=config.port,
        user=config.db_user,
        password=password,
        dbname=config.db_name,
        connect_timeout=5,
    )


@pytest.fixture(scope="class")
def first_run(cluster_config: BootstrapConfig) -> Generator[BootstrapResult, None, None]:
    bootstrap = Bootstrap(cluster_config)
    try:
        yield bootstrap.run()
    finally:
        bootstrap.stop()


class TestFreshCluster:
    def test_initializes_and_starts(self, first_run: BootstrapResult) -> None:
        assert first_run.initialized is True
        assert first_run.started is True
        assert first_run.identity is not None
        assert first_run.identity.role_created
        assert first_run.identity.database_created

    def test_config_applied(
        self, first_run: BootstrapResult, cluster_config: BootstrapConfig
    ) -> None:
        settings = SettingsFile.load(cluster_config.data_dir / "postgresql.conf")
        assert settings.get("port") == str(cluster_config.port)
        assert settings.active_count("port") == 1
        hba = AccessRulesFile.load(cluster_config.data_dir / "pg_hba.conf")
        assert all(hba.has(rule) for rule in REQUIRED_RULES)

    def test_app_user_can_create_tables(
        self, first_run: BootstrapResult, cluster_config: BootstrapConfig
    ) -> None:
        with _connect(cluster_config, "pw1") as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS smoke (id int)")
            conn.execute("INSERT INTO smoke VALUES (1)")
            assert conn.execute("SELECT count(*) FROM smoke").fetchone() == (1,)

    def test_connection_file(
        self, first_run: BootstrapResult, cluster_config: BootstrapConfig
    ) -> None:
        assert first_run.artifacts is not None
        url = first_run.artifacts[0].read_text().strip()
        with psycopg.connect(url, connect_timeout=5) as conn:
            assert conn.execute("SELECT current_user").fetchone() == (cluster_config.db_user,)


class TestRerun:
    def test_second_run_while_running(
        self, first_run: BootstrapResult, cluster_config: BootstrapConfig
    ) -> None:
        result = Bootstrap(cluster_config).run()
        assert result.already_running is True
        assert result.identity is not None
        assert not result.identity.role_created

    def test_restart_keeps_cluster_and_converges_password(
        self, first_run: BootstrapResult, cluster_config: BootstrapConfig
    ) -> None:
        Bootstrap(cluster_config).stop()
        conf = (cluster_config.data_dir / "postgresql.conf").read_text()

        changed = dataclasses.replace(cluster_config, db_password="pw2")
        result = Bootstrap(changed).run()

        assert result.initialized is False
        assert result.started is True
        assert result.config_changes == []
        assert (cluster_config.data_dir / "postgresql.conf").read_text() == conf
        with _connect(changed, "pw2") as conn:
            assert conn.execute("SELECT 1").fetchone() == (1,)
        with pytest.raises(psycopg.OperationalError):
            _connect(changed, "pw1")


class TestPsycopgDriver:
    def test_identity_via_psycopg(self, cluster_config: BootstrapConfig) -> None:
        config = dataclasses.replace(cluster_config, driver="psycopg")
        bootstrap = Bootstrap(config)
        try:
            result = bootstrap.run()
            assert result.identity is not None
            with _connect(config, "pw1") as conn:
                assert conn.execute("SELECT 1").fetchone() == (1,)
        finally:
            bootstrap.stop()
