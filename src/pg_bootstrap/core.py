from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .artifacts import ConnectionArtifactWriter
from .config import BootstrapConfig
from .errors import BootstrapError, ReadinessTimeout
from .helpers import find_pg_bin_dir
from .identity import IdentityConverger, IdentityReport
from .pgconf import ConfigConverger
from .query import PsqlQueryRunner, PsycopgQueryRunner, QueryRunner
from .server import (
    HealthChecker,
    PgCtlSupervisor,
    PgIsReady,
    ReadinessPoller,
    ServerHandle,
    Supervisor,
    collect_diagnostics,
)
from .storage import StorageInitializer

__all__ = ["Bootstrap", "BootstrapResult"]

logger = logging.getLogger(__name__)


@dataclass
class BootstrapResult:
    handle: ServerHandle
    initialized: bool = False
    already_running: bool = False
    started: bool = False
    config_changes: list[str] = field(default_factory=list)
    identity: IdentityReport | None = None
    artifacts: tuple[Path, Path] | None = None


class Bootstrap:
    """Converge one local PostgreSQL instance to the configured state.

    Every step is safe to repeat; running again after a failure resumes
    from whatever state the previous run left behind.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        *,
        checker: HealthChecker | None = None,
        runner: QueryRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.handle = ServerHandle.from_config(config)
        self._bin_dir: Path | None = None
        self._checker = checker
        self._runner = runner
        self._sleep = sleep

    # --------------------------------------------------------------------- #
    # Collaborators
    # --------------------------------------------------------------------- #
    def _get_bin_dir(self) -> Path:
        if self._bin_dir is None:
            self._bin_dir = find_pg_bin_dir(self.config.pg_lib_dir)
        return self._bin_dir

    def _get_checker(self) -> HealthChecker:
        if self._checker is None:
            self._checker = PgIsReady(self._get_bin_dir())
        return self._checker

    def _get_runner(self) -> QueryRunner:
        if self._runner is None:
            config = self.config
            if config.driver == "psycopg":
                self._runner = PsycopgQueryRunner(config.port, config.admin_user, config.socket_dir)
            else:
                self._runner = PsqlQueryRunner(
                    self._get_bin_dir(),
                    config.port,
                    config.admin_user,
                    config.service_user,
                    config.socket_dir,
                )
        return self._runner

    def supervisor(self) -> Supervisor:
        return PgCtlSupervisor(self._get_bin_dir(), self.handle, self.config.service_user)

    def is_ready(self) -> bool:
        return self._get_checker().is_ready(self.handle.check_host, self.handle.port)

    # --------------------------------------------------------------------- #
    # Steps
    # --------------------------------------------------------------------- #
    def _bring_up(self, result: BootstrapResult) -> None:
        storage = StorageInitializer(self._get_bin_dir(), self.config)
        storage.ensure_directories()
        result.initialized = storage.ensure_initialized()

        try:
            result.config_changes = ConfigConverger(self.config).converge()
        except OSError as e:
            raise BootstrapError(
                f"Cannot update configuration in {self.config.data_dir}: {e}"
            ) from e

        self.supervisor().start()
        result.started = True

        poller = ReadinessPoller(
            self._get_checker(),
            attempts=self.config.ready_attempts,
            interval=self.config.ready_interval,
            sleep=self._sleep,
        )
        poller.wait(self.handle)

    def _write_artifacts(self) -> tuple[Path, Path]:
        writer = ConnectionArtifactWriter(
            self.config.artifacts_dir, self.config.connection_file, self.config.env_file
        )
        try:
            return writer.write(self.config.identity, self.config.check_host, self.config.port)
        except OSError as e:
            raise BootstrapError(f"Cannot write connection artifacts: {e}") from e

    def _final_check(self) -> None:
        if not self.is_ready():
            raise ReadinessTimeout(
                f"PostgreSQL stopped accepting connections on port {self.handle.port}",
                collect_diagnostics(self.handle),
            )

    # --------------------------------------------------------------------- #
    # Lifecycle
    # --------------------------------------------------------------------- #
    def run(self) -> BootstrapResult:
        """Run the whole pipeline. Raises a ``BootstrapError`` on any fatal step."""
        logger.info("Starting PostgreSQL setup on port %s...", self.config.port)
        result = BootstrapResult(self.handle)
        self._get_bin_dir()

        if self.is_ready():
            # the running engine owns its storage; leave files alone
            logger.info("PostgreSQL is already running on port %s", self.config.port)
            result.already_running = True
        else:
            self._bring_up(result)

        result.identity = IdentityConverger(self._get_runner()).converge(self.config.identity)
        result.artifacts = self._write_artifacts()
        self._final_check()

        logger.info(
            "PostgreSQL setup complete! database=%s user=%s port=%s",
            self.config.db_name,
            self.config.db_user,
            self.config.port,
        )
        return result

    def stop(self) -> None:
        self.supervisor().stop()

    def __repr__(self) -> str:
        return (
            f"<Bootstrap {self.config.db_user}@{self.config.db_name} "
            f"port={self.config.port} data_dir={self.config.data_dir}>"
        )
