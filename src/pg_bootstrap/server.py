from __future__ import annotations

import enum
import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import BootstrapConfig
from .errors import CommandFailed, ReadinessTimeout, ServerStartFailed, ServerStopFailed
from .helpers import as_user, list_dir, run_command, tail_file

__all__ = [
    "HealthChecker",
    "PgCtlSupervisor",
    "PgIsReady",
    "ReadinessPoller",
    "ReadinessState",
    "ServerHandle",
    "Supervisor",
    "collect_diagnostics",
]

logger = logging.getLogger(__name__)


@dataclass
class ServerHandle:
    """One PostgreSQL instance: where it lives and where it listens."""

    data_dir: Path
    log_file: Path
    port: int
    host: str
    check_host: str = "127.0.0.1"
    socket_dir: Path | None = None
    started: bool = False

    @classmethod
    def from_config(cls, config: BootstrapConfig) -> ServerHandle:
        return cls(
            data_dir=config.data_dir,
            log_file=config.log_file,
            port=config.port,
            host=config.bind_host,
            check_host=config.check_host,
            socket_dir=config.socket_dir,
        )


def collect_diagnostics(handle: ServerHandle, tail: int = 200) -> str:
    return (
        f"--- last {tail} lines of {handle.log_file} ---\n"
        f"{tail_file(handle.log_file, tail)}"
        f"--- contents of {handle.data_dir} ---\n"
        f"{list_dir(handle.data_dir)}"
    )


# --------------------------------------------------------------------------- #
# Capabilities
# --------------------------------------------------------------------------- #
class HealthChecker(Protocol):
    def is_ready(self, host: str, port: int) -> bool: ...


class Supervisor(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def is_started(self) -> bool: ...


class PgIsReady:
    """Health check through ``pg_isready``."""

    def __init__(self, bin_dir: Path, timeout: int = 3):
        self.bin_dir = bin_dir
        self.timeout = timeout

    def is_ready(self, host: str, port: int) -> bool:
        result = subprocess.run(  # noqa: S603
            [
                str(self.bin_dir / "pg_isready"),
                "-q",
                "-h",
                host,
                "-p",
                str(port),
                "-t",
                str(self.timeout),
            ],
            capture_output=True,
            check=False,
        )
        return result.returncode == 0


class PgCtlSupervisor:
    """Manage the server through ``pg_ctl`` as the service account."""

    def __init__(self, bin_dir: Path, handle: ServerHandle, service_user: str):
        self.bin_dir = bin_dir
        self.handle = handle
        self.service_user = service_user

    def _pg_ctl(self, *args: str) -> list[str]:
        return as_user(
            [str(self.bin_dir / "pg_ctl"), "-D", str(self.handle.data_dir), *args],
            self.service_user,
        )

    def _server_options(self) -> str:
        options = f"-p {self.handle.port} -h {self.handle.host}"
        if self.handle.socket_dir is not None:
            options += f" -k {self.handle.socket_dir}"
        return options

    def start(self) -> None:
        """Launch the server in the background; readiness is polled separately."""
        logger.info(
            "Starting PostgreSQL with pg_ctl on %s:%s...", self.handle.host, self.handle.port
        )
        cmd = self._pg_ctl(
            "-l", str(self.handle.log_file), "-W", "-o", self._server_options(), "start"
        )
        try:
            run_command(cmd)
        except (CommandFailed, OSError) as e:
            raise ServerStartFailed(
                f"pg_ctl could not start the server in {self.handle.data_dir}: {e}",
                collect_diagnostics(self.handle),
            ) from e
        self.handle.started = True

    def stop(self) -> None:
        try:
            if not self.is_started():
                return
            logger.info("Stopping PostgreSQL in %s...", self.handle.data_dir)
            run_command(self._pg_ctl("-m", "fast", "-w", "stop"))
        except (CommandFailed, OSError) as e:
            raise ServerStopFailed(
                f"pg_ctl could not stop the server in {self.handle.data_dir}: {e}",
                collect_diagnostics(self.handle),
            ) from e
        self.handle.started = False

    def is_started(self) -> bool:
        result = run_command(self._pg_ctl("status"), check=False)
        return result.returncode == 0


# --------------------------------------------------------------------------- #
# Readiness
# --------------------------------------------------------------------------- #
class ReadinessState(enum.Enum):
    UNKNOWN = "unknown"
    READY = "ready"
    FAILED = "failed"


class ReadinessPoller:
    """Fixed-interval, bounded readiness polling. First success wins."""

    def __init__(
        self,
        checker: HealthChecker,
        attempts: int = 60,
        interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.checker = checker
        self.attempts = attempts
        self.interval = interval
        self._sleep = sleep
        self.state = ReadinessState.UNKNOWN

    def wait(self, handle: ServerHandle) -> ReadinessState:
        for attempt in range(1, self.attempts + 1):
            if self.checker.is_ready(handle.check_host, handle.port):
                logger.info("PostgreSQL is ready on port %s", handle.port)
                self.state = ReadinessState.READY
                return self.state
            logger.info(
                "Waiting for PostgreSQL to become ready... (%d/%d)", attempt, self.attempts
            )
            if attempt < self.attempts:
                self._sleep(self.interval)

        self.state = ReadinessState.FAILED
        raise ReadinessTimeout(
            f"PostgreSQL did not accept connections on {handle.check_host}:{handle.port} "
            f"after {self.attempts} attempts",
            collect_diagnostics(handle),
        )
