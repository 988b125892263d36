"""Bring up the local PostgreSQL instance and make it ready for the application."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from .config import DRIVERS, BootstrapConfig
from .core import Bootstrap
from .errors import BootstrapError
from .preflight import report_failure, run_preflight_checks

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pg-bootstrap", description=__doc__)
    parser.add_argument("--port", type=int, help="Port to listen on (env: DB_PORT)")
    parser.add_argument("--data-dir", type=Path, help="Cluster data directory (env: PGDATA)")
    parser.add_argument("--log-dir", type=Path, help="Directory for startup.log (env: PGLOGDIR)")
    parser.add_argument(
        "--driver", choices=DRIVERS, help="How identity statements are run (env: DB_DRIVER)"
    )
    parser.add_argument(
        "--attempts", type=int, help="Readiness polls before giving up (env: DB_READY_ATTEMPTS)"
    )
    parser.add_argument(
        "--artifacts-dir",
        type=Path,
        help="Where db_connection.txt and db_visualizer/ are written (env: DB_ARTIFACTS_DIR)",
    )
    parser.add_argument(
        "--skip-preflight", action="store_true", help="Do not run environment checks"
    )
    parser.add_argument("--stop", action="store_true", help="Stop the server and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def _apply_overrides(config: BootstrapConfig, args: argparse.Namespace) -> BootstrapConfig:
    overrides = {
        "port": args.port,
        "data_dir": args.data_dir,
        "log_dir": args.log_dir,
        "driver": args.driver,
        "ready_attempts": args.attempts,
        "artifacts_dir": args.artifacts_dir,
    }
    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )

    try:
        config = _apply_overrides(BootstrapConfig.from_env(), args)
        if not args.skip_preflight:
            run_preflight_checks(config)

        bootstrap = Bootstrap(config)
        if args.stop:
            bootstrap.stop()
            logger.info("PostgreSQL stopped")
            return 0

        result = bootstrap.run()
    except BootstrapError as e:
        report_failure(e)
        return e.exit_code

    if result.artifacts is not None:
        logger.info("To connect: %s", result.artifacts[0].read_text(encoding="utf-8").strip())
    return 0
