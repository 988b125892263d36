from __future__ import annotations

import pwd
import shutil
import sys
from collections.abc import Callable

from .config import BootstrapConfig
from .errors import BootstrapError
from .helpers import current_user, is_root


# --------------------------------------------------------------------------- #
# Pretty failure printer
# --------------------------------------------------------------------------- #
def _banner(msg: str) -> str:
    header = "=" * 70
    return f"\n{header}\n[ERROR] {msg}\n{header}\n"


def _fail(msg: str) -> None:
    print(_banner(msg), file=sys.stderr)  # noqa: T201
    sys.exit(1)


def report_failure(error: BootstrapError) -> None:
    """Print a fatal error and its diagnostics to stderr."""
    print(_banner(str(error)), file=sys.stderr)  # noqa: T201
    if error.diagnostics:
        print(error.diagnostics, file=sys.stderr)  # noqa: T201


# --------------------------------------------------------------------------- #
# Individual checks
# --------------------------------------------------------------------------- #
def _check_service_user_exists(config: BootstrapConfig) -> None:
    try:
        pwd.getpwnam(config.service_user)
    except KeyError:
        _fail(
            f"Service account {config.service_user!r} does not exist\n"
            "Install the postgresql server package or set PG_SERVICE_USER"
        )


def _check_not_root_service(config: BootstrapConfig) -> None:
    if config.service_user == "root":
        _fail(
            "PostgreSQL cannot run as root\n"
            "Set PG_SERVICE_USER to an unprivileged account (usually 'postgres')"
        )


def _check_invoking_user(config: BootstrapConfig) -> None:
    # only root can hand the data directory to another account
    user = current_user()
    if user == config.service_user or is_root():
        return
    _fail(
        f"Running as {user!r}, which can neither own nor chown a data directory "
        f"for {config.service_user!r}\n"
        f"Fix: run this tool as root or as {config.service_user!r}"
    )


def _check_sudo_available(config: BootstrapConfig) -> None:
    if current_user() == config.service_user:
        return
    if not shutil.which("sudo"):
        _fail(
            f"'sudo' not found in PATH but commands must run as {config.service_user!r}\n"
            f"Fix: install sudo, or run this tool as {config.service_user!r}"
        )


# --------------------------------------------------------------------------- #
# Public API
# --------------------------------------------------------------------------- #
CHECKS: list[Callable[[BootstrapConfig], None]] = [
    _check_not_root_service,
    _check_service_user_exists,
    _check_invoking_user,
    _check_sudo_available,
]


def run_preflight_checks(
    config: BootstrapConfig,
    custom_checks: list[Callable[[BootstrapConfig], None]] | None = None,
) -> None:
    """Environment checks before touching the data directory."""
    all_checks = CHECKS + (custom_checks or [])
    for check in all_checks:
        try:
            check(config)
        except Exception as e:
            _fail(str(e))
