from __future__ import annotations

import logging
import os
import pwd
import re
import shutil
import subprocess
from collections import deque
from pathlib import Path

from .errors import BinariesNotFound, CommandFailed

logger = logging.getLogger(__name__)

SERVER_BINARY = "postgres"

_VERSION_PART = re.compile(r"(\d+)")


def current_user() -> str:
    """Name of the account this process runs as."""
    return pwd.getpwuid(os.geteuid()).pw_name


def is_root() -> bool:
    return os.geteuid() == 0


def as_user(cmd: list[str], user: str) -> list[str]:
    """Prefix ``cmd`` with ``sudo -u`` unless we already run as ``user``."""
    if current_user() == user:
        return cmd
    return ["sudo", "-u", user, *cmd]


def run_command(
    cmd: list[str], *, input: str | None = None, check: bool = True
) -> subprocess.CompletedProcess[str]:
    """Run a toolchain command, capturing output; raise ``CommandFailed`` on error."""
    logger.debug("$ %s", " ".join(cmd))
    result = subprocess.run(  # noqa: S603
        cmd, input=input, capture_output=True, text=True, check=False
    )
    if check and result.returncode != 0:
        raise CommandFailed(cmd, result.returncode, result.stdout, result.stderr)
    return result


# --------------------------------------------------------------------------- #
# Binary discovery
# --------------------------------------------------------------------------- #
def version_key(name: str) -> tuple[tuple[int, int | str], ...]:
    """Numeric-aware sort key: ``"10"`` > ``"9.6"`` > ``"9.5"``."""
    parts = (p for p in _VERSION_PART.split(name) if p)
    return tuple((1, int(p)) if p.isdigit() else (0, p) for p in parts)


def is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_pg_bin_dir(lib_dir: Path | None, server: str = SERVER_BINARY) -> Path:
    """Return the ``bin/`` directory of the newest installed toolchain.

    Versioned directories under ``lib_dir`` (``/usr/lib/postgresql/<ver>/bin``)
    win over a ``PATH`` lookup.
    """
    if lib_dir is not None and lib_dir.is_dir():
        versions = sorted(
            (p for p in lib_dir.iterdir() if p.is_dir()),
            key=lambda p: version_key(p.name),
            reverse=True,
        )
        for version_dir in versions:
            bin_dir = version_dir / "bin"
            if is_executable(bin_dir / server):
                logger.info("Using PostgreSQL %s binaries at %s", version_dir.name, bin_dir)
                return bin_dir
        logger.warning("No executable %s found under %s, trying PATH", server, lib_dir)

    exe = shutil.which(server)
    if exe:
        bin_dir = Path(exe).resolve().parent
        logger.info("Using PostgreSQL binaries from PATH at %s", bin_dir)
        return bin_dir

    raise BinariesNotFound(
        f"{server!r} binary not found under {lib_dir} nor in PATH\n"
        "Ensure the postgresql server package is installed in the image"
    )


# --------------------------------------------------------------------------- #
# Diagnostics
# --------------------------------------------------------------------------- #
def tail_file(path: Path, lines: int = 200) -> str:
    """Last ``lines`` lines of ``path``, or a note when it cannot be read."""
    try:
        with path.open(encoding="utf-8", errors="replace") as fh:
            return "".join(deque(fh, maxlen=lines))
    except OSError as e:
        return f"(could not read {path}: {e})\n"


def list_dir(path: Path) -> str:
    try:
        entries = sorted(path.iterdir())
    except OSError as e:
        return f"(could not list {path}: {e})\n"
    return "".join(f"{p.name}{'/' if p.is_dir() else ''}\n" for p in entries)
