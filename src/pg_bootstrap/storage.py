from __future__ import annotations

import logging
import pwd
import shutil
import subprocess
from pathlib import Path

from .config import BootstrapConfig
from .errors import CommandFailed, InitializationFailed
from .helpers import as_user, is_root, run_command

__all__ = ["PG_VERSION_MARKER", "StorageInitializer", "is_initialized", "probe_locale"]

logger = logging.getLogger(__name__)

PG_VERSION_MARKER = "PG_VERSION"
PREFERRED_LOCALE = "en_US.UTF-8"
FALLBACK_LOCALE = "C.UTF-8"


def is_initialized(data_dir: Path) -> bool:
    """A cluster counts as initialized once its version marker exists."""
    return (data_dir / PG_VERSION_MARKER).is_file()


def _normalize_locale(name: str) -> str:
    # "en_US.utf8", "en_US.UTF-8" and "en_US.utf-8" name the same locale
    return name.strip().lower().replace("-", "")


def probe_locale(available: list[str] | None = None) -> str:
    """Pick the collation locale for a new cluster.

    Prefers US-English UTF-8 and falls back to the portable ``C.UTF-8``.
    """
    if available is None:
        try:
            result = subprocess.run(  # noqa: S603
                ["locale", "-a"],  # noqa: S607
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            return FALLBACK_LOCALE
        if result.returncode != 0:
            return FALLBACK_LOCALE
        available = result.stdout.splitlines()

    installed = {_normalize_locale(name) for name in available}
    if _normalize_locale(PREFERRED_LOCALE) in installed:
        return PREFERRED_LOCALE
    return FALLBACK_LOCALE


class StorageInitializer:
    """Prepare the data directory and run ``initdb`` when it holds no cluster."""

    def __init__(self, bin_dir: Path, config: BootstrapConfig):
        self.bin_dir = bin_dir
        self.config = config

    def ensure_directories(self) -> None:
        data_dir, log_dir = self.config.data_dir, self.config.log_dir
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            log_dir.mkdir(parents=True, exist_ok=True)
            if is_root():
                account = pwd.getpwnam(self.config.service_user)
                for path in (data_dir, log_dir):
                    shutil.chown(path, user=account.pw_uid, group=account.pw_gid)
            data_dir.chmod(0o700)
        except (OSError, LookupError) as e:
            raise InitializationFailed(f"Cannot prepare data directory {data_dir}: {e}") from e

    def _initdb_cmd(self, locale: str) -> list[str]:
        return as_user(
            [
                str(self.bin_dir / "initdb"),
                "-D",
                str(self.config.data_dir),
                "--username",
                self.config.admin_user,
                "--encoding=UTF8",
                f"--locale={locale}",
                "--auth-local=peer",
                "--auth-host=md5",
            ],
            self.config.service_user,
        )

    def ensure_initialized(self) -> bool:
        """Run ``initdb`` if needed. Returns ``True`` when a cluster was created."""
        data_dir = self.config.data_dir
        if is_initialized(data_dir):
            logger.info("Cluster already initialized at %s", data_dir)
            return False

        locale = probe_locale()
        logger.info("Initializing database cluster at %s (locale %s)...", data_dir, locale)
        try:
            run_command(self._initdb_cmd(locale))
        except (CommandFailed, OSError) as e:
            raise InitializationFailed(f"initdb failed for {data_dir}", str(e)) from e
        return True
