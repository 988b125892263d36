"""Structured, idempotent edits of ``postgresql.conf`` and ``pg_hba.conf``.

The two files are converged differently:

- settings directives have one canonical value, so a matching line
  (active or commented-out default) is rewritten in place and only missing
  keys are appended;
- access rules form an ordered allow-list where the first match wins, so
  existing lines are never touched and only missing rules are appended,
  ranking below anything already present.
"""

from __future__ import annotations

import ipaddress
import logging
import pwd
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import BootstrapConfig
from .helpers import is_root

__all__ = [
    "REQUIRED_RULES",
    "AccessRule",
    "AccessRulesFile",
    "ConfigConverger",
    "ConfigFact",
    "SettingsFile",
    "setting_value",
]

logger = logging.getLogger(__name__)

SETTINGS_FILE = "postgresql.conf"
ACCESS_RULES_FILE = "pg_hba.conf"

_DIRECTIVE = re.compile(
    r"^\s*(?P<comment>#\s*)?(?P<key>[A-Za-z_][A-Za-z0-9_.]*)(?P<sep>\s*=\s*|\s+)(?P<rest>.*)$"
)


def setting_value(value: int | str) -> str:
    """Render a value the way ``postgresql.conf`` expects it."""
    if isinstance(value, int):
        return str(value)
    return "'" + value.replace("'", "''") + "'"


def _strip_inline_comment(rest: str) -> str:
    rest = rest.strip()
    if rest.startswith("'"):
        # quoted value, '' is an escaped quote
        i = 1
        while i < len(rest):
            if rest[i] == "'":
                if rest[i + 1 : i + 2] == "'":
                    i += 2
                    continue
                return rest[: i + 1]
            i += 1
        return rest
    return rest.split("#", 1)[0].strip()


# --------------------------------------------------------------------------- #
# postgresql.conf
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class ConfigFact:
    key: str
    value: str  # already rendered, see setting_value()

    def render(self) -> str:
        return f"{self.key} = {self.value}"


class SettingsFile:
    """Line-preserving view of a settings file with an upsert operation."""

    def __init__(self, lines: list[str]):
        self.lines = lines

    @classmethod
    def parse(cls, text: str) -> SettingsFile:
        return cls(text.splitlines())

    @classmethod
    def load(cls, path: Path) -> SettingsFile:
        if not path.exists():
            return cls([])
        return cls.parse(path.read_text(encoding="utf-8", errors="surrogateescape"))

    def render(self) -> str:
        return "\n".join(self.lines) + "\n" if self.lines else ""

    def _find(self, key: str) -> list[tuple[int, bool]]:
        """(line index, is_active) for every directive line naming ``key``."""
        found = []
        for i, line in enumerate(self.lines):
            match = _DIRECTIVE.match(line)
            if not match or match.group("key").lower() != key.lower():
                continue
            is_active = match.group("comment") is None
            # "=" is optional in active lines; in comments it tells a default from prose
            if is_active or "=" in match.group("sep"):
                found.append((i, is_active))
        return found

    def get(self, key: str) -> str | None:
        """Effective value of ``key``: the last active directive wins."""
        active = [i for i, is_active in self._find(key) if is_active]
        if not active:
            return None
        match = _DIRECTIVE.match(self.lines[active[-1]])
        assert match is not None
        return _strip_inline_comment(match.group("rest"))

    def active_count(self, key: str) -> int:
        return sum(1 for _, is_active in self._find(key) if is_active)

    def upsert(self, fact: ConfigFact) -> bool:
        """Make ``fact`` the single active directive for its key.

        Returns ``True`` when the file content changed.
        """
        found = self._find(fact.key)
        active = [i for i, is_active in found if is_active]
        if active:
            target, extra = active[0], active[1:]
        elif found:
            target, extra = found[0][0], []
        else:
            self.lines.append(fact.render())
            return True

        changed = False
        match = _DIRECTIVE.match(self.lines[target])
        assert match is not None
        already = (
            match.group("comment") is None
            and _strip_inline_comment(match.group("rest")) == fact.value
        )
        if not already:
            self.lines[target] = fact.render()
            changed = True
        for i in extra:
            self.lines[i] = "#" + self.lines[i].lstrip()
            changed = True
        return changed


# --------------------------------------------------------------------------- #
# pg_hba.conf
# --------------------------------------------------------------------------- #
def _normalize_address(address: str | None) -> str | None:
    if address is None:
        return None
    parts = address.split()
    try:
        if len(parts) == 2:
            network = ipaddress.ip_network(f"{parts[0]}/{parts[1]}", strict=False)
        else:
            network = ipaddress.ip_network(parts[0], strict=False)
    except ValueError:
        return address.lower()
    return str(network)


@dataclass(frozen=True)
class AccessRule:
    conn_type: str
    database: str
    user: str
    address: str | None  # None for "local" rules
    method: str

    @classmethod
    def parse(cls, line: str) -> AccessRule | None:
        """Parse one active rule line; comments, blanks and includes give ``None``."""
        fields = line.split("#", 1)[0].split()
        if not fields or fields[0].startswith("include"):
            return None
        if fields[0] == "local":
            if len(fields) < 4:
                return None
            return cls("local", fields[1], fields[2], None, fields[3])
        if len(fields) < 5:
            return None
        address, method_at = fields[3], 4
        # "address mask" form, e.g. 127.0.0.1 255.255.255.255
        if "/" not in address and len(fields) >= 6 and _looks_like_ip(fields[4]):
            address, method_at = f"{fields[3]} {fields[4]}", 5
        return cls(fields[0], fields[1], fields[2], address, fields[method_at])

    def covers(self, other: AccessRule) -> bool:
        """Same connection type, database, user and source address; method ignored."""
        return (
            self.conn_type == other.conn_type
            and self.database == other.database
            and self.user == other.user
            and _normalize_address(self.address) == _normalize_address(other.address)
        )

    def render(self) -> str:
        fields = [self.conn_type, self.database, self.user]
        if self.address is not None:
            fields.append(self.address)
        fields.append(self.method)
        return "\t".join(fields)


def _looks_like_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


REQUIRED_RULES: tuple[AccessRule, ...] = (
    AccessRule("local", "all", "all", None, "peer"),
    AccessRule("host", "all", "all", "0.0.0.0/0", "md5"),
    AccessRule("host", "all", "all", "::0/0", "md5"),
)


class AccessRulesFile:
    """Ordered rule list with an append-if-absent operation."""

    def __init__(self, lines: list[str]):
        self.lines = lines

    @classmethod
    def parse(cls, text: str) -> AccessRulesFile:
        return cls(text.splitlines())

    @classmethod
    def load(cls, path: Path) -> AccessRulesFile:
        if not path.exists():
            return cls([])
        return cls.parse(path.read_text(encoding="utf-8", errors="surrogateescape"))

    def render(self) -> str:
        return "\n".join(self.lines) + "\n" if self.lines else ""

    def rules(self) -> list[AccessRule]:
        return [rule for rule in map(AccessRule.parse, self.lines) if rule is not None]

    def has(self, rule: AccessRule) -> bool:
        return any(existing.covers(rule) for existing in self.rules())

    def ensure(self, rule: AccessRule) -> bool:
        """Append ``rule`` unless an equivalent one exists. ``True`` if appended."""
        if self.has(rule):
            return False
        self.lines.append(rule.render())
        return True


# --------------------------------------------------------------------------- #
# Converger
# --------------------------------------------------------------------------- #
class ConfigConverger:
    """Bring both configuration files of a cluster to the desired state."""

    def __init__(self, config: BootstrapConfig, rules: tuple[AccessRule, ...] = REQUIRED_RULES):
        self.config = config
        self.rules = rules

    def settings(self) -> list[ConfigFact]:
        return [
            ConfigFact("port", setting_value(self.config.port)),
            ConfigFact("listen_addresses", setting_value(self.config.listen_addresses)),
        ]

    def converge(self) -> list[str]:
        """Apply all edits; return a description of each change made."""
        data_dir = self.config.data_dir
        return self.converge_settings(data_dir / SETTINGS_FILE) + self.converge_access_rules(
            data_dir / ACCESS_RULES_FILE
        )

    def converge_settings(self, path: Path) -> list[str]:
        settings = SettingsFile.load(path)
        changes = [
            f"{path.name}: {fact.render()}" for fact in self.settings() if settings.upsert(fact)
        ]
        if changes:
            self._write(path, settings.render())
        else:
            logger.info("%s already configured", path.name)
        return changes

    def converge_access_rules(self, path: Path) -> list[str]:
        access = AccessRulesFile.load(path)
        changes = [f"{path.name}: {rule.render()!r}" for rule in self.rules if access.ensure(rule)]
        if changes:
            self._write(path, access.render())
        else:
            logger.info("%s already has the required rules", path.name)
        return changes

    def _write(self, path: Path, text: str) -> None:
        created = not path.exists()
        path.write_text(text, encoding="utf-8", errors="surrogateescape")
        if created and is_root():
            account = pwd.getpwnam(self.config.service_user)
            shutil.chown(path, user=account.pw_uid, group=account.pw_gid)
        logger.info("Updated %s", path)
