"""InboxConfig: project-local config for the message cache.

Default layout (all relative to the project root):

    inbox.toml            # project config
    .env                  # optional: INBOX_APP_KEY, INBOX_DATA_DIR overrides
    .inbox/
        UAInbox.db        # legacy single-file store (read once by the migration step)
        UAInbox/
            Inbox-<namespace>.sqlite  # one SQLite store per namespace
        .gitignore        # auto-written: ignores everything under .inbox/

inbox.toml example:

    [inbox]
    name = "my-app"
    app_key = "default"       # default namespace
    # data_dir = ".inbox"     # default

    [store]
    busy_timeout = 30.0
    synchronous = "FULL"

    [reconcile]
    orphan_grace_seconds = 86400
    purge_expired = true
"""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "inbox.toml"
_DEFAULT_DATA_DIR = ".inbox"
_DEFAULT_APP_KEY = "default"
_STORE_DIRNAME = "UAInbox"
_STORE_FILENAME = "Inbox-{namespace}.sqlite"
_LEGACY_FILENAME = "UAInbox.db"
_GITIGNORE_CONTENT = "*\n"

_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SYNCHRONOUS_MODES = ("OFF", "NORMAL", "FULL", "EXTRA")


def validate_namespace(namespace: str) -> str:
    """Return namespace unchanged, or raise ValueError if it can't name a store file."""
    if not isinstance(namespace, str) or not _NAMESPACE_RE.match(namespace):
        msg = f"Invalid namespace: {namespace!r} (allowed: letters, digits, '.', '_', '-')"
        raise ValueError(msg)
    return namespace


@dataclass
class StoreConfig:
    busy_timeout: float = 30.0    # seconds sqlite waits on a locked database
    synchronous: str = "FULL"     # PRAGMA synchronous; FULL makes WAL commits durable


@dataclass
class ReconcileConfig:
    orphan_grace_seconds: float = 86400.0   # orphaned records older than this are deleted
    purge_expired: bool = True


@dataclass
class InboxConfig:
    """Resolved configuration for a message cache."""

    root: Path                      # directory that contains inbox.toml
    name: str = ""
    app_key: str = _DEFAULT_APP_KEY
    data_dir: Path = field(default_factory=Path)
    store: StoreConfig = field(default_factory=StoreConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)

    @classmethod
    def for_dir(cls, data_dir: Path | str, *, app_key: str = _DEFAULT_APP_KEY) -> InboxConfig:
        """Build a config without an inbox.toml, rooted at data_dir."""
        data_path = Path(data_dir)
        return cls(root=data_path, name=data_path.name, app_key=app_key, data_dir=data_path)

    @property
    def store_dir(self) -> Path:
        return self.data_dir / _STORE_DIRNAME

    @property
    def legacy_db_path(self) -> Path:
        return self.data_dir / _LEGACY_FILENAME

    def store_path(self, namespace: str | None = None) -> Path:
        """Deterministic store file for a namespace (defaults to app_key)."""
        ns = validate_namespace(namespace or self.app_key)
        return self.store_dir / _STORE_FILENAME.format(namespace=ns)

    def ensure_dirs(self) -> None:
        """Create data_dir and store_dir if they don't exist."""
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self._write_gitignore()

    def _write_gitignore(self) -> None:
        gitignore = self.data_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE_CONTENT)


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def load_config(root: Path | str | None = None) -> InboxConfig:
    """Load inbox.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    env = _load_env(root_path)

    inbox_section = raw.get("inbox", {})
    store_section = raw.get("store", {})
    rec_section = raw.get("reconcile", {})

    name = inbox_section.get("name", root_path.name)
    app_key = env.get("INBOX_APP_KEY") or str(inbox_section.get("app_key", _DEFAULT_APP_KEY))
    validate_namespace(app_key)
    data_rel = env.get("INBOX_DATA_DIR") or inbox_section.get("data_dir", _DEFAULT_DATA_DIR)

    synchronous = str(store_section.get("synchronous", "FULL")).upper()
    if synchronous not in _SYNCHRONOUS_MODES:
        msg = f"[store] synchronous must be one of {', '.join(_SYNCHRONOUS_MODES)}, got {synchronous!r}"
        raise ValueError(msg)

    return InboxConfig(
        root=root_path,
        name=name,
        app_key=app_key,
        data_dir=root_path / data_rel,
        store=StoreConfig(
            busy_timeout=float(store_section.get("busy_timeout", 30.0)),
            synchronous=synchronous,
        ),
        reconcile=ReconcileConfig(
            orphan_grace_seconds=float(rec_section.get("orphan_grace_seconds", 86400.0)),
            purge_expired=bool(rec_section.get("purge_expired", True)),
        ),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for inbox.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None, app_key: str = _DEFAULT_APP_KEY) -> Path:
    """Write a default inbox.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"inbox.toml already exists at {config_path}"
        raise FileExistsError(msg)

    validate_namespace(app_key)
    project_name = name or root.name
    content = f"""\
[inbox]
name = "{project_name}"
app_key = "{app_key}"
# data_dir = ".inbox"   # default; holds one store per namespace

# [store]
# busy_timeout = 30.0   # seconds to wait on a locked database
# synchronous = "FULL"  # OFF | NORMAL | FULL | EXTRA

# [reconcile]
# orphan_grace_seconds = 86400   # delete orphaned messages after this long
# purge_expired = true
"""
    config_path.write_text(content)
    return config_path
