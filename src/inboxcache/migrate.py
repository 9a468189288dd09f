"""One-time upgrade from the legacy single-file store to per-namespace stores.

Runs before a namespace's store is first opened:

    LEGACY_DETECTED         -> MIGRATED     (legacy UAInbox.db copied into Inbox-<ns>.sqlite)
    ABSENT                  -> FRESH_INIT   (empty store created)
    CURRENT_LAYOUT_PRESENT  -> NO_OP_READY

Legacy layout: one global SQLite file with

    messages(message_id TEXT PRIMARY KEY, message_sent TEXT, message_expiry TEXT,
             unread INTEGER, deleted INTEGER, raw TEXT)   -- raw = original JSON payload

Conversion writes to <store>.tmp and renames it into place, so a failure
never leaves a half-filled store. A failed conversion is not an error for the
caller: an empty store is created and the result is marked degraded (the
messages come back with the next sync).
"""

from __future__ import annotations

import contextlib
import enum
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from inboxcache.db import ensure_schema, get_conn, insert_record
from inboxcache.errors import MalformedPayloadError, MigrationError
from inboxcache.models import parse_payload

if TYPE_CHECKING:
    from pathlib import Path

    from inboxcache.config import InboxConfig
    from inboxcache.models import MessageRecord

logger = logging.getLogger("inboxcache.migrate")

_LEGACY_SELECT = (
    "SELECT message_id, message_sent, message_expiry, unread, deleted, raw FROM messages"
)


class MigrationState(enum.Enum):
    LEGACY_DETECTED = "legacy-detected"
    ABSENT = "absent"
    CURRENT_LAYOUT_PRESENT = "current-layout-present"
    # terminal
    MIGRATED = "migrated"
    FRESH_INIT = "fresh-init"
    NO_OP_READY = "no-op-ready"


@dataclass
class MigrationResult:
    state: MigrationState
    migrated: int = 0
    degraded: bool = False
    warning: str | None = None


def detect_layout(cfg: InboxConfig, namespace: str) -> MigrationState:
    if cfg.store_path(namespace).exists():
        return MigrationState.CURRENT_LAYOUT_PRESENT
    if cfg.legacy_db_path.exists():
        return MigrationState.LEGACY_DETECTED
    return MigrationState.ABSENT


def convert_legacy_row(row: tuple[Any, ...]) -> MessageRecord:
    """Turn one legacy row into a record, keeping its local unread/deleted flags."""
    message_id, sent, expiry, unread, deleted, raw = row
    try:
        payload = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise MigrationError(f"legacy message {message_id!r} has unreadable payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise MigrationError(f"legacy message {message_id!r} payload is not an object")

    merged = {**payload, "message_id": message_id, "message_sent": sent}
    if expiry is not None:
        merged["message_expiry"] = expiry
    try:
        record = parse_payload(merged).to_record()
    except MalformedPayloadError as exc:
        raise MigrationError(f"legacy message {message_id!r}: {exc}") from exc
    record.unread = bool(unread)
    record.deleted = bool(deleted)
    return record


def _convert(legacy: Path, tmp: Path) -> int:
    src = sqlite3.connect(f"file:{legacy}?mode=ro", uri=True)
    try:
        rows = src.execute(_LEGACY_SELECT).fetchall()
    except sqlite3.DatabaseError as exc:
        raise MigrationError(f"legacy store {legacy} is unreadable: {exc}") from exc
    finally:
        src.close()

    dst = sqlite3.connect(str(tmp))
    try:
        ensure_schema(dst)
        with dst:
            for row in rows:
                insert_record(dst, convert_legacy_row(row))
    finally:
        dst.close()
    return len(rows)


def _remove(path: Path) -> None:
    for p in (path, path.with_name(path.name + "-journal")):
        with contextlib.suppress(FileNotFoundError):
            p.unlink()


def _create_empty(cfg: InboxConfig, target: Path) -> None:
    get_conn(target, busy_timeout=cfg.store.busy_timeout, synchronous=cfg.store.synchronous).close()


def run_migration(cfg: InboxConfig, namespace: str) -> MigrationResult:
    """Bring namespace's store to the current layout. Never raises for conversion failures."""
    state = detect_layout(cfg, namespace)
    target = cfg.store_path(namespace)

    if state is MigrationState.CURRENT_LAYOUT_PRESENT:
        return MigrationResult(MigrationState.NO_OP_READY)

    cfg.ensure_dirs()
    if state is MigrationState.ABSENT:
        _create_empty(cfg, target)
        logger.info("fresh store created: %s", target)
        return MigrationResult(MigrationState.FRESH_INIT)

    legacy = cfg.legacy_db_path
    tmp = target.with_name(target.name + ".tmp")
    _remove(tmp)
    try:
        count = _convert(legacy, tmp)
        tmp.replace(target)
    except Exception as exc:
        _remove(tmp)
        warning = f"legacy store {legacy} could not be migrated, starting empty: {exc}"
        logger.warning("migration degraded for %s: %s", namespace, warning)
        _create_empty(cfg, target)
        return MigrationResult(MigrationState.FRESH_INIT, degraded=True, warning=warning)

    # The legacy file is never written to again
    with contextlib.suppress(OSError):
        legacy.unlink()
    logger.info("migrated %d messages from %s to %s", count, legacy, target)
    return MigrationResult(MigrationState.MIGRATED, migrated=count)
