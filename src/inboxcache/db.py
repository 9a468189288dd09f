"""SQLite connections and schema for per-namespace message stores."""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING, Any

from inboxcache.errors import StoreOpenError
from inboxcache.models import MessageRecord

if TYPE_CHECKING:
    from pathlib import Path

SCHEMA_VERSION = 1

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS messages (
        id           TEXT PRIMARY KEY CHECK (id <> ''),
        sent_at      REAL NOT NULL,
        expires_at   REAL,
        body         TEXT NOT NULL,           -- JSON object
        unread       INTEGER NOT NULL DEFAULT 1,
        deleted      INTEGER NOT NULL DEFAULT 0,
        payload_hash TEXT NOT NULL,
        orphaned_at  REAL
    );

    CREATE INDEX IF NOT EXISTS messages_sent ON messages(sent_at DESC, id ASC);
"""


def get_conn(db_path: Path, *, busy_timeout: float = 30.0, synchronous: str = "FULL") -> sqlite3.Connection:
    """Open the writer connection for a store file.

    WAL mode lets readers keep a committed snapshot while a write is in
    flight. Autocommit mode (isolation_level=None): callers issue BEGIN/COMMIT
    themselves. Raises StoreOpenError on an empty or non-database file.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # A 0-byte file here means a crash left WAL files desynchronised
    if db_path.exists() and db_path.stat().st_size == 0:
        msg = (
            f"SQLite store is empty (0 bytes): {db_path}\n"
            f"Fix: rm {db_path}* (messages are restored by the next sync)"
        )
        raise StoreOpenError(msg)
    try:
        conn = sqlite3.connect(
            str(db_path),
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        raise StoreOpenError(f"Failed to open store {db_path}: {exc}") from exc
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA synchronous={synchronous}")
        ensure_schema(conn)
    except sqlite3.DatabaseError as exc:
        conn.close()
        raise StoreOpenError(
            f"Failed to open store {db_path} — may be corrupt.\n"
            f"Fix: rm {db_path}* (messages are restored by the next sync)\n"
            f"Original error: {exc}"
        ) from exc
    return conn


def get_conn_readonly(db_path: Path, *, busy_timeout: float = 30.0) -> sqlite3.Connection:
    """Open db read-only. Never takes the write lock, sees the last committed snapshot."""
    return sqlite3.connect(f"file:{db_path}?mode=ro", uri=True, timeout=busy_timeout)


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables if missing and record the schema version (idempotent)."""
    conn.executescript(_SCHEMA)
    row = conn.execute("SELECT version FROM schema_version").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version(version) VALUES (?)", (SCHEMA_VERSION,))
        if conn.in_transaction:
            conn.commit()
        return
    # Future migrations go here:
    # if row[0] == 1:
    #     conn.execute("ALTER TABLE messages ADD COLUMN ...")
    #     conn.execute("UPDATE schema_version SET version = 2")


# ---------------------------------------------------------------------------
# Row <-> record
# ---------------------------------------------------------------------------

MESSAGE_COLUMNS = "id, sent_at, expires_at, body, unread, deleted, payload_hash, orphaned_at"


def record_params(record: MessageRecord) -> tuple[Any, ...]:
    return (
        record.id,
        record.sent_at,
        record.expires_at,
        json.dumps(record.body, default=str),
        int(record.unread),
        int(record.deleted),
        record.payload_hash,
        record.orphaned_at,
    )


def row_to_record(row: tuple[Any, ...]) -> MessageRecord:
    rid, sent_at, expires_at, body, unread, deleted, phash, orphaned_at = row
    return MessageRecord(
        id=rid,
        sent_at=float(sent_at),
        expires_at=float(expires_at) if expires_at is not None else None,
        body=json.loads(body) if body else {},
        unread=bool(unread),
        deleted=bool(deleted),
        payload_hash=phash or "",
        orphaned_at=float(orphaned_at) if orphaned_at is not None else None,
    )


def insert_record(conn: sqlite3.Connection, record: MessageRecord) -> None:
    conn.execute(
        f"INSERT INTO messages({MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        record_params(record),
    )
