"""StoreHandle: durable, transactional collection of messages for one namespace.

    store = open_store(cfg, "account-42")
    store.apply_batch([Insert(record), Update(id="m-1", unread=False)])
    rows = store.fetch(MessageFilter(unread_only=True))
    store.close()

One writer at a time (threading.Lock around a single writer connection);
readers open their own read-only connection per call and, under WAL, see the
last committed snapshot, never a half-applied batch.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
import time
from typing import TYPE_CHECKING, Any

from inboxcache.config import validate_namespace
from inboxcache.db import MESSAGE_COLUMNS, get_conn, get_conn_readonly, insert_record, row_to_record
from inboxcache.errors import StoreClosedError, StoreError, StoreWriteError
from inboxcache.migrate import run_migration
from inboxcache.models import BatchResult, Delete, Insert, MessageFilter, OpResult, Update

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path
    from types import TracebackType

    from inboxcache.config import InboxConfig
    from inboxcache.migrate import MigrationResult
    from inboxcache.models import BatchOp, MessageRecord

logger = logging.getLogger("inboxcache.store")


def _update_clause(op: Update) -> tuple[str, list[Any]]:
    sets: list[str] = []
    params: list[Any] = []
    if op.server is not None:
        s = op.server
        sets += ["sent_at = ?", "expires_at = ?", "body = ?", "payload_hash = ?"]
        params += [s.sent_at, s.expires_at, json.dumps(s.body, default=str), s.payload_hash]
    if op.unread is not None:
        sets.append("unread = ?")
        params.append(int(op.unread))
    if op.deleted is not None:
        sets.append("deleted = ?")
        params.append(int(op.deleted))
    if op.orphaned is True:
        # Keep the first orphaning time so the grace period isn't restarted
        sets.append("orphaned_at = COALESCE(orphaned_at, ?)")
        params.append(op.orphaned_at if op.orphaned_at is not None else time.time())
    elif op.orphaned is False:
        sets.append("orphaned_at = NULL")
    return ", ".join(sets), params


class StoreHandle:
    """An open message store. Thread-safe; create with open_store()."""

    def __init__(
        self,
        namespace: str,
        db_path: Path,
        conn: sqlite3.Connection,
        *,
        busy_timeout: float = 30.0,
        migration: MigrationResult | None = None,
    ) -> None:
        self.namespace = namespace
        self.db_path = db_path
        self.migration = migration
        self._conn = conn
        self._busy_timeout = busy_timeout
        self._write_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, cfg: InboxConfig, namespace: str | None = None) -> StoreHandle:
        return open_store(cfg, namespace)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the writer connection. Waits for an in-flight batch to finish."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        logger.info("store closed: %s", self.db_path)

    def __enter__(self) -> StoreHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            msg = f"Store {self.namespace!r} is closed"
            raise StoreClosedError(msg)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _read(self, sql: str, params: list[Any]) -> list[Any]:
        try:
            conn = get_conn_readonly(self.db_path, busy_timeout=self._busy_timeout)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read store {self.db_path}: {exc}") from exc
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.DatabaseError as exc:
            raise StoreError(f"Failed to read store {self.db_path}: {exc}") from exc
        finally:
            conn.close()

    def fetch(self, filt: MessageFilter | None = None) -> list[MessageRecord]:
        """Return matching records, newest first (ties by id), as a materialised list.

        filt=None returns every record, deleted ones included.
        """
        self._check_open()
        where, params = filt.sql() if filt is not None else ("", [])
        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY sent_at DESC, id ASC"

        rows = self._read(sql, params)
        records = [row_to_record(r) for r in rows]
        if filt is not None and filt.predicate is not None:
            records = [r for r in records if filt.predicate(r)]
        return records

    def get(self, message_id: str) -> MessageRecord | None:
        rows = self.fetch(MessageFilter.for_ids([message_id]))
        return rows[0] if rows else None

    def count(self, filt: MessageFilter | None = None) -> int:
        if filt is not None and filt.predicate is not None:
            return len(self.fetch(filt))
        self._check_open()
        where, params = filt.sql() if filt is not None else ("", [])
        sql = "SELECT COUNT(*) FROM messages" + (f" WHERE {where}" if where else "")
        return int(self._read(sql, params)[0][0])

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def apply_batch(self, ops: Iterable[BatchOp]) -> BatchResult:
        """Apply ops in one transaction and report each op's outcome.

        An op that can't apply (Update of a missing id, Insert of an existing
        id) fails alone; the others commit together. A medium failure rolls
        the whole batch back and raises StoreWriteError.
        """
        ops = list(ops)
        for op in ops:
            if not isinstance(op, Insert | Update | Delete):
                msg = f"Not a batch operation: {op!r}"
                raise TypeError(msg)

        with self._write_lock:
            self._check_open()
            if not ops:
                return BatchResult()
            conn = self._conn
            results: list[OpResult] = []
            try:
                conn.execute("BEGIN IMMEDIATE")
                for op in ops:
                    results.append(self._apply_op(conn, op))
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                logger.exception("batch of %d ops failed: %s", len(ops), self.db_path)
                raise StoreWriteError(f"Batch write failed on {self.db_path}: {exc}") from exc
            except BaseException:
                self._rollback()
                raise

        result = BatchResult(results)
        logger.debug(
            "batch applied: %s ops=%d failed=%d", self.namespace, len(ops), len(result.failed),
        )
        return result

    def _apply_op(self, conn: sqlite3.Connection, op: BatchOp) -> OpResult:
        conn.execute("SAVEPOINT op")
        error: str | None = None
        try:
            if isinstance(op, Insert):
                insert_record(conn, op.record)
            elif isinstance(op, Update):
                sets, params = _update_clause(op)
                if sets:
                    cur = conn.execute(f"UPDATE messages SET {sets} WHERE id = ?", [*params, op.id])
                    found = cur.rowcount > 0
                else:
                    found = conn.execute("SELECT 1 FROM messages WHERE id = ?", (op.id,)).fetchone() is not None
                if not found:
                    error = f"no message with id {op.id!r}"
            else:
                # Deleting an absent id is already converged
                conn.execute("DELETE FROM messages WHERE id = ?", (op.id,))
        except sqlite3.IntegrityError as exc:
            conn.execute("ROLLBACK TO op")
            conn.execute("RELEASE op")
            if isinstance(op, Insert):
                return OpResult(op, ok=False, error=f"message {op.id!r} already exists")
            return OpResult(op, ok=False, error=str(exc))
        conn.execute("RELEASE op")
        return OpResult(op, ok=error is None, error=error)

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            with contextlib.suppress(sqlite3.Error):
                self._conn.execute("ROLLBACK")


def open_store(cfg: InboxConfig, namespace: str | None = None) -> StoreHandle:
    """Open (creating if absent) the store for namespace, migrating a legacy store first.

    Raises StoreOpenError if the store file is unreadable or corrupt.
    """
    ns = validate_namespace(namespace or cfg.app_key)
    cfg.ensure_dirs()
    migration = run_migration(cfg, ns)
    db_path = cfg.store_path(ns)
    conn = get_conn(db_path, busy_timeout=cfg.store.busy_timeout, synchronous=cfg.store.synchronous)
    logger.info("store opened: %s (%s)", db_path, migration.state.value)
    return StoreHandle(ns, db_path, conn, busy_timeout=cfg.store.busy_timeout, migration=migration)
