"""Shared builders for tests."""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


def payload(message_id: str, sent: Any, **fields: Any) -> dict[str, Any]:
    return {"message_id": message_id, "message_sent": sent, **fields}


def make_legacy_store(path: Path, rows: list[tuple[Any, ...]]) -> None:
    """Write a legacy single-file store: rows are (id, sent, expiry, unread, deleted, raw)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute(
        "CREATE TABLE messages (message_id TEXT PRIMARY KEY, message_sent TEXT, "
        "message_expiry TEXT, unread INTEGER, deleted INTEGER, raw TEXT)"
    )
    conn.executemany("INSERT INTO messages VALUES (?, ?, ?, ?, ?, ?)", rows)
    conn.commit()
    conn.close()


def legacy_row(message_id: str, sent: str, *, unread: bool = True, deleted: bool = False,
               **fields: Any) -> tuple[Any, ...]:
    raw = json.dumps({"message_id": message_id, "message_sent": sent, **fields})
    return (message_id, sent, None, int(unread), int(deleted), raw)
