"""Local durable cache of inbox messages, reconciled against the server's full list.

Layout:
    .inbox/
        UAInbox.db                # legacy single store (migrated once, then removed)
        UAInbox/
            Inbox-<namespace>.sqlite  # SQLite (WAL): one store per app key / account

Flow:
    fetch (caller) -> payload dicts -> Reconciler.apply() -> StoreHandle.apply_batch()
    Inbox.list() / StoreHandle.fetch() read the last committed snapshot.

Concurrent access: one write transaction at a time per store (lock around the
writer connection); readers use their own read-only connections and never see
a partially applied batch.
"""

from inboxcache.config import InboxConfig, init_config, load_config
from inboxcache.errors import (
    InboxError,
    MalformedPayloadError,
    MigrationError,
    StoreClosedError,
    StoreError,
    StoreOpenError,
    StoreWriteError,
)
from inboxcache.migrate import MigrationResult, MigrationState, run_migration
from inboxcache.models import (
    BatchResult,
    Delete,
    Insert,
    MessageFilter,
    MessageRecord,
    ReconcileSummary,
    Update,
)
from inboxcache.query import Inbox
from inboxcache.reconciler import Reconciler
from inboxcache.signals import CloseSignal
from inboxcache.store import StoreHandle, open_store

__all__ = [
    "BatchResult",
    "CloseSignal",
    "Delete",
    "Inbox",
    "InboxConfig",
    "InboxError",
    "Insert",
    "MalformedPayloadError",
    "MessageFilter",
    "MessageRecord",
    "MigrationError",
    "MigrationResult",
    "MigrationState",
    "ReconcileSummary",
    "Reconciler",
    "StoreClosedError",
    "StoreError",
    "StoreHandle",
    "StoreOpenError",
    "StoreWriteError",
    "Update",
    "init_config",
    "load_config",
    "open_store",
    "run_migration",
]
