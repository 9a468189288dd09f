"""Inbox: read access and local-only mutations for presentation code.

    inbox = Inbox(store)
    for msg in inbox.list(unread_only=True):
        ...
    inbox.mark_read("m-1")
    inbox.mark_deleted({"m-2", "m-3"})

Local mutations are Update ops that only touch the unread/deleted flags, so
server fields (body, sent_at, payload hash) are never changed here.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from inboxcache.models import Delete, MessageFilter, Update
from inboxcache.signals import CloseSignal

if TYPE_CHECKING:
    from collections.abc import Iterable

    from inboxcache.models import BatchResult, MessageRecord
    from inboxcache.store import StoreHandle


class Inbox:
    def __init__(self, store: StoreHandle) -> None:
        self.store = store
        self.close_signal = CloseSignal()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def list(
        self,
        unread_only: bool = False,
        include_deleted: bool = False,
        *,
        include_expired: bool = False,
        now: float | None = None,
    ) -> list[MessageRecord]:
        """Messages newest first (ties by id). Deleted and expired ones are hidden unless asked for."""
        not_expired_at = None if include_expired else (time.time() if now is None else now)
        return self.store.fetch(MessageFilter(
            unread_only=unread_only,
            include_deleted=include_deleted,
            not_expired_at=not_expired_at,
        ))

    def get(self, message_id: str) -> MessageRecord | None:
        return self.store.get(message_id)

    def unread_count(self, *, now: float | None = None) -> int:
        """Unread messages that list(unread_only=True) would show."""
        return self.store.count(MessageFilter(
            unread_only=True,
            not_expired_at=time.time() if now is None else now,
        ))

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def mark_read(self, message_id: str) -> bool:
        """Clear the unread flag. False if the message doesn't exist."""
        return self.store.apply_batch([Update(message_id, unread=False)]).ok

    def mark_unread(self, message_id: str) -> bool:
        return self.store.apply_batch([Update(message_id, unread=True)]).ok

    def mark_deleted(self, message_ids: Iterable[str]) -> BatchResult:
        """Soft-delete: hide from default listings, keep until purged."""
        return self.store.apply_batch([Update(mid, deleted=True) for mid in sorted(set(message_ids))])

    def delete(self, message_ids: Iterable[str]) -> BatchResult:
        """Remove messages from the store outright."""
        return self.store.apply_batch([Delete(mid) for mid in sorted(set(message_ids))])

    def purge_deleted(self) -> int:
        """Hard-delete every soft-deleted message. Returns how many were removed."""
        doomed = self.store.fetch(MessageFilter(include_deleted=True).where(lambda r: r.deleted))
        return len(self.delete(r.id for r in doomed).succeeded)

    def purge_expired(self, now: float | None = None) -> int:
        """Hard-delete messages whose expiry has passed."""
        now = time.time() if now is None else now
        doomed = self.store.fetch(MessageFilter(include_deleted=True).where(lambda r: r.is_expired(now)))
        return len(self.delete(r.id for r in doomed).succeeded)
