"""Reconcile a store against an authoritative list of message payloads.

    rec = Reconciler(store, cfg)
    summary = rec.apply(payloads, source_timestamp=fetched_at)

One apply() is one StoreHandle.apply_batch call: inserts for new ids, updates
for changed payload hashes (server fields only, local unread/deleted flags
kept), deletes for ids missing from the batch. A missing record sent after
source_timestamp is kept and marked orphaned instead, and deleted once it has
stayed orphaned for the grace period.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from inboxcache.config import ReconcileConfig
from inboxcache.errors import MalformedPayloadError
from inboxcache.models import Delete, Insert, ReconcileSummary, Update, parse_payload, to_epoch

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from inboxcache.config import InboxConfig
    from inboxcache.models import BatchOp, MessageRecord, ParsedPayload
    from inboxcache.store import StoreHandle

logger = logging.getLogger("inboxcache.reconciler")


class Reconciler:
    """Converges one store to the server's message list. Use one per store."""

    def __init__(
        self,
        store: StoreHandle,
        cfg: InboxConfig | None = None,
        *,
        orphan_grace: float | None = None,
        purge_expired: bool | None = None,
    ) -> None:
        rc = cfg.reconcile if cfg is not None else ReconcileConfig()
        self.store = store
        self.orphan_grace = float(orphan_grace if orphan_grace is not None else rc.orphan_grace_seconds)
        self.purge_expired = rc.purge_expired if purge_expired is None else purge_expired
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Full-list reconciliation
    # ------------------------------------------------------------------

    def apply(
        self,
        payloads: Iterable[Any],
        source_timestamp: float | datetime | str,
        *,
        now: float | None = None,
    ) -> ReconcileSummary:
        """Converge the store to payloads. Malformed payloads are counted, never raised."""
        source_ts = to_epoch(source_timestamp)
        now = time.time() if now is None else now
        summary = ReconcileSummary()

        candidates = self._parse(payloads, summary)

        with self._lock:
            existing = {r.id: r for r in self.store.fetch()}
            plan = self._plan(candidates, existing, source_ts, now, summary)
            result = self.store.apply_batch([op for _, op in plan])

        for (kind, _op), res in zip(plan, result.results, strict=True):
            if not res.ok:
                summary.failed_ids.append(res.op.id)
                logger.warning("reconcile %s failed for %s: %s", kind, res.op.id, res.error)
                continue
            if kind == "insert":
                summary.inserted += 1
            elif kind == "update":
                summary.updated += 1
            elif kind == "delete":
                summary.deleted += 1
            elif kind == "expire":
                summary.expired += 1

        logger.info(
            "reconciled %s: inserted=%d updated=%d deleted=%d unchanged=%d orphaned=%d "
            "malformed=%d duplicate=%d expired=%d failed=%d",
            self.store.namespace, summary.inserted, summary.updated, summary.deleted,
            summary.unchanged, summary.orphaned, summary.malformed, summary.duplicate,
            summary.expired, len(summary.failed_ids),
        )
        return summary

    def _parse(self, payloads: Iterable[Any], summary: ReconcileSummary) -> dict[str, ParsedPayload]:
        """Validate payloads; the last occurrence of a duplicated id wins."""
        candidates: dict[str, ParsedPayload] = {}
        for raw in payloads:
            try:
                parsed = parse_payload(raw)
            except MalformedPayloadError as exc:
                summary.malformed += 1
                logger.debug("dropping malformed payload: %s", exc)
                continue
            if parsed.id in candidates:
                summary.duplicate += 1
                del candidates[parsed.id]
            candidates[parsed.id] = parsed
        return candidates

    def _plan(
        self,
        candidates: dict[str, ParsedPayload],
        existing: dict[str, MessageRecord],
        source_ts: float,
        now: float,
        summary: ReconcileSummary,
    ) -> list[tuple[str, BatchOp]]:
        plan: list[tuple[str, BatchOp]] = []

        for cid, cand in candidates.items():
            current = existing.get(cid)
            if self.purge_expired and cand.expires_at is not None and cand.expires_at <= now:
                if current is None:
                    summary.expired += 1
                else:
                    plan.append(("expire", Delete(cid)))
                continue
            if current is None:
                plan.append(("insert", Insert(cand.to_record())))
            elif current.payload_hash != cand.payload_hash:
                plan.append(("update", Update(
                    cid,
                    server=cand.server_fields(),
                    deleted=True if cand.server_deleted else None,
                    orphaned=False if current.orphaned else None,
                )))
            else:
                summary.unchanged += 1
                if current.orphaned:
                    plan.append(("restore", Update(cid, orphaned=False)))

        for rid, rec in existing.items():
            if rid in candidates:
                continue
            if self.purge_expired and rec.is_expired(now):
                plan.append(("expire", Delete(rid)))
            elif rec.sent_at <= source_ts:
                plan.append(("delete", Delete(rid)))
            elif rec.orphaned_at is not None and now - rec.orphaned_at >= self.orphan_grace:
                plan.append(("delete", Delete(rid)))
            else:
                # Newer than the fetch: the list may predate this message
                summary.orphaned += 1
                if rec.orphaned_at is None:
                    plan.append(("orphan", Update(rid, orphaned=True, orphaned_at=now)))

        return plan

    # ------------------------------------------------------------------
    # Single-message helpers
    # ------------------------------------------------------------------

    def add(self, payload: Any) -> MessageRecord | None:
        """Insert one message. Returns the stored record, or None if the id already exists.

        Raises MalformedPayloadError for an invalid payload.
        """
        record = parse_payload(payload).to_record()
        with self._lock:
            result = self.store.apply_batch([Insert(record)])
        if not result.ok:
            logger.debug("add skipped for %s: %s", record.id, result.failed[0].error)
            return None
        return record

    def update(self, payload: Any) -> bool:
        """Refresh one message's server fields. False if it's absent or unchanged."""
        parsed = parse_payload(payload)
        with self._lock:
            current = self.store.get(parsed.id)
            if current is None or current.payload_hash == parsed.payload_hash:
                return False
            result = self.store.apply_batch([Update(
                parsed.id,
                server=parsed.server_fields(),
                deleted=True if parsed.server_deleted else None,
            )])
        return result.ok
