"""Data models for the message cache: records, payload parsing, batch ops, filters."""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from inboxcache.errors import MalformedPayloadError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

# Payload keys: inbox JSON API names first, short aliases second.
_ID_KEYS = ("message_id", "id")
_SENT_KEYS = ("message_sent", "sent_at")
_EXPIRY_KEYS = ("message_expiry", "expires_at")
_DELETED_KEY = "deleted"
_UNREAD_KEY = "unread"
_RESERVED_KEYS = frozenset((*_ID_KEYS, *_SENT_KEYS, *_EXPIRY_KEYS, _DELETED_KEY, _UNREAD_KEY))


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for k in keys:
        if raw.get(k) is not None:
            return raw[k]
    return None


def to_epoch(value: Any) -> float:
    """Convert an epoch number, datetime or ISO-8601 string to epoch seconds.

    Naive datetimes and strings without an offset are taken as UTC.
    """
    if isinstance(value, bool):
        msg = f"Not a timestamp: {value!r}"
        raise MalformedPayloadError(msg)
    if isinstance(value, int | float):
        try:
            finite = math.isfinite(value)
        except OverflowError:
            finite = False
        if not finite:
            msg = f"Not a finite timestamp: {value!r}"
            raise MalformedPayloadError(msg)
        return float(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            msg = f"Not an ISO-8601 timestamp: {value!r}"
            raise MalformedPayloadError(msg) from exc
    else:
        msg = f"Not a timestamp: {value!r}"
        raise MalformedPayloadError(msg)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    try:
        return dt.timestamp()
    except (OverflowError, ValueError, OSError) as exc:
        msg = f"Timestamp out of range: {value!r}"
        raise MalformedPayloadError(msg) from exc


_TRUE_STRINGS = frozenset(("true", "1"))
_FALSE_STRINGS = frozenset(("false", "0"))


def _flag(raw: Mapping[str, Any], key: str, default: bool) -> bool:
    """Read a boolean marker. Accepts bools, 0/1 and "true"/"false"/"1"/"0"; null means default."""
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    msg = f"Not a boolean for {key!r}: {value!r}"
    raise MalformedPayloadError(msg)


def payload_hash(raw: Mapping[str, Any]) -> str:
    """Stable short hash of a raw payload (canonical JSON, sorted keys)."""
    try:
        canonical = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError) as exc:
        msg = f"Payload can't be serialised: {exc}"
        raise MalformedPayloadError(msg) from exc
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass
class MessageRecord:
    """One stored message."""

    id: str
    sent_at: float
    expires_at: float | None = None
    body: dict[str, Any] = field(default_factory=dict)

    # Locally owned: only the presentation layer (and a server delete marker) changes these
    unread: bool = True
    deleted: bool = False

    payload_hash: str = ""
    orphaned_at: float | None = None   # set when retained despite absence from a batch

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            msg = f"Message id must be a non-empty string, got {self.id!r}"
            raise MalformedPayloadError(msg)

    @property
    def orphaned(self) -> bool:
        return self.orphaned_at is not None

    @property
    def title(self) -> str:
        return str(self.body.get("title", ""))

    @property
    def message_url(self) -> str | None:
        return self.body.get("message_url")

    @property
    def extra(self) -> dict[str, Any]:
        return dict(self.body.get("extra") or {})

    @property
    def sent_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.sent_at, UTC)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def sort_key(record: MessageRecord) -> tuple[float, str]:
    """Listing order: sent_at descending, then id ascending."""
    return (-record.sent_at, record.id)


@dataclass(frozen=True)
class ParsedPayload:
    """A validated inbound payload, not yet stored."""

    id: str
    sent_at: float
    expires_at: float | None
    body: dict[str, Any]
    unread: bool
    server_deleted: bool
    payload_hash: str

    def server_fields(self) -> ServerFields:
        return ServerFields(
            sent_at=self.sent_at,
            expires_at=self.expires_at,
            body=dict(self.body),
            payload_hash=self.payload_hash,
        )

    def to_record(self) -> MessageRecord:
        return MessageRecord(
            id=self.id,
            sent_at=self.sent_at,
            expires_at=self.expires_at,
            body=dict(self.body),
            unread=self.unread,
            deleted=self.server_deleted,
            payload_hash=self.payload_hash,
        )


def parse_payload(raw: Any) -> ParsedPayload:
    """Validate a raw payload mapping. Raises MalformedPayloadError."""
    if not isinstance(raw, Mapping):
        msg = f"Payload must be a mapping, got {type(raw).__name__}"
        raise MalformedPayloadError(msg)
    if any(not isinstance(k, str) for k in raw):
        msg = "Payload keys must be strings"
        raise MalformedPayloadError(msg)

    message_id = _first(raw, _ID_KEYS)
    if not isinstance(message_id, str) or not message_id.strip():
        msg = f"Payload has no usable message id: {message_id!r}"
        raise MalformedPayloadError(msg)

    sent = _first(raw, _SENT_KEYS)
    if sent is None:
        msg = f"Payload {message_id!r} has no sent timestamp"
        raise MalformedPayloadError(msg)

    expiry = _first(raw, _EXPIRY_KEYS)

    return ParsedPayload(
        id=message_id,
        sent_at=to_epoch(sent),
        expires_at=to_epoch(expiry) if expiry is not None else None,
        body={k: v for k, v in raw.items() if k not in _RESERVED_KEYS},
        unread=_flag(raw, _UNREAD_KEY, True),
        server_deleted=_flag(raw, _DELETED_KEY, False),
        payload_hash=payload_hash(raw),
    )


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerFields:
    """Server-authoritative fields, always written together."""

    sent_at: float
    expires_at: float | None
    body: dict[str, Any]
    payload_hash: str


@dataclass(frozen=True)
class Insert:
    record: MessageRecord

    @property
    def id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class Update:
    """Change an existing record. Fields left as None are not touched."""

    id: str
    server: ServerFields | None = None
    unread: bool | None = None
    deleted: bool | None = None
    orphaned: bool | None = None
    orphaned_at: float | None = None   # used when orphaned=True and the record isn't orphaned yet

    @property
    def local_only(self) -> bool:
        return self.server is None

    @property
    def is_empty(self) -> bool:
        return self.server is None and self.unread is None and self.deleted is None and self.orphaned is None


@dataclass(frozen=True)
class Delete:
    id: str


BatchOp = Insert | Update | Delete


@dataclass(frozen=True)
class OpResult:
    op: BatchOp
    ok: bool
    error: str | None = None


@dataclass
class BatchResult:
    """Per-operation outcome of StoreHandle.apply_batch."""

    results: list[OpResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def succeeded(self) -> list[OpResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[OpResult]:
        return [r for r in self.results if not r.ok]

    @property
    def failed_ids(self) -> list[str]:
        return [r.op.id for r in self.failed]


@dataclass
class ReconcileSummary:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    malformed: int = 0
    unchanged: int = 0
    duplicate: int = 0
    orphaned: int = 0     # retained despite absence, pending a later pass
    expired: int = 0      # expired candidates skipped plus expired records purged
    failed_ids: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "malformed": self.malformed,
            "unchanged": self.unchanged,
            "duplicate": self.duplicate,
            "orphaned": self.orphaned,
            "expired": self.expired,
            "failed_ids": list(self.failed_ids),
        }


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageFilter:
    """Typed filter over concrete record fields plus an optional Python predicate.

    The concrete fields are rendered to SQL; the predicate runs on the
    materialised records.
    """

    unread_only: bool = False
    include_deleted: bool = False
    orphaned_only: bool = False
    ids: frozenset[str] | None = None
    not_expired_at: float | None = None
    predicate: Callable[[MessageRecord], bool] | None = None

    @classmethod
    def for_ids(cls, ids: Iterable[str], *, include_deleted: bool = True) -> MessageFilter:
        return cls(ids=frozenset(ids), include_deleted=include_deleted)

    def where(self, predicate: Callable[[MessageRecord], bool]) -> MessageFilter:
        """Return a copy that also requires predicate."""
        prev = self.predicate
        if prev is None:
            return replace(self, predicate=predicate)
        return replace(self, predicate=lambda r: prev(r) and predicate(r))

    def sql(self) -> tuple[str, list[Any]]:
        """WHERE clause (without the keyword) and its parameters; '' means no restriction."""
        clauses: list[str] = []
        params: list[Any] = []
        if not self.include_deleted:
            clauses.append("deleted = 0")
        if self.unread_only:
            clauses.append("unread = 1")
        if self.orphaned_only:
            clauses.append("orphaned_at IS NOT NULL")
        if self.ids is not None:
            if not self.ids:
                clauses.append("0")
            else:
                clauses.append(f"id IN ({', '.join('?' * len(self.ids))})")
                params.extend(sorted(self.ids))
        if self.not_expired_at is not None:
            clauses.append("(expires_at IS NULL OR expires_at > ?)")
            params.append(self.not_expired_at)
        return " AND ".join(clauses), params

    def matches(self, record: MessageRecord) -> bool:
        if not self.include_deleted and record.deleted:
            return False
        if self.unread_only and not record.unread:
            return False
        if self.orphaned_only and not record.orphaned:
            return False
        if self.ids is not None and record.id not in self.ids:
            return False
        if self.not_expired_at is not None and record.is_expired(self.not_expired_at):
            return False
        return self.predicate is None or bool(self.predicate(record))


ALL = MessageFilter(include_deleted=True)
