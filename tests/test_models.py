from datetime import UTC, datetime

import pytest

from inboxcache.errors import MalformedPayloadError
from inboxcache.models import (
    ALL,
    BatchResult,
    Delete,
    MessageFilter,
    MessageRecord,
    OpResult,
    Update,
    parse_payload,
    payload_hash,
    sort_key,
    to_epoch,
)


def test_parse_payload_splits_reserved_keys_from_body():
    parsed = parse_payload({
        "message_id": "m-1",
        "message_sent": 100,
        "message_expiry": "1970-01-01T00:10:00Z",
        "unread": False,
        "title": "Hello",
        "extra": {"k": "v"},
    })
    assert parsed.id == "m-1"
    assert parsed.sent_at == 100.0
    assert parsed.expires_at == 600.0
    assert parsed.unread is False
    assert parsed.server_deleted is False
    assert parsed.body == {"title": "Hello", "extra": {"k": "v"}}


def test_parse_payload_accepts_short_aliases():
    parsed = parse_payload({"id": "m-1", "sent_at": 5, "expires_at": 9, "deleted": True})
    assert (parsed.id, parsed.sent_at, parsed.expires_at) == ("m-1", 5.0, 9.0)
    assert parsed.server_deleted is True
    assert parsed.to_record().deleted is True


@pytest.mark.parametrize("raw", [
    None,
    ["message_id", "m-1"],
    {"message_sent": 1},
    {"message_id": "", "message_sent": 1},
    {"message_id": "   ", "message_sent": 1},
    {"message_id": 7, "message_sent": 1},
    {"message_id": "m-1"},
    {"message_id": "m-1", "message_sent": "yesterday"},
    {"message_id": "m-1", "message_sent": True},
    {"message_id": "m-1", "message_sent": float("nan")},
    {"message_id": "m-1", "message_sent": 1, 3: "non-string key"},
    {"message_id": "m-1", "message_sent": 10**400},
    {"message_id": "m-1", "message_sent": 1, "extra": {1: "x", "b": 2}},
    {"message_id": "m-1", "message_sent": 1, "deleted": "no"},
    {"message_id": "m-1", "message_sent": 1, "unread": 2},
])
def test_parse_payload_rejects(raw):
    with pytest.raises(MalformedPayloadError):
        parse_payload(raw)


@pytest.mark.parametrize(("value", "expected"), [
    (True, True), (False, False), (1, True), (0, False),
    ("true", True), ("FALSE", False), (" 1 ", True), ("0", False), (None, False),
])
def test_deleted_marker_coercion(value, expected):
    parsed = parse_payload({"message_id": "m-1", "message_sent": 1, "deleted": value})
    assert parsed.server_deleted is expected


def test_payload_hash_ignores_key_order():
    a = {"message_id": "m", "message_sent": 1, "title": "t"}
    b = {"title": "t", "message_sent": 1, "message_id": "m"}
    assert payload_hash(a) == payload_hash(b)
    assert payload_hash(a) != payload_hash({**a, "title": "u"})
    assert len(payload_hash(a)) == 16


def test_to_epoch_formats():
    assert to_epoch(5) == 5.0
    assert to_epoch("1970-01-01T00:01:00+00:00") == 60.0
    assert to_epoch("1970-01-01 00:01:00") == 60.0
    assert to_epoch(datetime(1970, 1, 1, 0, 2, tzinfo=UTC)) == 120.0


def test_record_requires_id():
    with pytest.raises(MalformedPayloadError):
        MessageRecord(id="", sent_at=1)


def test_record_properties():
    rec = MessageRecord(
        id="m", sent_at=0, expires_at=10,
        body={"title": "T", "message_url": "https://x/m", "extra": {"a": 1}},
    )
    assert rec.title == "T"
    assert rec.message_url == "https://x/m"
    assert rec.extra == {"a": 1}
    assert rec.sent_datetime == datetime(1970, 1, 1, tzinfo=UTC)
    assert not rec.is_expired(9)
    assert rec.is_expired(10)
    assert not rec.orphaned


def test_sort_key_orders_newest_first_then_id():
    recs = [MessageRecord(id=i, sent_at=s) for i, s in [("b", 1), ("a", 2), ("c", 2)]]
    assert [r.id for r in sorted(recs, key=sort_key)] == ["a", "c", "b"]


def test_filter_sql_and_matches_agree():
    recs = [
        MessageRecord(id="a", sent_at=1, unread=True),
        MessageRecord(id="b", sent_at=1, unread=False),
        MessageRecord(id="c", sent_at=1, deleted=True),
        MessageRecord(id="d", sent_at=1, expires_at=5),
        MessageRecord(id="e", sent_at=1, orphaned_at=3),
    ]
    assert [r.id for r in recs if MessageFilter().matches(r)] == ["a", "b", "d", "e"]
    assert [r.id for r in recs if MessageFilter(unread_only=True).matches(r)] == ["a", "d", "e"]
    assert [r.id for r in recs if MessageFilter(not_expired_at=5).matches(r)] == ["a", "b", "e"]
    assert [r.id for r in recs if MessageFilter(orphaned_only=True).matches(r)] == ["e"]
    assert [r.id for r in recs if ALL.matches(r)] == ["a", "b", "c", "d", "e"]

    where, params = MessageFilter(unread_only=True, ids=frozenset({"b", "a"})).sql()
    assert where == "deleted = 0 AND unread = 1 AND id IN (?, ?)"
    assert params == ["a", "b"]
    assert ALL.sql() == ("", [])


def test_filter_empty_ids_matches_nothing():
    assert MessageFilter.for_ids([]).sql() == ("0", [])


def test_update_flags():
    assert Update("m").is_empty
    assert Update("m", unread=False).local_only
    assert not Update("m", orphaned=False).is_empty


def test_batch_result_accessors():
    result = BatchResult([OpResult(Delete("a"), ok=True), OpResult(Update("b"), ok=False, error="x")])
    assert not result.ok
    assert result.failed_ids == ["b"]
    assert [r.op.id for r in result.succeeded] == ["a"]
