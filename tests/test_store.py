import sqlite3
import threading

import pytest

from inboxcache.errors import StoreClosedError, StoreOpenError, StoreWriteError
from inboxcache.migrate import MigrationState
from inboxcache.models import Delete, Insert, MessageFilter, MessageRecord, ServerFields, Update
from inboxcache.store import open_store


def _rec(mid, sent, **kw):
    return MessageRecord(id=mid, sent_at=sent, payload_hash=f"h-{mid}", **kw)


def test_open_creates_namespaced_store(cfg):
    store = open_store(cfg, "acct-1")
    try:
        assert store.db_path == cfg.store_dir / "Inbox-acct-1.sqlite"
        assert store.db_path.exists()
        assert store.migration.state is MigrationState.FRESH_INIT
        assert store.fetch() == []
    finally:
        store.close()


def test_fetch_orders_by_sent_desc_then_id(store):
    store.apply_batch([Insert(_rec("A", 100)), Insert(_rec("C", 200)), Insert(_rec("B", 200))])
    assert [r.id for r in store.fetch()] == ["B", "C", "A"]


def test_default_filter_hides_deleted(store):
    store.apply_batch([Insert(_rec("A", 100)), Insert(_rec("B", 200, deleted=True))])
    assert [r.id for r in store.fetch(MessageFilter())] == ["A"]
    assert [r.id for r in store.fetch()] == ["B", "A"]


def test_predicate_filter_applies_after_sql(store):
    store.apply_batch([Insert(_rec("A", 100)), Insert(_rec("B", 200)), Insert(_rec("C", 300))])
    filt = MessageFilter().where(lambda r: r.sent_at > 150).where(lambda r: r.id != "C")
    assert [r.id for r in store.fetch(filt)] == ["B"]
    assert store.count(filt) == 1
    assert store.count() == 3


def test_record_round_trips_all_fields(store):
    rec = _rec("A", 100.5, expires_at=900.0, body={"title": "hi", "extra": {"k": 1}}, unread=False)
    store.apply_batch([Insert(rec)])
    assert store.get("A") == rec
    assert store.get("missing") is None


def test_update_of_missing_id_fails_only_that_op(store):
    result = store.apply_batch([
        Insert(_rec("X", 1)),
        Update("nope", unread=False),
        Insert(_rec("Y", 2)),
    ])
    assert not result.ok
    assert result.failed_ids == ["nope"]
    assert len(result.succeeded) == 2
    assert {r.id for r in store.fetch()} == {"X", "Y"}


def test_insert_of_existing_id_fails_op(store):
    store.apply_batch([Insert(_rec("A", 1))])
    result = store.apply_batch([Insert(_rec("A", 2)), Insert(_rec("B", 3))])
    assert result.failed_ids == ["A"]
    assert "already exists" in result.failed[0].error
    assert store.get("A").sent_at == 1


def test_delete_of_absent_id_succeeds(store):
    result = store.apply_batch([Delete("ghost")])
    assert result.ok


def test_local_update_leaves_server_fields(store):
    store.apply_batch([Insert(_rec("A", 100, body={"title": "t"}))])
    store.apply_batch([Update("A", unread=False, deleted=True)])
    rec = store.get("A")
    assert (rec.unread, rec.deleted) == (False, True)
    assert rec.body == {"title": "t"}
    assert rec.sent_at == 100
    assert rec.payload_hash == "h-A"


def test_server_update_leaves_local_flags(store):
    store.apply_batch([Insert(_rec("A", 100, unread=False))])
    server = ServerFields(sent_at=150, expires_at=None, body={"title": "new"}, payload_hash="h2")
    store.apply_batch([Update("A", server=server)])
    rec = store.get("A")
    assert rec.body == {"title": "new"}
    assert rec.payload_hash == "h2"
    assert rec.sent_at == 150
    assert rec.unread is False


def test_orphan_marker_keeps_first_time(store):
    store.apply_batch([Insert(_rec("A", 100))])
    store.apply_batch([Update("A", orphaned=True, orphaned_at=10.0)])
    store.apply_batch([Update("A", orphaned=True, orphaned_at=20.0)])
    assert store.get("A").orphaned_at == 10.0
    store.apply_batch([Update("A", orphaned=False)])
    assert store.get("A").orphaned is False


def test_empty_update_checks_existence(store):
    store.apply_batch([Insert(_rec("A", 100))])
    result = store.apply_batch([Update("A"), Update("B")])
    assert result.failed_ids == ["B"]


def test_apply_batch_rejects_non_ops(store):
    with pytest.raises(TypeError):
        store.apply_batch([("insert", "A")])


class _FailingConn:
    """Wraps the writer connection and fails the nth INSERT like a broken disk."""

    def __init__(self, conn, fail_on):
        self._conn = conn
        self._inserts = 0
        self._fail_on = fail_on

    @property
    def in_transaction(self):
        return self._conn.in_transaction

    def execute(self, sql, *args):
        if sql.startswith("INSERT"):
            self._inserts += 1
            if self._inserts == self._fail_on:
                raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *args)

    def close(self):
        self._conn.close()


def test_medium_failure_rolls_back_whole_batch(store):
    real = store._conn
    store._conn = _FailingConn(real, fail_on=2)
    with pytest.raises(StoreWriteError):
        store.apply_batch([Insert(_rec("A", 1)), Insert(_rec("B", 2))])
    store._conn = real
    assert store.fetch() == []
    assert store.apply_batch([Insert(_rec("C", 3))]).ok


def test_closed_store_rejects_operations(cfg):
    store = open_store(cfg)
    store.close()
    assert store.closed
    with pytest.raises(StoreClosedError):
        store.fetch()
    with pytest.raises(StoreClosedError):
        store.apply_batch([Insert(_rec("A", 1))])
    store.close()  # idempotent


def test_context_manager_closes(cfg):
    with open_store(cfg) as store:
        store.apply_batch([Insert(_rec("A", 1))])
    assert store.closed


def test_data_survives_reopen(cfg):
    with open_store(cfg) as store:
        store.apply_batch([Insert(_rec("A", 1))])
    with open_store(cfg) as store:
        assert store.migration.state is MigrationState.NO_OP_READY
        assert [r.id for r in store.fetch()] == ["A"]


def test_namespaces_are_isolated(cfg):
    with open_store(cfg, "one") as one, open_store(cfg, "two") as two:
        one.apply_batch([Insert(_rec("A", 1))])
        assert two.fetch() == []


def test_corrupt_store_raises_open_error(cfg):
    cfg.ensure_dirs()
    cfg.store_path().write_bytes(b"this is not a database" * 200)
    with pytest.raises(StoreOpenError):
        open_store(cfg)


def test_zero_byte_store_raises_open_error(cfg):
    cfg.ensure_dirs()
    cfg.store_path().touch()
    with pytest.raises(StoreOpenError, match="0 bytes"):
        open_store(cfg)


def test_invalid_namespace_rejected(cfg):
    with pytest.raises(ValueError):
        open_store(cfg, "../escape")


def test_concurrent_fetch_never_sees_partial_batch(store):
    ids = [f"m-{i}" for i in range(10)]
    store.apply_batch([
        Insert(MessageRecord(id=mid, sent_at=float(i), body={"v": 0}, payload_hash="v0"))
        for i, mid in enumerate(ids)
    ])

    done = threading.Event()
    errors: list[str] = []

    def writer():
        try:
            for v in range(1, 40):
                store.apply_batch([
                    Update(mid, server=ServerFields(
                        sent_at=float(i), expires_at=None, body={"v": v}, payload_hash=f"v{v}",
                    ))
                    for i, mid in enumerate(ids)
                ])
        finally:
            done.set()

    def reader():
        while not done.is_set():
            rows = store.fetch()
            versions = {r.body["v"] for r in rows}
            if len(rows) != len(ids) or len(versions) != 1:
                errors.append(f"partial batch visible: {versions}")
            for r in rows:
                if r.payload_hash != f"v{r.body['v']}":
                    errors.append(f"hash/body mismatch on {r.id}")

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    assert errors == []
