import asyncio
import random
from pathlib import Path

import pytest

from caresync.core.config import SyncConfig
from caresync.core.crypto import EncryptedField
from caresync.core.errors import AuthorizationError, NetworkError, QueueExhaustedError, ValidationError
from caresync.sync.db import get_conn
from caresync.sync.models import CREDENTIALS_TABLE, PRIORITY_HIGH, PRIORITY_LOW, SETTINGS_TABLE
from caresync.sync.queue import SyncQueue
from caresync.sync.store import MemoryRecordStore


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _settings_item(theme: str = "dark", record_id: str = "u1", **extra) -> dict:
    data = {
        "user_id": "u1",
        "device_id": "dev-a",
        "operation_type": "update",
        "table_name": SETTINGS_TABLE,
        "record_id": record_id,
        "payload": {"kind": "settings", "fields": {"theme": theme}},
    }
    data.update(extra)
    return data


def _build_queue(tmp_path: Path, store=None, clock=None, **cfg_overrides) -> SyncQueue:
    cfg = SyncConfig(**cfg_overrides)
    return SyncQueue(
        str(tmp_path / "sync.db"),
        store or MemoryRecordStore(),
        cfg,
        clock=clock or _Clock(),
        rng=random.Random(7),
    )


def test_identical_enqueue_inside_window_is_collapsed(tmp_path: Path):
    clock = _Clock()
    queue = _build_queue(tmp_path, clock=clock, debounce_window_sec=2.0)

    first = queue.enqueue(_settings_item("dark"))
    clock.now += 1.0
    second = queue.enqueue(_settings_item("dark", payload={"kind": "settings", "fields": {"theme": "dark", "updated_at": "x"}}))

    assert second.id == first.id
    assert queue.pending_count("u1") == 1


def test_identical_enqueue_after_window_creates_new_item(tmp_path: Path):
    clock = _Clock()
    queue = _build_queue(tmp_path, clock=clock, debounce_window_sec=2.0)

    first = queue.enqueue(_settings_item("dark"))
    clock.now += 5.0
    second = queue.enqueue(_settings_item("dark"))

    assert second.id != first.id
    assert queue.pending_count("u1") == 2


def test_repeated_value_after_a_different_edit_is_kept(tmp_path: Path):
    clock = _Clock()
    store = MemoryRecordStore()
    store.seed(SETTINGS_TABLE, "u1", {"user_id": "u1", "theme": "system", "version": 1})
    queue = _build_queue(tmp_path, store=store, clock=clock, debounce_window_sec=2.0)

    ids = []
    for theme in ("dark", "light", "dark"):
        ids.append(queue.enqueue(_settings_item(theme, expected_version=1)).id)
        clock.now += 0.1

    assert len(set(ids)) == 3
    assert queue.pending_count("u1") == 3

    summary = asyncio.run(queue.drain())

    assert summary["completed"] == 3
    row = store.tables[SETTINGS_TABLE]["u1"]
    assert row["theme"] == "dark"
    assert row["version"] == 4


def test_duplicate_of_other_record_is_not_collapsed(tmp_path: Path):
    queue = _build_queue(tmp_path, debounce_window_sec=2.0)

    first = queue.enqueue(_settings_item("dark", record_id="r1"))
    second = queue.enqueue(_settings_item("dark", record_id="r2"))

    assert second.id != first.id


def test_drain_orders_by_priority_then_insertion(tmp_path: Path):
    store = MemoryRecordStore()
    queue = _build_queue(tmp_path, store=store)

    queue.enqueue(_settings_item("a", record_id="r1"))
    queue.enqueue(_settings_item("b", record_id="r2"))
    queue.enqueue(_settings_item("c", record_id="r3", priority=PRIORITY_HIGH))

    summary = asyncio.run(queue.drain())

    assert summary["completed"] == 3
    assert [entry[1] for entry in store.write_log] == ["r3", "r1", "r2"]


def test_retry_then_failed_after_max_retries(tmp_path: Path):
    store = MemoryRecordStore()
    clock = _Clock()
    queue = _build_queue(tmp_path, store=store, clock=clock, max_retries=3, backoff_base_sec=1.0, backoff_cap_sec=10.0)
    item = queue.enqueue(_settings_item("dark"))
    store.online = False

    first = asyncio.run(queue.drain())
    assert first["retried"] == 1
    stored = queue.get(item.id)
    assert stored.status == "pending"
    assert stored.retry_count == 1
    # base * 2^1 plus up to 10% jitter
    assert 1_002.0 <= stored.scheduled_for <= 1_002.2

    # Not eligible before its backoff elapses.
    assert asyncio.run(queue.drain())["processed"] == 0

    clock.now += 100
    asyncio.run(queue.drain())
    assert queue.get(item.id).retry_count == 2

    clock.now += 100
    third = asyncio.run(queue.drain())
    assert third["failed"] == 1
    failed = queue.get(item.id)
    assert failed.status == "failed"
    assert failed.retry_count == 3
    assert "network_error" in failed.error_message


def test_network_error_stops_the_pass(tmp_path: Path):
    store = MemoryRecordStore()
    queue = _build_queue(tmp_path, store=store)
    queue.enqueue(_settings_item("a", record_id="r1"))
    queue.enqueue(_settings_item("b", record_id="r2"))
    store.fail_next(NetworkError("flaky"))

    summary = asyncio.run(queue.drain())

    assert summary["processed"] == 1
    assert summary["retried"] == 1
    assert queue.pending_count("u1") == 2


def test_authorization_error_is_terminal(tmp_path: Path):
    store = MemoryRecordStore()
    events = []
    queue = _build_queue(tmp_path, store=store)
    queue.subscribe(lambda event, item, detail: events.append((event, detail.get("terminal"))))
    item = queue.enqueue(_settings_item("dark"))
    store.fail_next(AuthorizationError("denied"))

    summary = asyncio.run(queue.drain())

    assert summary["failed"] == 1
    stored = queue.get(item.id)
    assert stored.status == "failed"
    assert stored.retry_count == 0
    assert events == [("failed", True)]


def test_version_conflict_parks_item_and_calls_handler(tmp_path: Path):
    store = MemoryRecordStore()
    store.seed(SETTINGS_TABLE, "u1", {"user_id": "u1", "theme": "light", "version": 5, "updated_at": "2024-01-01T00:00:00+00:00"})
    queue = _build_queue(tmp_path, store=store)
    seen = {}

    async def _handler(item, remote):
        seen["item"] = item.id
        seen["remote_version"] = remote["version"]
        return "conflict-1"

    queue.set_conflict_handler(SETTINGS_TABLE, _handler)
    item = queue.enqueue(_settings_item("dark", expected_version=2))

    summary = asyncio.run(queue.drain())

    assert summary["conflicts"] == 1
    parked = queue.get(item.id)
    assert parked.status == "conflict"
    assert parked.conflict_id == "conflict-1"
    assert seen == {"item": item.id, "remote_version": 5}
    assert store.tables[SETTINGS_TABLE]["u1"]["theme"] == "light"


def test_later_item_for_same_record_waits_for_parked_conflict(tmp_path: Path):
    store = MemoryRecordStore()
    store.seed(SETTINGS_TABLE, "u1", {"user_id": "u1", "theme": "light", "version": 5})
    queue = _build_queue(tmp_path, store=store)
    queue.enqueue(_settings_item("dark", expected_version=2))
    follower = queue.enqueue(_settings_item("blue", expected_version=2))

    asyncio.run(queue.drain())

    assert queue.get(follower.id).status == "pending"
    queue.cancel_pending("u1", table_name=SETTINGS_TABLE, record_id="u1", include_conflicts=True, reason="superseded")
    assert queue.get(follower.id).status == "cancelled"


def test_offline_updates_replay_in_order(tmp_path: Path):
    store = MemoryRecordStore()
    store.seed(SETTINGS_TABLE, "u1", {"user_id": "u1", "theme": "light", "version": 1})
    queue = _build_queue(tmp_path, store=store)

    for theme in ("dark", "blue", "green"):
        queue.enqueue(_settings_item(theme, expected_version=1))

    summary = asyncio.run(queue.drain())

    assert summary["completed"] == 3
    assert [entry[3]["theme"] for entry in store.write_log] == ["dark", "blue", "green"]
    row = store.tables[SETTINGS_TABLE]["u1"]
    assert row["version"] == 4
    assert row["theme"] == "green"


def test_plaintext_credential_rejected_at_enqueue(tmp_path: Path):
    queue = _build_queue(tmp_path)
    item = {
        "user_id": "u1",
        "device_id": "dev-a",
        "operation_type": "update",
        "table_name": CREDENTIALS_TABLE,
        "record_id": "u1",
        "payload": {"kind": "credential", "fields": {"api_key": "plain-secret"}},
        "encryption_required": True,
    }

    with pytest.raises(ValidationError):
        queue.enqueue(item)
    assert queue.stats()["total"] == 0


def test_credential_payload_without_encryption_flag_rejected(tmp_path: Path):
    queue = _build_queue(tmp_path)
    bundle = EncryptedField(data="AA==", iv="AA==", tag="AA==").model_dump()
    item = {
        "user_id": "u1",
        "device_id": "dev-a",
        "operation_type": "update",
        "table_name": CREDENTIALS_TABLE,
        "record_id": "u1",
        "payload": {"kind": "credential", "fields": {"api_key": bundle}},
    }

    with pytest.raises(ValidationError):
        queue.enqueue(item)


def test_payload_kind_must_match_table(tmp_path: Path):
    queue = _build_queue(tmp_path)
    with pytest.raises(ValidationError):
        queue.enqueue(_settings_item("dark", table_name=CREDENTIALS_TABLE))


def test_processing_items_resume_as_pending(tmp_path: Path):
    queue = _build_queue(tmp_path)
    item = queue.enqueue(_settings_item("dark"))
    conn = get_conn(str(tmp_path / "sync.db"))
    conn.execute("UPDATE sync_queue SET status='processing' WHERE id=?", (item.id,))
    conn.commit()
    conn.close()

    reopened = _build_queue(tmp_path)

    assert reopened.resumed == 1
    assert reopened.get(item.id).status == "pending"


def test_full_queue_evicts_oldest_low_priority(tmp_path: Path):
    queue = _build_queue(tmp_path, max_queue_size=2)
    low = queue.enqueue(_settings_item("a", record_id="r1", priority=PRIORITY_LOW))
    queue.enqueue(_settings_item("b", record_id="r2"))

    queue.enqueue(_settings_item("c", record_id="r3"))

    assert queue.get(low.id).status == "cancelled"
    assert queue.get(low.id).error_message == "evicted_queue_full"


def test_full_queue_without_low_priority_raises(tmp_path: Path):
    queue = _build_queue(tmp_path, max_queue_size=1)
    queue.enqueue(_settings_item("a", record_id="r1"))

    with pytest.raises(QueueExhaustedError):
        queue.enqueue(_settings_item("b", record_id="r2"))


def test_cancel_sensitive_only_leaves_other_items(tmp_path: Path):
    queue = _build_queue(tmp_path)
    plain = queue.enqueue(_settings_item("dark", record_id="r1"))
    secret = queue.enqueue(_settings_item("blue", record_id="r2", sensitive_data=True))

    cancelled = queue.cancel_pending("u1", sensitive_only=True, reason="logout")

    assert [c.id for c in cancelled] == [secret.id]
    assert queue.get(plain.id).status == "pending"
