from datetime import timedelta

import pytest

from inventory_sync.exceptions import SyncRecordNotFoundError
from inventory_sync.models.sync_record import SyncRecord, SyncStatus
from inventory_sync.schemas.sync import UserContext
from inventory_sync.services.sync_record_store import SyncRecordStore, derive_status
from inventory_sync.utils.clock import utcnow


@pytest.fixture
def store(session_factory) -> SyncRecordStore:
    return SyncRecordStore(session_factory)


def _start(store, entity_type="StockBatch", entity_id="batch-1", **kwargs):
    return store.record_start(entity_type, entity_id, "stock", "pos-to-inventory", **kwargs)


def test_derive_status():
    assert derive_status(0, 0) == SyncStatus.SUCCESS
    assert derive_status(3, 0) == SyncStatus.SUCCESS
    assert derive_status(3, 1) == SyncStatus.PARTIAL
    assert derive_status(3, 3) == SyncStatus.FAILED


def test_record_start_creates_pending_record_with_attribution(store):
    record = _start(store, payload={"operation": "push_stock"}, user=UserContext(id=7, username="cashier"))

    assert record.id is not None
    assert record.status == SyncStatus.PENDING.value
    assert record.started_at is not None
    assert record.completed_at is None
    assert record.performed_by_id == "7"
    assert record.performed_by_username == "cashier"
    assert record.payload == {"operation": "push_stock"}


def test_record_outcome_partial_sets_error_and_retry(store):
    record = _start(store)
    next_retry = utcnow() + timedelta(minutes=5)

    updated = store.record_outcome(record.id, 3, 2, 1, next_retry_at=next_retry)

    assert updated.status == SyncStatus.PARTIAL.value
    assert updated.items_succeeded + updated.items_failed == updated.items_processed
    assert updated.error_message == "1 of 3 items failed to sync"
    assert updated.completed_at is not None
    assert updated.last_synced_at is not None
    assert updated.next_retry_at == next_retry


def test_record_outcome_freeze_stores_failed_without_retry(store):
    partial = _start(store)
    done = _start(store, entity_id="batch-2")

    frozen = store.record_outcome(partial.id, 3, 2, 1, next_retry_at=utcnow(), freeze=True)
    succeeded = store.record_outcome(done.id, 2, 2, 0, freeze=True)

    assert frozen.status == SyncStatus.FAILED.value
    assert frozen.next_retry_at is None
    assert (frozen.items_processed, frozen.items_succeeded, frozen.items_failed) == (3, 2, 1)
    assert frozen.error_message == "1 of 3 items failed to sync"
    assert succeeded.status == SyncStatus.SUCCESS.value

def test_record_outcome_success_clears_error_and_retry(store):
    record = _start(store)

    updated = store.record_outcome(record.id, 2, 2, 0, next_retry_at=utcnow())

    assert updated.status == SyncStatus.SUCCESS.value
    assert updated.error_message is None
    assert updated.next_retry_at is None


def test_record_outcome_cycle_error_counts_one_failed_unit(store):
    record = _start(store)

    updated = store.record_outcome(record.id, 0, 0, 0, error_message="Synchronization failed: boom")

    assert updated.status == SyncStatus.FAILED.value
    assert (updated.items_processed, updated.items_succeeded, updated.items_failed) == (1, 0, 1)
    assert updated.last_synced_at is None


def test_record_outcome_rejects_inconsistent_counters(store):
    record = _start(store)
    with pytest.raises(ValueError):
        store.record_outcome(record.id, 3, 1, 1)


def test_record_outcome_merges_payload(store):
    record = _start(store, payload={"operation": "push_stock", "request": {"updates": []}})

    updated = store.record_outcome(record.id, 1, 1, 0, payload_updates={"result": {"ok": True}})

    assert updated.payload["operation"] == "push_stock"
    assert updated.payload["result"] == {"ok": True}


def test_get_unknown_record_raises(store):
    with pytest.raises(SyncRecordNotFoundError):
        store.get(9999)


def test_begin_retry_attempt_increments_and_resets_to_pending(store):
    record = _start(store)
    store.record_outcome(record.id, 2, 0, 2, next_retry_at=utcnow())

    attempt = store.begin_retry_attempt(record.id)

    assert attempt.retry_count == 1
    assert attempt.status == SyncStatus.PENDING.value
    assert attempt.completed_at is None
    assert attempt.next_retry_at is None


def test_pending_syncs_include_in_flight_and_scheduled_retries(store):
    in_flight = _start(store, entity_id="a")
    scheduled = _start(store, entity_id="b")
    store.record_outcome(scheduled.id, 1, 0, 1, next_retry_at=utcnow() + timedelta(minutes=5))
    frozen = _start(store, entity_id="c")
    store.record_outcome(frozen.id, 1, 0, 1, next_retry_at=None)
    done = _start(store, entity_id="d")
    store.record_outcome(done.id, 1, 1, 0)

    pending_ids = [r.id for r in store.get_pending_syncs()]

    assert pending_ids == [in_flight.id, scheduled.id]


def test_due_retries_respect_ceiling_and_schedule(store, session_factory):
    due = _start(store, entity_id="due")
    store.record_outcome(due.id, 1, 0, 1, next_retry_at=utcnow() - timedelta(seconds=1))
    later = _start(store, entity_id="later")
    store.record_outcome(later.id, 1, 0, 1, next_retry_at=utcnow() + timedelta(hours=1))
    frozen = _start(store, entity_id="frozen")
    store.record_outcome(frozen.id, 1, 0, 1)
    with session_factory() as session:
        session.get(SyncRecord, frozen.id).retry_count = 5
        session.commit()

    assert [r.id for r in store.get_due_retries(max_retries=5)] == [due.id]


def test_sync_history_filters_and_limits(store):
    for i in range(3):
        _start(store, entity_type="Sale", entity_id=str(i))
    _start(store, entity_type="StockBatch", entity_id="x")

    assert len(store.get_sync_history(limit=2)) == 2
    sales = store.get_sync_history(entity_type="Sale")
    assert [r.entity_id for r in sales] == ["2", "1", "0"]
    assert [r.entity_id for r in store.get_sync_history("Sale", "1")] == ["1"]


def test_sync_stats_grouped_by_direction_and_entity(store):
    ok = _start(store)
    store.record_outcome(ok.id, 1, 1, 0)
    partial = _start(store)
    store.record_outcome(partial.id, 2, 1, 1)
    store.record_start("ProductBatch", "p", "products", "inventory-to-pos")

    stats = store.get_sync_stats("day")

    assert stats["timeRange"] == "day"
    assert stats["summary"] == {"total": 3, "success": 1, "failed": 0, "partial": 1, "pending": 1}
    by_entity = {s["entityType"]: s for s in stats["stats"]}
    assert by_entity["StockBatch"]["syncDirection"] == "pos-to-inventory"
    assert by_entity["StockBatch"]["total"] == 2


def test_reset_failed_syncs_keeps_status(store, session_factory):
    failed = _start(store, entity_type="Sale")
    store.record_outcome(failed.id, 1, 0, 1, next_retry_at=utcnow())
    partial = _start(store, entity_type="StockBatch")
    store.record_outcome(partial.id, 2, 1, 1, next_retry_at=utcnow())
    with session_factory() as session:
        for record in session.query(SyncRecord).all():
            record.retry_count = 5
        session.commit()

    assert store.reset_failed_syncs() == 2

    with session_factory() as session:
        records = {r.id: r for r in session.query(SyncRecord).all()}
    assert records[failed.id].status == SyncStatus.FAILED.value
    assert records[partial.id].status == SyncStatus.PARTIAL.value
    assert all(r.retry_count == 0 and r.next_retry_at is None for r in records.values())


def test_reset_failed_syncs_by_entity_type(store):
    sale = _start(store, entity_type="Sale")
    store.record_outcome(sale.id, 1, 0, 1)
    batch = _start(store, entity_type="StockBatch")
    store.record_outcome(batch.id, 1, 0, 1)

    assert store.reset_failed_syncs("Sale") == 1


def test_clean_old_records_never_purges_pending(store, session_factory):
    old_done = _start(store, entity_id="old-done")
    store.record_outcome(old_done.id, 1, 1, 0)
    recent_done = _start(store, entity_id="recent-done")
    store.record_outcome(recent_done.id, 1, 1, 0)
    old_pending = _start(store, entity_id="old-pending")

    long_ago = utcnow() - timedelta(days=45)
    with session_factory() as session:
        session.get(SyncRecord, old_done.id).completed_at = long_ago
        session.get(SyncRecord, old_pending.id).created_at = long_ago
        session.get(SyncRecord, old_pending.id).started_at = long_ago
        session.commit()

    assert store.clean_old_records(30) == 1

    with session_factory() as session:
        remaining = {r.entity_id for r in session.query(SyncRecord).all()}
    assert remaining == {"recent-done", "old-pending"}
