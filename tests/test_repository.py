"""Tests for the local write path."""

import pytest

from warranty_sync.broadcast import Broadcaster
from warranty_sync.queue.models import PENDING


async def _listen(bus):
    other = Broadcaster(bus, instance_id="instance-b")
    await other.start()
    received = []
    other.subscribe(received.append)
    return received


def _queued(queue):
    return [(i.entity_type, i.entity_id, i.operation, i.payload) for i in queue.get_pending()]


def test_create_stores_snapshot_and_enqueues(repository, queue):
    record = repository.create("receipt", {"merchantName": "Shop", "totalAmount": 9.99})

    assert repository.get("receipt", record["id"]) == record
    assert _queued(queue) == [("receipt", record["id"], "create", {"merchantName": "Shop", "totalAmount": 9.99})]
    assert queue.get_pending()[0].status == PENDING


def test_update_merges_and_enqueues_only_changes(repository, queue):
    repository.create("device", {"brand": "Acme", "model": "X1"}, entity_id="d-1")
    record = repository.update("device", "d-1", {"status": "in_service"})

    assert record == {"brand": "Acme", "model": "X1", "status": "in_service", "id": "d-1"}
    assert _queued(queue)[-1] == ("device", "d-1", "update", {"status": "in_service"})


def test_update_of_missing_entity_enqueues_nothing(repository, queue):
    with pytest.raises(KeyError):
        repository.update("device", "nope", {"status": "expired"})
    assert queue.size() == 0


def test_unknown_entity_type_is_rejected(repository):
    with pytest.raises(ValueError):
        repository.create("boat", {"name": "x"})


def test_deleting_receipt_cascades_to_devices(repository, queue):
    repository.create("receipt", {"merchantName": "Shop"}, entity_id="r-1")
    repository.create("device", {"brand": "Acme", "receiptId": "r-1"}, entity_id="d-1")
    repository.create("device", {"brand": "Other", "receiptId": "r-2"}, entity_id="d-2")

    cascaded = repository.delete("receipt", "r-1")

    assert cascaded == ["d-1"]
    assert repository.get("receipt", "r-1") is None
    assert repository.get("device", "d-1") is None
    assert repository.get("device", "d-2") is not None
    assert [(t, i, op) for t, i, op, _ in _queued(queue)][-2:] == [("receipt", "r-1", "delete"), ("device", "d-1", "delete")]


def test_list_returns_entities_of_one_kind(repository):
    repository.create("receipt", {"merchantName": "A"}, entity_id="r-1")
    repository.create("device", {"brand": "B"}, entity_id="d-1")
    assert [r["id"] for r in repository.list("receipt")] == ["r-1"]


async def test_writes_are_announced_immediately(repository, bus):
    received = await _listen(bus)
    repository.create("receipt", {"merchantName": "Shop"}, entity_id="r-1")
    repository.update("receipt", "r-1", {"notes": "x"})
    repository.delete("receipt", "r-1")
    assert [(m.type, m.entity_id) for m in received] == [
        ("receipt-created", "r-1"),
        ("receipt-updated", "r-1"),
        ("receipt-deleted", "r-1"),
    ]


def test_remap_moves_snapshot_and_device_links(repository):
    repository.create("receipt", {"merchantName": "Shop"}, entity_id="tmp-1")
    repository.create("device", {"brand": "Acme", "receiptId": "tmp-1"}, entity_id="d-1")

    assert repository.remap_entity_id("receipt", "tmp-1", "srv-1")
    assert repository.get("receipt", "tmp-1") is None
    assert repository.get("receipt", "srv-1")["id"] == "srv-1"
    assert repository.get("device", "d-1")["receiptId"] == "srv-1"
    assert not repository.remap_entity_id("receipt", "missing", "srv-2")


def test_enqueue_all_queues_only_entities_without_pending_work(repository, queue, db):
    repository.create("receipt", {"merchantName": "Queued"}, entity_id="r-1")
    repository.merge_server_data({"devices": [{"id": "d-1", "brand": "Acme"}]})
    for item in queue.get_pending():
        queue.mark_in_flight(item)
        queue.mark_done(item)
    repository.create("receipt", {"merchantName": "Still queued"}, entity_id="r-2")

    enqueued = repository.enqueue_all()

    assert enqueued["receipts"] == 1
    assert enqueued["devices"] == 1
    queued = _queued(queue)
    assert queued[0][:3] == ("receipt", "r-2", "create")
    assert sorted(q[:3] for q in queued[1:]) == [("device", "d-1", "create"), ("receipt", "r-1", "create")]
    assert ("receipt", "r-1", "create", {"merchantName": "Queued"}) in queued


def test_merge_skips_records_without_id(repository):
    merged = repository.merge_server_data({"receipts": [{"merchantName": "no id"}], "settings": None})
    assert merged == {"receipts": {"added": 0, "updated": 0, "skipped": 1}}
