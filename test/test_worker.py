import json

import pytest

from _helper import PLATE, RecordingDispatcher, RecordingPublisher, make_customer, make_order, seeded_store
from washledger import worker
from washledger.changes import updated_change
from washledger.queue import make_body


class FakeSeenKeys:
    """Stands in for the Redis SET NX calls the worker makes."""

    def __init__(self):
        self.keys: set[str] = set()
        self.released: list[str] = []

    async def check(self, key, ttl_seconds=None):
        if key in self.keys:
            return True
        self.keys.add(key)
        return False

    async def release(self, key):
        self.released.append(key)
        self.keys.discard(key)


@pytest.fixture
def seen(monkeypatch):
    keys = FakeSeenKeys()
    monkeypatch.setattr(worker, "check_idempotency", keys.check)
    monkeypatch.setattr(worker, "release_idempotency", keys.release)
    return keys


async def _completed_change(store):
    await store.insert_order(make_order())
    before, after = await store.transition_order("o1", "completed", {"payment_method": "cash"})
    return updated_change(before, after)


def test_parse_change_drops_malformed_messages():
    assert worker.parse_change("not json") is None
    assert worker.parse_change('{"order_id": "o1", "kind": "updated"}') is None


def test_parse_change_reads_queue_bodies():
    order = make_order()
    body = make_body(updated_change(order, order.model_copy(update={"status": "in_progress"})), attempts=2)
    change = worker.parse_change(json.dumps(body))
    assert change.order_id == "o1"
    assert change.attempts == 2
    assert change.after.status == "in_progress"


@pytest.mark.asyncio
async def test_redelivered_change_is_processed_once(seen):
    store = await seeded_store(make_customer(completed_orders=5))
    dispatcher = RecordingDispatcher(store)
    change = await _completed_change(store)

    assert await worker.process_change(change, store, dispatcher, RecordingPublisher()) is True
    assert await worker.process_change(change, store, dispatcher, RecordingPublisher()) is False

    stats = (await store.get_customer(PLATE)).stats
    assert stats.completed_orders == 6
    assert stats.free_washes_available == 1


@pytest.mark.asyncio
async def test_failed_change_can_be_retried(seen, monkeypatch):
    store = await seeded_store(make_customer(completed_orders=5))
    change = await _completed_change(store)

    original = worker.load_app_settings

    async def unreachable(store):
        raise ConnectionError("settings store unreachable")

    monkeypatch.setattr(worker, "load_app_settings", unreachable)
    with pytest.raises(ConnectionError):
        await worker.process_change(change, store, RecordingDispatcher(store), RecordingPublisher())
    assert seen.released == [f"change:{change.event_id}"]

    monkeypatch.setattr(worker, "load_app_settings", original)
    assert await worker.process_change(change, store, RecordingDispatcher(store), RecordingPublisher()) is True
    assert (await store.get_customer(PLATE)).stats.completed_orders == 6


@pytest.mark.asyncio
async def test_app_settings_are_read_per_change(seen):
    store = await seeded_store(make_customer(completed_orders=2))
    await store.save_app_settings_document({"promotions": {"washes_required_for_free": 3}})
    change = await _completed_change(store)

    await worker.process_change(change, store, RecordingDispatcher(store), RecordingPublisher())

    assert (await store.get_customer(PLATE)).stats.free_washes_available == 1
