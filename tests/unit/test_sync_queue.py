"""Unit tests for the sync queue."""

import asyncio

import pytest

from migrator.local_store import SYNC_QUEUE_KEY, MemoryLocalStore
from migrator.metrics import MigratorMetrics
from migrator.models import SyncOperation, SyncQueueItem
from migrator.sync_queue import MAX_FAILURE_RECORDS, SyncQueue


def test_enqueue_persists(empty_store: MemoryLocalStore) -> None:
    """Test that queued items survive a new queue instance."""
    queue = SyncQueue(empty_store, max_attempts=5)
    item = queue.enqueue(SyncOperation.CREATE_SESSION, "alice", {"session_id": "s1"}, "offline")

    reloaded = SyncQueue(empty_store).items()

    assert len(reloaded) == 1
    assert reloaded[0].id == item.id
    assert reloaded[0].max_attempts == 5
    assert reloaded[0].last_error == "offline"


def test_remove_and_clear(empty_store: MemoryLocalStore) -> None:
    """Test removing items."""
    queue = SyncQueue(empty_store)
    first = queue.enqueue(SyncOperation.SYNC_USER, "alice")
    queue.enqueue(SyncOperation.SYNC_USER, "bob")

    assert queue.remove(first.id) is True
    assert queue.remove(first.id) is False
    assert [i.user_id for i in queue.items()] == ["bob"]

    queue.clear()
    assert len(queue) == 0


def test_corrupt_entries_dropped(empty_store: MemoryLocalStore) -> None:
    """Test that malformed entries are ignored."""
    good = SyncQueueItem(SyncOperation.REGISTER, "alice").to_dict()
    empty_store.set_json(SYNC_QUEUE_KEY, [good, {"operation": "teleport", "user_id": "x"}])

    assert [i.id for i in SyncQueue(empty_store).items()] == [good["id"]]

    empty_store.set_json(SYNC_QUEUE_KEY, {"not": "a list"})
    assert SyncQueue(empty_store).items() == []


@pytest.mark.asyncio
async def test_drain_in_order(empty_store: MemoryLocalStore, metrics, registry) -> None:
    """Test replay order and success accounting."""
    queue = SyncQueue(empty_store, metrics=metrics)
    for user_id in ("a", "b", "c"):
        queue.enqueue(SyncOperation.SYNC_USER, user_id)
    seen = []

    async def processor(item: SyncQueueItem) -> None:
        seen.append(item.user_id)

    report = await queue.drain(processor)

    assert seen == ["a", "b", "c"]
    assert report == {
        "processed": 3,
        "succeeded": 3,
        "retried": 0,
        "failed": 0,
        "failed_items": [],
    }
    assert len(queue) == 0
    assert registry.get_sample_value("migrator_sync_items_total", {"outcome": "succeeded"}) == 3
    assert registry.get_sample_value("migrator_sync_queue_size") == 0


@pytest.mark.asyncio
async def test_drain_empty(empty_store: MemoryLocalStore) -> None:
    """Test draining an empty queue."""

    async def processor(item: SyncQueueItem) -> None:
        raise AssertionError("must not be called")

    report = await SyncQueue(empty_store).drain(processor)

    assert report["processed"] == 0


@pytest.mark.asyncio
async def test_failed_attempt_kept(empty_store: MemoryLocalStore) -> None:
    """Test that a failure increments attempts and records the error."""
    queue = SyncQueue(empty_store)
    queue.enqueue(SyncOperation.SAVE_MEETING, "alice")

    async def processor(item: SyncQueueItem) -> None:
        raise ConnectionError("remote down")

    await queue.drain(processor)

    item = queue.items()[0]
    assert item.attempts == 1
    assert item.last_error == "remote down"


@pytest.mark.asyncio
async def test_items_added_during_drain_kept(empty_store: MemoryLocalStore) -> None:
    """Test that items enqueued by a processor survive the drain."""
    queue = SyncQueue(empty_store)
    queue.enqueue(SyncOperation.REGISTER, "alice")

    async def processor(item: SyncQueueItem) -> None:
        queue.enqueue(SyncOperation.CREATE_SESSION, item.user_id, {"session_id": "s1"})

    await queue.drain(processor)

    assert [i.operation for i in queue.items()] == [SyncOperation.CREATE_SESSION]


@pytest.mark.asyncio
async def test_failure_records_capped(empty_store: MemoryLocalStore) -> None:
    """Test the permanent failure log limit."""
    queue = SyncQueue(empty_store, max_attempts=1)
    for i in range(MAX_FAILURE_RECORDS + 5):
        queue.enqueue(SyncOperation.SYNC_USER, f"user{i}")

    async def processor(item: SyncQueueItem) -> None:
        raise RuntimeError("nope")

    report = await queue.drain(processor)

    assert report["failed"] == MAX_FAILURE_RECORDS + 5
    failures = queue.failures()
    assert len(failures) == MAX_FAILURE_RECORDS
    assert failures[-1]["user_id"] == f"user{MAX_FAILURE_RECORDS + 4}"
    assert "failed_at" in failures[-1]


@pytest.mark.asyncio
async def test_concurrent_drains_replay_once(empty_store: MemoryLocalStore) -> None:
    """Test that overlapping drains never replay the same item twice."""
    queue = SyncQueue(empty_store)
    queue.enqueue(SyncOperation.SAVE_MEETING, "alice", {"meeting": {"id": "m1"}})
    calls = []

    async def processor(item: SyncQueueItem) -> None:
        calls.append(item.id)
        await asyncio.sleep(0)

    first, second = await asyncio.gather(queue.drain(processor), queue.drain(processor))

    assert len(calls) == 1
    assert first["succeeded"] == 1
    assert second["in_progress"] is True
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_success_persisted_before_next_item(empty_store: MemoryLocalStore) -> None:
    """Test that an interrupted drain keeps only the unprocessed items."""
    queue = SyncQueue(empty_store)
    queue.enqueue(SyncOperation.SYNC_USER, "alice")
    second = queue.enqueue(SyncOperation.SYNC_USER, "bob")

    async def processor(item: SyncQueueItem) -> None:
        if item.id == second.id:
            raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await queue.drain(processor)

    assert [i.id for i in queue.items()] == [second.id]
