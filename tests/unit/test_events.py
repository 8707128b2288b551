"""Unit tests for the event bus."""

import pytest

from migrator.events import Event, EventBus, EventType


def test_emit_to_subscribers() -> None:
    """Test delivery to listeners of the emitted type only."""
    bus = EventBus()
    started, completed = [], []
    bus.subscribe(EventType.OPERATION_START, started.append)
    bus.subscribe(EventType.OPERATION_COMPLETE, completed.append)

    event = bus.emit(EventType.OPERATION_START, operation="migration", strategy="safe")

    assert started == [event]
    assert completed == []
    assert event.data == {"operation": "migration", "strategy": "safe"}


def test_subscribe_by_name() -> None:
    """Test that wire names are accepted."""
    bus = EventBus()
    received = []
    bus.subscribe("rollbackComplete", received.append)

    bus.emit(EventType.ROLLBACK_COMPLETE, backup_id="backup_1")

    assert received[0].type == EventType.ROLLBACK_COMPLETE


def test_unknown_event_type() -> None:
    """Test that the event set is closed."""
    with pytest.raises(ValueError):
        EventBus().subscribe("somethingElse", print)


def test_unsubscribe() -> None:
    """Test both unsubscribe paths."""
    bus = EventBus()
    received = []
    remove = bus.subscribe(EventType.MIGRATION_PROGRESS, received.append)

    assert remove() is True
    assert bus.unsubscribe(EventType.MIGRATION_PROGRESS, received.append) is False
    bus.emit(EventType.MIGRATION_PROGRESS, progress=10.0)

    assert received == []


def test_failing_listener_isolated() -> None:
    """Test that one failing listener does not stop the others."""
    bus = EventBus()
    received = []

    def broken(event: Event) -> None:
        raise RuntimeError("listener bug")

    bus.subscribe(EventType.OPERATION_ERROR, broken)
    bus.subscribe(EventType.OPERATION_ERROR, received.append)

    bus.emit(EventType.OPERATION_ERROR, error="boom")

    assert len(received) == 1


def test_event_to_dict() -> None:
    """Test event serialization."""
    event = Event(type=EventType.HYBRID_MODE_ENABLED, data={"users": 3})

    data = event.to_dict()

    assert data["type"] == "hybridModeEnabled"
    assert data["data"] == {"users": 3}
    assert data["timestamp"].endswith("Z")
