"""Typed event feed published by the orchestrator."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Optional

import structlog

from migrator.models import iso_now
from utils.logging import get_logger


class EventType(StrEnum):
    """Closed set of events callers can subscribe to."""

    OPERATION_START = "operationStart"
    OPERATION_COMPLETE = "operationComplete"
    OPERATION_ERROR = "operationError"
    MIGRATION_PROGRESS = "migrationProgress"
    HEALTH_CHECK_PROGRESS = "healthCheckProgress"
    ROLLBACK_COMPLETE = "rollbackComplete"
    ROLLBACK_ERROR = "rollbackError"
    HYBRID_MODE_ENABLED = "hybridModeEnabled"
    HYBRID_MODE_DISABLED = "hybridModeDisabled"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "data": self.data, "timestamp": self.timestamp}


EventListener = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe over EventType.

    A failing listener is logged and never interrupts the publisher or the
    remaining listeners.
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or get_logger("events")
        self._listeners: dict[EventType, list[EventListener]] = {}

    def subscribe(self, event_type: EventType, listener: EventListener) -> Callable[[], None]:
        """Register a listener.

        Args:
            event_type: Event to listen for
            listener: Called with each Event of that type

        Returns:
            Function that removes the listener again
        """
        event_type = EventType(event_type)
        self._listeners.setdefault(event_type, []).append(listener)
        return lambda: self.unsubscribe(event_type, listener)

    def unsubscribe(self, event_type: EventType, listener: EventListener) -> bool:
        listeners = self._listeners.get(EventType(event_type), [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def emit(self, event_type: EventType, **data: Any) -> Event:
        event = Event(type=EventType(event_type), data=data)
        for listener in list(self._listeners.get(event.type, [])):
            try:
                listener(event)
            except Exception as e:
                self.logger.warning(
                    "Event listener failed",
                    event_type=str(event.type),
                    error=str(e),
                )
        return event
