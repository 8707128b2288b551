"""Durable queue of deferred remote writes with bounded retries."""

import asyncio
from collections.abc import Awaitable
from typing import Any, Callable, Optional

import structlog

from migrator.local_store import SYNC_FAILURES_KEY, SYNC_QUEUE_KEY, LocalStore
from migrator.metrics import MigratorMetrics
from migrator.models import SyncOperation, SyncQueueItem, iso_now
from utils.logging import get_logger

MAX_FAILURE_RECORDS = 50

SyncProcessor = Callable[[SyncQueueItem], Awaitable[Any]]


class SyncQueue:
    """Sync queue persisted in the local store.

    Items are replayed in insertion order. A failed attempt increments the
    item's attempt count; once ``max_attempts`` is reached the item is removed
    and recorded as permanently failed.
    """

    def __init__(
        self,
        store: LocalStore,
        max_attempts: int = 3,
        metrics: Optional[MigratorMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize sync queue.

        Args:
            store: Local store holding the queue
            max_attempts: Default attempt budget for new items
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.store = store
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = logger or get_logger("sync_queue")
        self._drain_lock = asyncio.Lock()

    def _load(self) -> list[SyncQueueItem]:
        raw = self.store.get_json(SYNC_QUEUE_KEY, [])
        if not isinstance(raw, list):
            self.logger.warning("Sync queue record is corrupt, starting empty")
            return []
        items = []
        for entry in raw:
            try:
                items.append(SyncQueueItem.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning("Dropping malformed sync queue entry", error=str(e))
        return items

    def _save(self, items: list[SyncQueueItem]) -> None:
        self.store.set_json(SYNC_QUEUE_KEY, [item.to_dict() for item in items])
        if self.metrics:
            self.metrics.set_sync_queue_size(len(items))

    def __len__(self) -> int:
        return len(self._load())

    def items(self) -> list[SyncQueueItem]:
        """Queued items, oldest first."""
        return self._load()

    def enqueue(
        self,
        operation: SyncOperation,
        user_id: str,
        payload: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> SyncQueueItem:
        """Queue an operation for later replay.

        Args:
            operation: Remote operation to replay
            user_id: Local user id the operation acts for
            payload: Operation arguments
            error: Why the operation could not run now

        Returns:
            The queued item
        """
        item = SyncQueueItem(
            operation=operation,
            user_id=user_id,
            payload=payload,
            max_attempts=self.max_attempts,
            last_error=error,
        )
        items = self._load()
        items.append(item)
        self._save(items)
        self.logger.info(
            "Operation queued for sync",
            item_id=item.id,
            operation=str(operation),
            user_id=user_id,
            queue_size=len(items),
        )
        return item

    def remove(self, item_id: str) -> bool:
        items = self._load()
        remaining = [item for item in items if item.id != item_id]
        if len(remaining) == len(items):
            return False
        self._save(remaining)
        return True

    def clear(self) -> None:
        self._save([])

    def failures(self) -> list[dict[str, Any]]:
        """Permanently failed items, most recent last."""
        raw = self.store.get_json(SYNC_FAILURES_KEY, [])
        return raw if isinstance(raw, list) else []

    def _record_failure(self, item: SyncQueueItem) -> None:
        failures = self.failures()
        failures.append({**item.to_dict(), "failed_at": iso_now()})
        self.store.set_json(SYNC_FAILURES_KEY, failures[-MAX_FAILURE_RECORDS:])

    def _settle(self, item: SyncQueueItem, keep: bool) -> None:
        """Persist one item's outcome: update it in place, or drop it."""
        items = []
        for stored in self._load():
            if stored.id != item.id:
                items.append(stored)
            elif keep:
                items.append(item)
        self._save(items)

    async def drain(self, processor: SyncProcessor) -> dict[str, Any]:
        """Replay every queued item once.

        Each outcome is written back as soon as the item is processed, so an
        interrupted drain never replays items that already succeeded. A drain
        started while another is running returns at once with ``in_progress``
        set.

        Args:
            processor: Coroutine function performing one item's remote write

        Returns:
            Dictionary with processed, succeeded, retried and failed counts,
            plus the ids of permanently failed items
        """
        report: dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "retried": 0,
            "failed": 0,
            "failed_items": [],
        }
        if self._drain_lock.locked():
            self.logger.debug("Sync queue drain already running")
            return {**report, "in_progress": True}

        async with self._drain_lock:
            items = self._load()
            if not items:
                return report

            self.logger.info("Draining sync queue", queue_size=len(items))
            for item in items:
                report["processed"] += 1
                try:
                    await processor(item)
                except Exception as e:
                    item.attempts += 1
                    item.last_error = str(e)
                    self._settle(item, keep=not item.exhausted)
                    if item.exhausted:
                        report["failed"] += 1
                        report["failed_items"].append(item.id)
                        self._record_failure(item)
                        if self.metrics:
                            self.metrics.record_sync_item("failed")
                        self.logger.error(
                            "Sync item permanently failed",
                            item_id=item.id,
                            operation=str(item.operation),
                            user_id=item.user_id,
                            attempts=item.attempts,
                            error=str(e),
                        )
                    else:
                        report["retried"] += 1
                        if self.metrics:
                            self.metrics.record_sync_item("retried")
                        self.logger.warning(
                            "Sync item failed, will retry",
                            item_id=item.id,
                            operation=str(item.operation),
                            attempts=item.attempts,
                            max_attempts=item.max_attempts,
                            error=str(e),
                        )
                    continue

                self._settle(item, keep=False)
                report["succeeded"] += 1
                if self.metrics:
                    self.metrics.record_sync_item("succeeded")

        self.logger.info(
            "Sync queue drained",
            succeeded=report["succeeded"],
            retried=report["retried"],
            failed=report["failed"],
            remaining=len(self),
        )
        return report
