"""Per-user migration locks shared by the migration and hybrid managers."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

import structlog

from migrator.exceptions import LockError
from utils.logging import get_logger


class UserLockManager:
    """Serializes migrations of the same user across components.

    A full migration run and a hybrid sync for one user must never overlap.
    Locks are in-process; the engine runs on a single event loop.
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or get_logger("user_locks")
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, str] = {}

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def owner(self, user_id: str) -> Optional[str]:
        """Component currently holding the user's lock."""
        return self._owners.get(user_id)

    @asynccontextmanager
    async def hold(
        self,
        user_id: str,
        owner: str,
        wait: bool = False,
    ) -> AsyncGenerator[None, None]:
        """Hold the migration lock of one user.

        Args:
            user_id: Local user id
            owner: Name of the component taking the lock (for diagnostics)
            wait: Wait for a busy lock instead of failing immediately

        Raises:
            LockError: If the lock is held elsewhere and wait is False
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        if lock.locked() and not wait:
            raise LockError(
                f"Migration already in progress for user {user_id}",
                context={
                    "user_id": user_id,
                    "held_by": self._owners.get(user_id),
                    "requested_by": owner,
                },
            )

        await lock.acquire()
        self._owners[user_id] = owner
        self.logger.debug("User lock acquired", user_id=user_id, owner=owner)
        try:
            yield
        finally:
            self._owners.pop(user_id, None)
            lock.release()
            self.logger.debug("User lock released", user_id=user_id, owner=owner)
