"""Unit tests for per-user migration locks."""

import asyncio

import pytest

from migrator.exceptions import LockError
from migrator.locking import UserLockManager


@pytest.mark.asyncio
async def test_hold_and_release() -> None:
    """Test lock state inside and after the context."""
    locks = UserLockManager()

    async with locks.hold("alice", "migration_manager"):
        assert locks.is_locked("alice") is True
        assert locks.owner("alice") == "migration_manager"
        assert locks.is_locked("bob") is False

    assert locks.is_locked("alice") is False
    assert locks.owner("alice") is None


@pytest.mark.asyncio
async def test_busy_lock_fails_fast() -> None:
    """Test that a second holder is rejected without waiting."""
    locks = UserLockManager()

    async with locks.hold("alice", "migration_manager"):
        with pytest.raises(LockError) as exc_info:
            async with locks.hold("alice", "hybrid_manager"):
                pass

    assert exc_info.value.context["held_by"] == "migration_manager"
    assert exc_info.value.context["requested_by"] == "hybrid_manager"


@pytest.mark.asyncio
async def test_released_on_error() -> None:
    """Test that the lock is released when the body raises."""
    locks = UserLockManager()

    with pytest.raises(RuntimeError):
        async with locks.hold("alice", "migration_manager"):
            raise RuntimeError("boom")

    assert locks.is_locked("alice") is False


@pytest.mark.asyncio
async def test_wait_for_busy_lock() -> None:
    """Test that wait=True serializes holders."""
    locks = UserLockManager()
    order = []

    async def worker(name: str) -> None:
        async with locks.hold("alice", name, wait=True):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(worker("first"), worker("second"))

    assert order == ["first-start", "first-end", "second-start", "second-end"]
