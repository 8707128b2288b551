"""Unit tests for retry helpers."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from utils.retry import RetryConfig, calculate_backoff_delay, retry_async, retry_sync


def test_retry_config_validation() -> None:
    """Test that at least one attempt is required."""
    with pytest.raises(ValueError, match="max_attempts"):
        RetryConfig(max_attempts=0)


def test_backoff_without_jitter() -> None:
    """Test exponential growth and the delay cap."""
    delays = [
        calculate_backoff_delay(attempt, initial_delay=1.0, max_delay=5.0, jitter=False)
        for attempt in range(5)
    ]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_bounds() -> None:
    """Test that jitter adds at most ten percent."""
    config = RetryConfig(initial_delay=2.0, jitter=True)

    for _ in range(20):
        assert 2.0 <= config.delay_for(0) <= 2.2


@pytest.mark.asyncio
async def test_retry_async_succeeds_after_failures() -> None:
    """Test retrying until the call succeeds."""
    func = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
    config = RetryConfig(max_attempts=3, initial_delay=0.5, jitter=False)

    with patch("utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await retry_async(func, "arg", config=config, key="value")

    assert result == "ok"
    assert func.call_count == 3
    func.assert_called_with("arg", key="value")
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_async_exhausted() -> None:
    """Test that the last error is re-raised."""
    func = AsyncMock(side_effect=ConnectionError("down"))
    config = RetryConfig(max_attempts=2, jitter=False)

    with patch("utils.retry.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(ConnectionError):
            await retry_async(func, config=config)

    assert func.call_count == 2


@pytest.mark.asyncio
async def test_retry_async_non_retryable() -> None:
    """Test that other exceptions propagate immediately."""
    func = AsyncMock(side_effect=ValueError("bad input"))
    config = RetryConfig(retryable_exceptions=(ConnectionError,))

    with pytest.raises(ValueError):
        await retry_async(func, config=config)

    assert func.call_count == 1


def test_retry_sync() -> None:
    """Test the blocking variant."""
    func = MagicMock(side_effect=[OSError("throttled"), "done"])
    config = RetryConfig(max_attempts=3, initial_delay=0.1, jitter=False)

    with patch("utils.retry.time.sleep") as sleep:
        assert retry_sync(func, config=config) == "done"

    sleep.assert_called_once_with(0.1)
