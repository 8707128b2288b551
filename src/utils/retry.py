"""Retry helpers with exponential backoff and jitter."""

import asyncio
import random
import time
from typing import Any, Callable, Optional

import structlog

from utils.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    ) -> None:
        """Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts, first call included
            initial_delay: Delay before the second attempt in seconds
            max_delay: Upper bound for any single delay in seconds
            exponential_base: Growth factor between consecutive delays
            jitter: Add up to 10% random jitter to each delay
            retryable_exceptions: Exception types that trigger another attempt
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after a failed attempt (0-indexed)."""
        return calculate_backoff_delay(
            attempt=attempt,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


def calculate_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Calculate delay for exponential backoff with optional jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        jitter: Whether to add random jitter

    Returns:
        Delay in seconds
    """
    delay = min(initial_delay * (exponential_base**attempt), max_delay)
    if jitter:
        delay += delay * 0.1 * random.random()
    return delay


async def retry_async(
    func: Callable[..., Any],
    *args: Any,
    config: Optional[RetryConfig] = None,
    logger: Optional[structlog.BoundLogger] = None,
    **kwargs: Any,
) -> Any:
    """Call an async function, retrying with backoff on retryable errors.

    Args:
        func: Async function to call
        *args: Positional arguments for function
        config: Retry configuration (uses defaults if None)
        logger: Optional logger instance
        **kwargs: Keyword arguments for function

    Returns:
        Function result

    Raises:
        The last exception once all attempts are exhausted
    """
    config = config or RetryConfig()
    logger = logger or get_logger("retry")

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts - 1:
                logger.error(
                    "All retry attempts exhausted",
                    max_attempts=config.max_attempts,
                    error=str(e),
                )
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                "Retry attempt failed, retrying",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error")


def retry_sync(
    func: Callable[..., Any],
    *args: Any,
    config: Optional[RetryConfig] = None,
    logger: Optional[structlog.BoundLogger] = None,
    **kwargs: Any,
) -> Any:
    """Blocking counterpart of :func:`retry_async` (used for boto3 calls)."""
    config = config or RetryConfig()
    logger = logger or get_logger("retry")

    for attempt in range(config.max_attempts):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts - 1:
                logger.error(
                    "All retry attempts exhausted",
                    max_attempts=config.max_attempts,
                    error=str(e),
                )
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                "Retry attempt failed, retrying",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
            )
            time.sleep(delay)

    raise RuntimeError("Retry logic error")
