"""
Bounded retry with exponential backoff.

Nothing in portsync retries indefinitely: every retry path goes through
``retry_async`` with a finite ``max_retries``.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from portsync.errors.exceptions import MaxRetriesExceededError
from portsync.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts after the first one
        base_delay: Base delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        backoff_factor: Multiplicative factor for backoff calculation
        jitter: Whether to add randomness to the delay
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 2.0,
        jitter: bool = True,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter


def calculate_delay(retry_number: int, config: RetryConfig) -> float:
    """
    Calculate the delay for a specific retry attempt.

    Args:
        retry_number: The current retry attempt (0-based)
        config: Retry configuration parameters

    Returns:
        Delay time in seconds
    """
    delay = min(
        config.max_delay, config.base_delay * (config.backoff_factor**retry_number)
    )

    if config.jitter:
        delay = min(config.max_delay, delay * (0.5 + random.random()))

    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[Exception], bool],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds, a non-retryable error occurs, or
    ``config.max_retries`` retries have been spent.

    Non-retryable errors propagate unchanged. When retries run out,
    ``MaxRetriesExceededError`` is raised with ``last_error`` set.
    """
    if config is None:
        config = RetryConfig()

    last_exception: Optional[Exception] = None
    for attempt in range(config.max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            last_exception = e
            if not is_retryable(e):
                raise
            if attempt >= config.max_retries:
                break
            delay = calculate_delay(attempt, config)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{config.max_retries + 1}): {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await sleep(delay)

    raise MaxRetriesExceededError(
        f"{description} failed after {config.max_retries + 1} attempts: {last_exception}",
        last_error=last_exception,
        attempts=config.max_retries + 1,
    )
