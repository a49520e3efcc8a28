"""
Self-healing helpers for the workload syncer.

Provides exponential backoff with jitter, a per-key failure rate limiter
for work queues, bounded remote calls and a retry decorator.

Usage:
    from .self_healing import with_retry, call_with_timeout

    @with_retry(max_retries=2)
    async def ensure_agent():
        ...

    obj = await call_with_timeout(client.get(rtype, ns, name), 30.0, "get")
"""
import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable, Dict, Hashable, Optional, TypeVar

from .errors import OptimisticConflictError, TransientConnectivityError

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_EXCEPTIONS = (
    TransientConnectivityError,
    OptimisticConflictError,
    ConnectionError,
    asyncio.TimeoutError,
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""
    base_delay: float = 1.0           # Base delay in seconds
    max_delay: float = 300.0          # Maximum delay
    multiplier: float = 2.0           # Exponential multiplier
    jitter: float = 0.1               # Random jitter factor (0-1)


def compute_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """
    Delay for the given zero-based attempt.

    ``min(max_delay, base * multiplier**attempt)`` scaled by a random
    factor in ``[1 - jitter, 1 + jitter]``, never above ``max_delay``.
    """
    exponent = min(attempt, 64)
    delay = min(config.base_delay * (config.multiplier ** exponent), config.max_delay)
    if config.jitter:
        source = rng or random
        delay = delay * (1 + source.uniform(-config.jitter, config.jitter))
    return max(0.0, min(delay, config.max_delay))


class BackoffStrategy:
    """Helper to calculate exponential backoff with jitter."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self.attempts = 0

    def get_delay(self) -> float:
        """Returns the next delay and advances the attempt counter."""
        delay = compute_delay(self.attempts, self.config)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        """Resets the attempt counter."""
        self.attempts = 0


class KeyedRateLimiter:
    """
    Per-key exponential backoff for work queue requeues.

    Each key's delay grows with the number of times it has been requeued
    since it was last forgotten.
    """

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self._failures: Dict[Hashable, int] = {}
        self._lock = Lock()

    def when(self, key: Hashable) -> float:
        """Record a failure for the key and return how long to wait."""
        with self._lock:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
        return compute_delay(attempt, self.config)

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await a remote call with a bounded timeout.

    A hung call surfaces as TransientConnectivityError instead of blocking
    the caller indefinitely.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientConnectivityError(f"{operation} timed out after {timeout:.1f}s", cause=e) from e


def with_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    multiplier: float = 2.0,
    jitter: float = 0.1,
    retryable_exceptions: tuple = RETRYABLE_EXCEPTIONS,
):
    """
    Decorator to add exponential backoff retry to async function.

    Example:
        @with_retry(max_retries=3, base_delay=1.0)
        async def teardown_agent():
            # ...
    """
    config = RetryConfig(
        base_delay=base_delay,
        max_delay=max_delay,
        multiplier=multiplier,
        jitter=jitter,
    )

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception: BaseException | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_exception = e

                    if attempt == max_retries:
                        break

                    delay = compute_delay(attempt, config)
                    logger.debug(
                        f"{func.__name__} failed ({e}); retry {attempt + 1}/{max_retries} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

            if last_exception is not None:
                raise last_exception
            raise RuntimeError("Retry exhausted with no exception captured")

        return wrapper
    return decorator


__all__ = [
    "RetryConfig",
    "BackoffStrategy",
    "KeyedRateLimiter",
    "compute_delay",
    "call_with_timeout",
    "with_retry",
    "RETRYABLE_EXCEPTIONS",
]
