"""
Retry and rate limiting helpers for the WeddingBell notification service.

Key Features:
- Retry with exponential or fixed backoff and jitter (backend connections)
- Shared backoff calculation for channel sender retry loops
- Sliding window rate limiting (WebSocket connections per address)
"""

import asyncio
import functools
import random
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Optional, TypeVar

from weddingbell.app.core.exceptions import (
    BaseCustomException,
    is_retryable_error,
)
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def compute_backoff_delay(
    attempt: int,
    delay: float,
    exponential_backoff: bool = True,
    max_delay: float = 30.0,
    jitter: bool = True
) -> float:
    """
    Delay before retry ``attempt`` (1-based).

    Exponential backoff doubles the base delay per attempt and caps it at
    ``max_delay``. Jitter adds up to 10% on top.
    """
    if exponential_backoff:
        retry_delay = min(delay * (2 ** (attempt - 1)), max_delay)
    else:
        retry_delay = delay

    if jitter and retry_delay > 0:
        retry_delay += random.uniform(0, retry_delay * 0.1)

    return retry_delay


def retry_on_failure(
    max_attempts: int = 3,
    delay: float = 1.0,
    exponential_backoff: bool = True,
    max_delay: float = 30.0,
    retryable_errors: Optional[tuple] = None,
    jitter: bool = True
):
    """
    Retry an async function on failure with backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Base delay between retries in seconds
        exponential_backoff: Use exponential backoff strategy
        max_delay: Maximum delay between retries
        retryable_errors: Tuple of exception types to retry on
        jitter: Add random jitter to prevent thundering herd
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if retryable_errors and not isinstance(e, retryable_errors):
                        logger.debug(f"Non-retryable error in {func.__name__}: {type(e).__name__}")
                        raise

                    if isinstance(e, BaseCustomException) and not is_retryable_error(e):
                        logger.debug(f"Non-retryable custom error in {func.__name__}: {e.error_code}")
                        raise

                    if attempt == max_attempts:
                        logger.error(
                            f"All retry attempts failed for {func.__name__}",
                            attempts=max_attempts,
                            final_error=str(e),
                            function=func.__name__
                        )
                        raise

                    retry_delay = compute_backoff_delay(
                        attempt, delay, exponential_backoff, max_delay, jitter
                    )

                    logger.warning(
                        f"Attempt {attempt} failed for {func.__name__}, retrying in {retry_delay:.2f}s",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=retry_delay,
                        error=str(e),
                        function=func.__name__
                    )

                    await asyncio.sleep(retry_delay)
        return wrapper
    return decorator


class SlidingWindowRateLimiter:
    """
    In-process sliding window limiter keyed by an arbitrary string.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=100, window_seconds=60)
        if not limiter.allow(client_address):
            ...
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 60.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        """Record an attempt for ``key``; False if the window is already full."""
        current_time = now if now is not None else time.monotonic()
        request_times = self._requests[key]

        while request_times and current_time - request_times[0] > self.window_seconds:
            request_times.popleft()

        if len(request_times) >= self.max_requests:
            logger.warning(
                "Rate limit exceeded",
                rate_key=key,
                max_requests=self.max_requests,
                window_seconds=self.window_seconds
            )
            return False

        request_times.append(current_time)
        return True

    def reset(self) -> None:
        self._requests.clear()
