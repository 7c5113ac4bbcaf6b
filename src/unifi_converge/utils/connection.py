"""Retry helpers for controller calls."""
import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from ..errors import RetryableAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Transient failures worth another attempt
RETRYABLE_EXCEPTIONS = (
    RetryableAPIError,
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
    EOFError,
)


def _policy(max_attempts: int, min_wait: float, max_wait: float, exceptions: tuple) -> dict:
    """tenacity arguments shared by the decorator and call_with_retry."""
    return dict(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exceptions: Tuple of exception types to retry on
    """
    policy = _policy(max_attempts, min_wait, max_wait, exceptions)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(func):
            @retry(**policy)
            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                return await func(*args, **kwargs)  # type: ignore[misc]

            return async_wrapper  # type: ignore[return-value]

        return retry(**policy)(func)

    return decorator


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
    on_attempt: Optional[Callable[[int], None]] = None,
    **kwargs: Any,
) -> T:
    """Await ``func`` with bounded exponential backoff.

    Used where the retry policy is only known at run time (per apply
    options), so the decorator form does not fit. The last exception is
    re-raised once attempts are exhausted; exceptions outside
    ``exceptions`` propagate on the first failure.

    Args:
        func: Coroutine function to call
        max_attempts: Total attempts, including the first
        min_wait: Minimum wait between attempts (seconds)
        max_wait: Maximum wait between attempts (seconds)
        exceptions: Exception types that trigger another attempt
        on_attempt: Called with the attempt number before each attempt
    """
    async for attempt in AsyncRetrying(**_policy(max_attempts, min_wait, max_wait, exceptions)):
        with attempt:
            if on_attempt is not None:
                on_attempt(attempt.retry_state.attempt_number)
            result = await func(*args, **kwargs)
    return result
