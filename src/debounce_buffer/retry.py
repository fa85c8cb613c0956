"""Backoff retries for store I/O issued by a polling master."""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Every attempt at a store call failed with a transient error."""

    def __init__(self, last_error: Exception, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def is_transient(exc: Exception) -> bool:
    """True for store I/O errors worth retrying."""
    return isinstance(
        exc, (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError)
    )


def backoff_delay(retry: int, base: float, cap: float) -> float:
    """Delay before the given retry (0-based): base, 2*base, 4*base, ... up to cap."""
    return min(base * (2**retry), cap)


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    max_retries: int = 3,
    backoff_base: float = 0.2,
    backoff_max: float = 5.0,
    retriable: Callable[[Exception], bool] = is_transient,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, sleeping and retrying on retriable errors.

    Errors rejected by ``retriable`` propagate on the first occurrence. After
    ``max_retries`` retries the last error is wrapped in MaxRetriesExceeded.
    Only use this for calls that are safe to repeat.
    """
    name = getattr(fn, "__qualname__", repr(fn))
    retries = 0
    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            if not retriable(exc):
                raise
            if retries >= max_retries:
                raise MaxRetriesExceeded(exc, retries + 1) from exc
            delay = backoff_delay(retries, backoff_base, backoff_max)
            retries += 1
            logger.warning(
                "%s failed with %s (retry %d of %d in %.2fs)",
                name,
                type(exc).__name__,
                retries,
                max_retries,
                delay,
            )
            await asyncio.sleep(delay)
