"""Retry decorator for async callables.

Only start-up paths use it (``init_database``); tree reads and moves never
retry, failures there propagate to the caller unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import wraps
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from .exceptions import RetryError, RetryStatistics
from .strategies import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    jitter_range: tuple[float, float] = (0.5, 1.5),
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    stop_after_delay: float | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Retry an async function with exponential backoff.

    Args:
        max_attempts: Total number of calls, including the first one.
        initial_delay: Delay before the second call, in seconds.
        max_delay: Upper bound for any single delay.
        exponential_base: Growth factor between delays.
        jitter: Randomize delays within ``jitter_range``.
        jitter_range: Multiplier bounds applied when ``jitter`` is on.
        exceptions: Exception types considered retryable.
        retry_if: Predicate overriding ``exceptions`` when given.
        stop_after_delay: Give up once this many seconds have elapsed.
        on_retry: Callback invoked with (exception, attempt) before sleeping.

    Raises:
        RetryError: When attempts or time run out on a retryable error.

    Example:
        @retry(max_attempts=5, exceptions=(OperationalError,))
        async def connect() -> None:
            ...
    """
    strategy = RetryStrategy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        jitter_range=jitter_range,
        exceptions=exceptions,
        retry_if=retry_if,
        stop_after_delay=stop_after_delay,
    )

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        name = getattr(func, "__qualname__", repr(func))

        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            statistics = RetryStatistics(start_time=time.monotonic())
            attempt = 0

            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    if not strategy.should_retry(e):
                        logger.warning(
                            "Non-retryable exception in %s: %s",
                            name,
                            e,
                            extra={"function": name, "exception": str(e)},
                        )
                        raise

                    attempt += 1
                    statistics.exceptions.append(type(e).__name__)
                    exhausted = attempt >= strategy.max_attempts
                    if exhausted or strategy.deadline_passed(time.monotonic() - statistics.start_time):
                        statistics.end_time = time.monotonic()
                        logger.error(
                            "All retry attempts exhausted for %s",
                            name,
                            extra={
                                "function": name,
                                "attempts": attempt,
                                "last_exception": str(e),
                                "total_delay": statistics.total_delay,
                                "duration": statistics.duration,
                            },
                        )
                        raise RetryError(e, attempt, statistics) from e

                    delay = strategy.calculate_delay(attempt - 1)
                    statistics.attempts = attempt
                    statistics.total_delay += delay

                    logger.warning(
                        "Retrying %s after %.2fs (attempt %d/%d)",
                        name,
                        delay,
                        attempt,
                        strategy.max_attempts,
                        extra={
                            "function": name,
                            "attempt": attempt,
                            "max_attempts": strategy.max_attempts,
                            "delay": delay,
                            "exception": str(e),
                        },
                    )

                    if on_retry:
                        on_retry(e, attempt)

                    await asyncio.sleep(delay)
                else:
                    if attempt:
                        logger.info(
                            "%s succeeded after %d retries",
                            name,
                            attempt,
                            extra={"function": name, "attempts": attempt + 1},
                        )
                    return result

        return async_wrapper

    return decorator
