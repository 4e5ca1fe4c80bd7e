"""Exponential backoff with jitter around fallible coroutines."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from logger import get_logger

T = TypeVar("T")

LOGGER = get_logger("tryon.retry")

RetryPredicate = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    ``max_retries`` is the total number of attempts. The wait after failed
    attempt ``n`` (zero based) is ``base_delay_ms * 2**n`` plus a uniform
    jitter in ``[0, jitter_ms]``.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    jitter_ms: int = 1000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay_ms < 0 or self.jitter_ms < 0:
            raise ValueError("delays must not be negative")

    def backoff_ms(self, attempt: int) -> int:
        return self.base_delay_ms * (2 ** attempt)

    def delay_seconds(
        self, attempt: int, uniform: Callable[[float, float], float] = random.uniform
    ) -> float:
        jitter = uniform(0, self.jitter_ms) if self.jitter_ms else 0.0
        return (self.backoff_ms(attempt) + jitter) / 1000


def is_retryable(exc: BaseException) -> bool:
    """Read the classification carried by the error; unknown errors are transient."""

    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag
    return True


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    should_retry: RetryPredicate = is_retryable,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    uniform: Callable[[float, float], float] = random.uniform,
) -> T:
    """Await ``operation()`` until it succeeds, fails permanently or runs out of attempts.

    Each call keeps its own attempt counter, so concurrent invocations never
    share a retry budget. Cancellation is never retried.
    """

    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not should_retry(exc):
                LOGGER.debug("Non-retryable failure on attempt %s: %s", attempt + 1, exc)
                raise
            if attempt + 1 >= policy.max_retries:
                LOGGER.warning(
                    "Giving up after %s attempts: %s", policy.max_retries, exc
                )
                raise
            delay = policy.delay_seconds(attempt, uniform)
            LOGGER.warning(
                "Attempt %s/%s failed (%s), retrying in %.2fs",
                attempt + 1,
                policy.max_retries,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay)
            await sleep(delay)
            attempt += 1


class RetryExecutor:
    """Bind a default policy and injectable timing hooks to :func:`execute_with_retry`."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._uniform = uniform

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        should_retry: RetryPredicate = is_retryable,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        policy = self.policy
        if max_retries is not None or base_delay_ms is not None:
            policy = RetryPolicy(
                max_retries=max_retries if max_retries is not None else policy.max_retries,
                base_delay_ms=base_delay_ms if base_delay_ms is not None else policy.base_delay_ms,
                jitter_ms=policy.jitter_ms,
            )
        return await execute_with_retry(
            operation,
            policy,
            should_retry=should_retry,
            on_retry=on_retry,
            sleep=self._sleep,
            uniform=self._uniform,
        )


__all__ = ["RetryExecutor", "RetryPolicy", "execute_with_retry", "is_retryable"]
