"""Timeout guard and retry policy for units of asynchronous work.

A unit of work is a zero-argument (retry) or one-argument (timeout) coroutine
factory that returns a ``Result``. Neither wrapper lets a fault escape: faults
raised by the work are converted with ``error_from_exception``.

Usage:
    >>> async def attempt() -> Result[str]:
    ...     return await with_timeout(lambda signal: fetch(signal), 30.0)
    >>> result = await with_retry(attempt, max_attempts=3)
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from agents.result import ErrorInfo, ErrorKind, Result, error_from_exception
from config import settings

logger = structlog.get_logger()

T = TypeVar("T")

TimedWork = Callable[[asyncio.Event], Awaitable[Any]]
RetryableWork = Callable[[], Awaitable[Result[T]]]
RetryHook = Callable[[int, ErrorInfo, float], None]


# ---------------------------------------------------------------------------
# Timeout guard
# ---------------------------------------------------------------------------


async def _capture(work: TimedWork, signal: asyncio.Event) -> Result[Any]:
    """Run work and fold its outcome into a Result."""
    try:
        outcome = await work(signal)
    except Exception as e:
        return Result.failure(error_from_exception(e))
    if isinstance(outcome, Result):
        return outcome
    if outcome is None:
        # Work that finishes without a value still succeeded.
        return Result.success("")
    return Result.success(outcome)


def _abandon(task: asyncio.Future[Any], operation: str) -> None:
    """Cancel a task without waiting for it to acknowledge the cancellation."""
    task.cancel()

    def _reap(finished: asyncio.Future[Any]) -> None:
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            logger.debug("abandoned_work_failed", operation=operation, error=str(exc))

    task.add_done_callback(_reap)


async def with_timeout(
    work: TimedWork,
    timeout_seconds: float,
    *,
    cancel_event: asyncio.Event | None = None,
    operation: str = "work",
) -> Result[Any]:
    """Race ``work`` against a deadline.

    ``work`` receives a fresh cancellation signal that is set when the
    deadline expires or when the enclosing ``cancel_event`` fires. The guard
    returns as soon as either happens and never waits for the work to notice.

    Args:
        work: Coroutine factory taking the cancellation signal.
        timeout_seconds: Deadline for this single run.
        cancel_event: Optional enclosing cancellation signal (e.g. turn deadline).
        operation: Label used in error messages and logs.

    Returns:
        The work's own Result when it finishes first, otherwise a TIMEOUT
        failure. Expiry of this deadline is retryable; cancellation by the
        enclosing signal is not.
    """
    signal = asyncio.Event()
    task = asyncio.ensure_future(_capture(work, signal))
    watched: set[asyncio.Future[Any]] = {task}
    parent_waiter: asyncio.Future[Any] | None = None
    if cancel_event is not None:
        parent_waiter = asyncio.ensure_future(cancel_event.wait())
        watched.add(parent_waiter)

    try:
        done, _ = await asyncio.wait(
            watched,
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        signal.set()
        _abandon(task, operation)
        raise
    finally:
        if parent_waiter is not None and not parent_waiter.done():
            parent_waiter.cancel()

    if task in done:
        return task.result()

    signal.set()
    _abandon(task, operation)

    if parent_waiter is not None and parent_waiter in done:
        logger.info("work_cancelled_by_parent", operation=operation)
        return Result.failure(ErrorInfo.create(
            ErrorKind.TIMEOUT,
            f"{operation} cancelled by enclosing deadline",
            retryable=False,
        ))

    logger.warning("work_timed_out", operation=operation, timeout_seconds=timeout_seconds)
    return Result.failure(ErrorInfo.create(
        ErrorKind.TIMEOUT,
        f"{operation} timed out after {timeout_seconds:g}s",
    ))


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter.

    The delay before attempt ``n + 1`` is ``base * multiplier ** (n - 1)``,
    capped at ``max_delay_seconds``; the top ``jitter_ratio`` share of it is
    randomized, so delays fall in ``[raw * (1 - jitter_ratio), raw]``.
    """

    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.5
    max_retry_after_seconds: float = 30.0

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
            max_retry_after_seconds=settings.rate_limit_retry_seconds,
        )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Return the sleep before the attempt following ``attempt`` (1-based)."""
        raw = min(
            self.max_delay_seconds,
            self.base_delay_seconds * self.multiplier ** max(attempt - 1, 0),
        )
        spread = raw * self.jitter_ratio
        uniform = (rng or random).uniform(0.0, spread)
        return raw - spread + uniform

    def delay_after(self, attempt: int, error: ErrorInfo, rng: random.Random | None = None) -> float:
        """Backoff delay, raised to honor an upstream retry-after hint."""
        delay = self.delay_for(attempt, rng)
        if error.retry_after_seconds:
            delay = max(delay, min(error.retry_after_seconds, self.max_retry_after_seconds))
        return delay


async def with_retry(
    work: RetryableWork[T],
    *,
    max_attempts: int = 3,
    backoff: BackoffPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: RetryHook | None = None,
    operation: str = "work",
) -> Result[T]:
    """Invoke ``work`` until it succeeds, fails permanently, or attempts run out.

    Args:
        work: Zero-argument coroutine factory returning a Result.
        max_attempts: Total attempts including the first.
        backoff: Delay schedule between attempts.
        sleep: Awaitable sleep, injectable for tests.
        on_retry: Called with (attempt, error, delay) before each re-attempt.
        operation: Label used in logs.

    Returns:
        The first successful Result, the first non-retryable failure, or the
        last failure once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    policy = backoff or BackoffPolicy()

    attempt = 0
    while True:
        attempt += 1
        started = time.monotonic()
        try:
            result = await work()
        except Exception as e:
            result = Result.failure(error_from_exception(e))

        if result.ok:
            return result

        error = result.error
        assert error is not None
        if not error.retryable or attempt >= max_attempts:
            if error.retryable:
                logger.warning(
                    "retry_attempts_exhausted",
                    operation=operation,
                    attempts=attempt,
                    kind=error.kind.value,
                )
            return result

        delay = policy.delay_after(attempt, error)
        logger.info(
            "retry_scheduled",
            operation=operation,
            attempt=attempt,
            max_attempts=max_attempts,
            kind=error.kind.value,
            delay_seconds=round(delay, 3),
            attempt_ms=int((time.monotonic() - started) * 1000),
        )
        if on_retry is not None:
            on_retry(attempt, error, delay)
        await sleep(delay)
