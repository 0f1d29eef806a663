"""Bounded retries with exponential backoff, jitter and cooperative abort."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from research_desk.entities import RetryState
from research_desk.errors import OperationAborted


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]
RetryPredicate = Callable[[BaseException], bool]
SleepFunc = Callable[[float], Awaitable[Any]]
JitterFunc = Callable[[float, float], float]


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: JitterFunc = random.uniform
) -> float:
    """
    Backoff before the next try: base * 2^attempt + jitter in [0, base].

    attempt counts failures from 0, so the first pause is base + jitter.
    The result is capped at max_delay.
    """
    spread = max(0.0, min(jitter(0.0, base_delay), base_delay))
    return min(base_delay * (2 ** attempt) + spread, max_delay)


async def race_abort(awaitable: Awaitable[Any], abort: Optional[asyncio.Event], description: str) -> Any:
    """
    Await `awaitable` unless `abort` fires first.

    The losing task is cancelled. Raises OperationAborted if the abort
    signal wins; otherwise returns (or raises) whatever the awaitable does.
    """
    if abort is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        stop.cancel()
        raise

    if work in done:
        stop.cancel()
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise OperationAborted(f"{description} aborted")


async def call_with_retry(
    operation: Operation,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    abort: Optional[asyncio.Event] = None,
    retry_on: Optional[RetryPredicate] = None,
    sleep: SleepFunc = asyncio.sleep,
    jitter: JitterFunc = random.uniform,
    description: str = "operation"
) -> Any:
    """
    Invoke `operation` with bounded retries.

    Preconditions:
    - operation is a zero-argument callable returning an awaitable
    - max_attempts >= 1, base_delay >= 0

    Postconditions:
    - Returns the first successful result
    - If every attempt fails, the last error is re-raised unchanged
    - A non-retryable error (retry_on returns False) is re-raised at once
    - OperationAborted is raised if abort is set before or during an
      attempt or during a backoff pause; it is never retried

    Args:
        operation: Factory for the awaitable to run on each attempt
        max_attempts: Total attempts including the first
        base_delay: Base backoff in seconds
        max_delay: Upper bound for a single pause
        abort: Cooperative cancellation signal
        retry_on: Predicate deciding whether an error is worth retrying
        sleep: Coroutine used for backoff pauses
        jitter: Random source, called as jitter(0, base_delay)
        description: Label used in log lines

    Returns:
        The operation's result
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    state = RetryState(max_attempts=max_attempts)

    while True:
        if abort is not None and abort.is_set():
            raise OperationAborted(f"{description} aborted before attempt {state.attempt + 1}")

        state.attempt += 1
        logger.debug(f"{description}: attempt {state.attempt}/{max_attempts}")

        try:
            return await race_abort(operation(), abort, description)
        except OperationAborted:
            raise
        except Exception as e:
            state.last_error = e
            logger.warning(f"{description}: attempt {state.attempt}/{max_attempts} failed: {e}")

            if retry_on is not None and not retry_on(e):
                logger.warning(f"{description}: error is not retryable, giving up")
                raise

            if state.exhausted:
                logger.error(f"{description}: all {max_attempts} attempts failed")
                raise

        state.last_delay = compute_delay(state.attempt - 1, base_delay, max_delay, jitter)
        logger.info(f"{description}: retrying in {state.last_delay:.2f}s")
        await race_abort(sleep(state.last_delay), abort, description)


class ResilientCall:
    """
    A reusable retry policy for flaky network and generative calls.

    Representation Invariants:
    - max_attempts >= 1
    - 0 <= base_delay <= max_delay
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        retry_on: Optional[RetryPredicate] = None,
        sleep: SleepFunc = asyncio.sleep,
        jitter: JitterFunc = random.uniform
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0 or max_delay < base_delay:
            raise ValueError("delays must satisfy 0 <= base_delay <= max_delay")
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._retry_on = retry_on
        self._sleep = sleep
        self._jitter = jitter

    @classmethod
    def from_settings(cls, settings, retry_on: Optional[RetryPredicate] = None) -> "ResilientCall":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=max(settings.retry_max_delay, settings.retry_base_delay),
            retry_on=retry_on,
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def __call__(
        self,
        operation: Operation,
        description: str = "operation",
        abort: Optional[asyncio.Event] = None,
        max_attempts: Optional[int] = None
    ) -> Any:
        return await call_with_retry(
            operation,
            max_attempts=max_attempts or self._max_attempts,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            abort=abort,
            retry_on=self._retry_on,
            sleep=self._sleep,
            jitter=self._jitter,
            description=description,
        )
