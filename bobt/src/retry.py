"""Bounded polling with optional backoff.

Shared by every confirmation loop: the ledger submitter polls transaction
status with it, and the secondary verifier retries its lookups with it.

.. code-block:: python

    result = await poll_until(
        lambda: client.get_transaction(tx_hash),
        done=lambda lookup: lookup.status is not TxStatus.NOT_FOUND,
        interval=1.0,
        max_attempts=30,
    )
    if result.finished:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PollResult(Generic[T]):
    """Outcome of a bounded poll.

    :ivar value: Last value returned by the probe (None if every attempt raised).
    :ivar attempts: Number of probe calls made.
    :ivar finished: True if ``done`` accepted a value before attempts ran out.
    :ivar errors: Number of attempts that raised a retryable exception.
    :ivar last_error: The most recent retryable exception, if any.
    """

    value: T | None
    attempts: int
    finished: bool
    errors: int = 0
    last_error: BaseException | None = None


async def poll_until(
    probe: Callable[[], Awaitable[T]],
    *,
    done: Callable[[T], bool],
    interval: float = 1.0,
    max_attempts: int = 30,
    backoff: float = 1.0,
    max_interval: float | None = None,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollResult[T]:
    """Call ``probe`` until ``done`` accepts its value or attempts run out.

    Exceptions listed in ``retry_on`` count as an inconclusive attempt (the
    same as a value ``done`` rejects). Cancellation is never swallowed.

    :param probe: Coroutine factory performing one attempt.
    :param done: Predicate deciding whether a value is conclusive.
    :param interval: Seconds to wait between attempts.
    :param max_attempts: Upper bound on probe calls.
    :param backoff: Multiplier applied to the interval after each attempt.
    :param max_interval: Cap for the interval when backoff > 1.
    :param retry_on: Exception types treated as inconclusive.
    :param sleep: Awaitable sleep function (injectable for tests).
    :returns: PollResult describing the last attempt.
    :raises ValueError: If max_attempts is less than 1.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    value: T | None = None
    errors = 0
    last_error: BaseException | None = None
    delay = interval

    for attempt in range(1, max_attempts + 1):
        try:
            value = await probe()
            if done(value):
                return PollResult(value, attempt, True, errors, last_error)
        except retry_on as exc:
            errors += 1
            last_error = exc
            logger.debug("Poll attempt %d/%d raised: %s", attempt, max_attempts, exc)

        if attempt < max_attempts:
            await sleep(delay)
            delay = delay * backoff
            if max_interval is not None:
                delay = min(delay, max_interval)

    return PollResult(value, max_attempts, False, errors, last_error)
