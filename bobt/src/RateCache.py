"""TTL cache holding the last value produced by a price pass.

Unlike a plain TTL cache, the last value is kept after it expires so callers
can fall back to a last-known-good value, tagged as stale, when a fresh pass
produces nothing.

Reads vastly outnumber writes and an out-of-date read is harmless (staleness
is checked by consumers), so no locking is done.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateCache(Generic[T]):
    """Read-through cache entry with a time-to-live.

    :ivar ttl: Seconds during which a stored value counts as fresh.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time) -> None:
        """Initialize the cache.

        :param ttl: Freshness window in seconds.
        :param clock: Time source returning Unix seconds (injectable for tests).
        """
        self.ttl = ttl
        self._clock = clock
        self._value: T | None = None
        self._timestamp: float = 0.0

    def set(self, value: T) -> None:
        """Store a new value and restart the freshness window.

        :param value: Value to cache.
        """
        self._value = value
        self._timestamp = self._clock()
        logger.debug(f"Cache updated: {value!r}")

    def get(self) -> T | None:
        """Get the cached value if still fresh.

        :returns: The cached value, or None if empty or expired.
        """
        if self._value is None or self.is_expired():
            return None
        return self._value

    def last(self) -> T | None:
        """Get the last stored value regardless of age."""
        return self._value

    def is_expired(self) -> bool:
        """Check whether the freshness window has elapsed.

        :returns: True if the cache is empty or older than the TTL.
        """
        if self._value is None:
            return True
        return self._clock() - self._timestamp >= self.ttl

    def get_age(self) -> float | None:
        """Get the age of the cached value in seconds.

        :returns: Age in seconds, or None if the cache is empty.
        """
        if self._value is None:
            return None
        return self._clock() - self._timestamp

    @property
    def timestamp(self) -> float:
        """Unix time at which the current value was stored."""
        return self._timestamp
