"""PriceService: the aggregator-backed current rate and exchange price board.

One instance is constructed at startup and shared by the ramp state machine
(quote annotation) and the HTTP API (price display). It owns two caches:

- the aggregated rate, refreshed at most every ``cache_ttl`` seconds
- the per-exchange board, refreshed at most every ``board_ttl`` seconds

When a refresh yields zero usable sources the previous value is returned
flagged as stale. With no previous value the call fails with
:class:`~bobt.src.errors.AggregationFailed`; no default rate is invented.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable

from .errors import AggregationFailed
from .ExchangeQuote import AggregatedRate, ExchangeQuote
from .FetchCoordinator import FetchCoordinator
from .PriceAggregator import PriceAggregator
from .RateCache import RateCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateSnapshot:
    """An aggregated rate as served to a consumer.

    :ivar rate: The aggregated rate.
    :ivar cached: True if served from cache without a new pass.
    :ivar stale: True if the rate is older than the consumer's max age or
        is a last-known-good fallback after a failed pass.
    """

    rate: AggregatedRate
    cached: bool = False
    stale: bool = False

    @property
    def is_valid(self) -> bool:
        """Whether the rate is fresh enough to be presented as current."""
        return not self.stale


@dataclass(frozen=True)
class ExchangeBoard:
    """Per-exchange quotes for display.

    :ivar prices: Source name to quote (None when the exchange had no data).
    :ivar best_buy: (exchange, ask) with the lowest ask, if any.
    :ivar timestamp: Unix milliseconds at which the board was fetched.
    :ivar cached: True if served from cache.
    :ivar stale: True if served from cache because a refresh failed.
    """

    prices: dict[str, ExchangeQuote | None]
    best_buy: tuple[str, Decimal] | None
    timestamp: int
    cached: bool = False
    stale: bool = False
    sources: list[str] = field(default_factory=list)


def best_buy(prices: dict[str, ExchangeQuote | None]) -> tuple[str, Decimal] | None:
    """Find the exchange with the lowest positive ask.

    :param prices: Source name to quote.
    :returns: (exchange, ask) or None if no exchange has a quote.
    """
    best: tuple[str, Decimal] | None = None
    for exchange, quote in prices.items():
        if quote is None or quote.ask <= 0:
            continue
        if best is None or quote.ask < best[1]:
            best = (exchange, quote.ask)
    return best


class PriceService:
    """Aggregated rate provider with read-through caching.

    :ivar coordinator: Fan-out to the exchange sources.
    :ivar aggregator: Averaging logic.
    :ivar max_age: Seconds a rate may be old before it is flagged stale.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        aggregator: PriceAggregator | None = None,
        cache_ttl: float = 30.0,
        board_ttl: float = 60.0,
        max_age: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the price service.

        :param coordinator: FetchCoordinator over the configured sources.
        :param aggregator: PriceAggregator (default: one source minimum).
        :param cache_ttl: Seconds an aggregated rate is served from cache.
        :param board_ttl: Seconds the exchange board is served from cache.
        :param max_age: Staleness threshold for the rate, in seconds.
        :param clock: Time source returning Unix seconds.
        """
        self.coordinator = coordinator
        self.aggregator = aggregator or PriceAggregator(min_sources=1)
        self.max_age = max_age
        self._clock = clock
        self._rate_cache: RateCache[AggregatedRate] = RateCache(cache_ttl, clock)
        self._board_cache: RateCache[ExchangeBoard] = RateCache(board_ttl, clock)

    async def get_rate(self) -> RateSnapshot:
        """Get the current aggregated rate.

        :returns: RateSnapshot, possibly cached or stale.
        :raises AggregationFailed: If no source produced data and no
            previous rate exists.
        """
        now = self._clock()

        cached = self._rate_cache.get()
        if cached is not None:
            return RateSnapshot(cached, cached=True, stale=cached.is_stale(now, self.max_age))

        quotes = await self.coordinator.fetch_all()
        result = self.aggregator.aggregate(quotes)

        if result.success:
            rate = result.rate
            assert rate is not None
            self._rate_cache.set(rate)
            logger.info(
                f"BOB/USDT: ask={rate.ask:.4f} bid={rate.bid:.4f} "
                f"({rate.source_count} sources: {', '.join(rate.sources)})"
            )
            return RateSnapshot(rate, cached=False, stale=rate.is_stale(now, self.max_age))

        last = self._rate_cache.last()
        if last is not None:
            logger.warning(
                f"Aggregation failed ({result.error}): {result.metadata}; "
                f"serving last-known-good rate from {last.as_of}"
            )
            return RateSnapshot(last, cached=True, stale=True)

        logger.error(f"Aggregation failed ({result.error}) and no previous rate: {result.metadata}")
        raise AggregationFailed("No exchange returned a usable price")

    async def get_exchange_board(self) -> ExchangeBoard:
        """Get per-exchange quotes plus the best buy price.

        :returns: ExchangeBoard, cached for ``board_ttl`` seconds.
        :raises AggregationFailed: If the refresh failed and nothing is cached.
        """
        cached = self._board_cache.get()
        if cached is not None:
            return replace(cached, cached=True, stale=False)

        prices = await self.coordinator.fetch_board()
        if any(quote is not None for quote in prices.values()):
            board = ExchangeBoard(
                prices=prices,
                best_buy=best_buy(prices),
                timestamp=int(self._clock() * 1000),
                sources=list(prices.keys()),
            )
            self._board_cache.set(board)
            return board

        previous = self._board_cache.last()
        if previous is not None:
            logger.warning("Exchange board refresh failed, serving stale board")
            return replace(previous, cached=True, stale=True)

        raise AggregationFailed("Failed to get exchange prices")
