"""PriceAggregator: Unweighted averaging of per-exchange bid/ask quotes.

Algorithm:
    1. Drop missing quotes (None) and quotes violating ``ask >= bid > 0``
    2. Fail if fewer than ``min_sources`` remain (never synthesize a rate)
    3. Average ask and bid arithmetically in Decimal
    4. Stamp the result with the latest ``observed_at`` among contributors

.. code-block:: python

    >>> aggregator = PriceAggregator()
    >>> result = aggregator.aggregate({
    ...     "binance": ExchangeQuote("binance", Decimal("9.20"), Decimal("9.10"), 100),
    ...     "bybit": ExchangeQuote("bybit", Decimal("9.30"), Decimal("9.20"), 160),
    ...     "bitget": None,
    ... })
    >>> result.rate.ask, result.rate.as_of
    (Decimal('9.25'), 160)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TypedDict

from .ExchangeQuote import AggregatedRate, ExchangeQuote


class AggregationError(TypedDict, total=False):
    """Error information when aggregation fails.

    :ivar error: Error type identifier.
    :ivar available: Number of valid sources available.
    :ivar missing: Sources that returned nothing.
    """

    error: str
    available: int
    missing: list[str]


class AggregationMetadata(TypedDict, total=False):
    """Metadata about a successful aggregation.

    :ivar sources: Sources used in the average.
    :ivar missing: Sources excluded for lack of a valid quote.
    :ivar count: Number of sources used.
    """

    sources: list[str]
    missing: list[str]
    count: int


@dataclass
class AggregationResult:
    """Result of one aggregation pass.

    :ivar rate: Aggregated rate, or None if aggregation failed.
    :ivar metadata: Additional information about the aggregation.
    """

    rate: AggregatedRate | None
    metadata: AggregationMetadata | AggregationError

    @property
    def success(self) -> bool:
        """Check if aggregation was successful."""
        return self.rate is not None

    @property
    def error(self) -> str | None:
        """Get error type if aggregation failed."""
        if self.rate is None:
            return self.metadata.get("error")
        return None


class PriceAggregator:
    """Averages valid exchange quotes into a single AggregatedRate.

    :ivar min_sources: Minimum valid quotes required for a usable rate.
    """

    def __init__(self, min_sources: int = 1) -> None:
        """Initialize the aggregator.

        :param min_sources: Minimum number of valid quotes required.
        :raises ValueError: If min_sources is less than 1.
        """
        if min_sources < 1:
            raise ValueError("min_sources must be at least 1")
        self.min_sources = min_sources

    @staticmethod
    def valid_quotes(quotes: dict[str, ExchangeQuote | None]) -> dict[str, ExchangeQuote]:
        """Select the quotes that can take part in an average.

        :param quotes: Dict mapping source name to quote (or None).
        :returns: Dict of quotes satisfying ``ask >= bid > 0``.
        """
        return {
            source: quote
            for source, quote in quotes.items()
            if quote is not None and quote.bid > 0 and quote.ask >= quote.bid
        }

    def aggregate(self, quotes: dict[str, ExchangeQuote | None]) -> AggregationResult:
        """Aggregate per-exchange quotes into a single rate.

        :param quotes: Dict mapping source name to quote (or None if the fetch
            failed).
        :returns: AggregationResult with the rate, or None and error info.
        """
        valid = self.valid_quotes(quotes)
        missing = [s for s in quotes if s not in valid]

        if len(valid) < self.min_sources:
            return AggregationResult(
                rate=None,
                metadata={
                    "error": "insufficient_sources",
                    "available": len(valid),
                    "missing": missing,
                },
            )

        count = len(valid)
        ask = sum((q.ask for q in valid.values()), Decimal(0)) / count
        bid = sum((q.bid for q in valid.values()), Decimal(0)) / count
        as_of = max(q.observed_at for q in valid.values())

        return AggregationResult(
            rate=AggregatedRate(
                ask=ask,
                bid=bid,
                source_count=count,
                as_of=as_of,
                sources=tuple(valid.keys()),
            ),
            metadata={
                "sources": list(valid.keys()),
                "missing": missing,
                "count": count,
            },
        )
