"""FetchCoordinator: Concurrent, bounded fan-out to exchange sources.

Architecture:
    - One fetch per configured source, started concurrently
    - At most ``max_parallel`` requests in flight (asyncio.Semaphore)
    - Every call wrapped in asyncio.wait_for; a timeout counts as None
    - Results returned as {source: quote or None}, order-independent
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .ExchangeQuote import ExchangeQuote
    from .fetchers import BaseFetcher

logger = logging.getLogger(__name__)


class FetchCoordinator:
    """Coordinates concurrent fetching from multiple exchange sources.

    :ivar fetchers: Dict mapping source names to fetcher instances.
    :ivar fetch_timeout: Timeout for each fetch in seconds.
    :ivar max_parallel: Maximum concurrent fetches.
    """

    def __init__(
        self,
        fetchers: dict[str, BaseFetcher],
        fetch_timeout: float = 10.0,
        max_parallel: int = 3,
    ) -> None:
        """Initialize the coordinator.

        :param fetchers: Dict mapping source names to fetcher instances.
        :param fetch_timeout: Timeout for fetch requests (default: 10.0).
        :param max_parallel: Maximum concurrent fetches (default: 3).
        :raises ValueError: If max_parallel is less than 1.
        """
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.fetchers = fetchers
        self.fetch_timeout = fetch_timeout
        self.max_parallel = max_parallel

    @property
    def sources(self) -> list[str]:
        """Names of the configured sources."""
        return list(self.fetchers.keys())

    async def fetch_all(
        self, sources: list[str] | None = None
    ) -> dict[str, ExchangeQuote | None]:
        """Fetch a quote from every source concurrently.

        :param sources: Optional subset of source names. All when None.
        :returns: Dict mapping source name to ExchangeQuote or None.
        """
        names = [s for s in (sources or self.sources) if s in self.fetchers]
        if not names:
            return {}

        semaphore = asyncio.Semaphore(self.max_parallel)

        async def bounded(name: str) -> ExchangeQuote | None:
            async with semaphore:
                return await self._fetch_single(name)

        quotes = await asyncio.gather(*(bounded(name) for name in names))
        return dict(zip(names, quotes, strict=True))

    async def fetch_board(self, sources: list[str] | None = None) -> dict[str, ExchangeQuote | None]:
        """Read every source in as few requests as possible.

        Uses the batch endpoint of the first batch-capable fetcher, otherwise
        falls back to :meth:`fetch_all`.

        :param sources: Optional subset of source names.
        :returns: Dict mapping source name to ExchangeQuote or None.
        """
        names = [s for s in (sources or self.sources) if s in self.fetchers]
        batch_fetcher = next(
            (self.fetchers[s] for s in names if self.fetchers[s].supports_batch), None
        )
        if batch_fetcher is None:
            return await self.fetch_all(names)

        try:
            return await asyncio.wait_for(
                batch_fetcher.fetch_batch(names), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{batch_fetcher.name}] Batch fetch timeout")
            return {name: None for name in names}

    async def _fetch_single(self, name: str) -> ExchangeQuote | None:
        """Fetch one source with timeout.

        :param name: Source name.
        :returns: Quote or None on failure or timeout.
        """
        fetcher = self.fetchers[name]
        try:
            return await asyncio.wait_for(fetcher.fetch(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{name}] Timeout fetching USDT/BOB")
            return None
        except Exception as e:
            logger.warning(f"[{name}] Error fetching USDT/BOB: {e}")
            return None
