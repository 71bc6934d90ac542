"""Base fetcher interface and shared HTTP client management.

Every exchange source inherits from BaseFetcher and implements ``fetch()``,
which returns an :class:`~bobt.src.ExchangeQuote.ExchangeQuote` or None. Network
failures, non-2xx answers, missing fields and quotes outside the sanity band
all yield None: callers treat absence as "exclude this source", never as a
fatal error.

A shared httpx.AsyncClient is used across all fetchers to avoid connection
overhead. Tests (or a service that wants its own pool) can pass a client
explicitly.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myexchange"

        async def fetch(self) -> ExchangeQuote | None:
            response = await self._get("https://api.example.com/usdt/bob")
            data = response.json()
            return self._build_quote(data["ask"], data["bid"], data["time"])
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

import httpx

from ..errors import SourceUnavailable
from ..ExchangeQuote import DEFAULT_PRICE_MAX, DEFAULT_PRICE_MIN, ExchangeQuote, is_sane

logger = logging.getLogger(__name__)


class FetcherError(SourceUnavailable):
    """Base exception for fetcher errors."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, source: str, status_code: int, message: str):
        """Initialize the HTTP error.

        :param source: Exchange name.
        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(source, f"HTTP {status_code}: {message}")


class BaseFetcher(ABC):
    """Abstract base class for exchange quote sources.

    :cvar name: Unique identifier for this source (e.g., "binance").
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar timeout: Request timeout in seconds.
    :ivar price_min: Lower bound of the sanity band.
    :ivar price_max: Upper bound of the sanity band.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        timeout: float | None = None,
        price_min: Decimal = DEFAULT_PRICE_MIN,
        price_max: Decimal = DEFAULT_PRICE_MAX,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the fetcher.

        :param timeout: Request timeout in seconds (default: 10).
        :param price_min: Lowest acceptable bid.
        :param price_max: Highest acceptable ask.
        :param client: Optional dedicated HTTP client; the shared one is used
            when omitted.
        """
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.price_min = price_min
        self.price_max = price_max
        self._client = client

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if cls._shared_client is None or cls._shared_client.is_closed:
            cls._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                headers={"Accept": "application/json", "User-Agent": "BOBT-Price-Updater/1.0"},
                follow_redirects=True,
            )
        return cls._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        if cls._shared_client is not None and not cls._shared_client.is_closed:
            await cls._shared_client.aclose()
            cls._shared_client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client used by this fetcher."""
        return self._client if self._client is not None else self.get_shared_client()

    @abstractmethod
    async def fetch(self) -> ExchangeQuote | None:
        """Fetch the current quote from this source.

        :returns: ExchangeQuote, or None if the source is unusable right now.
        """
        pass

    @property
    def supports_batch(self) -> bool:
        """Check if this fetcher can read several exchanges in one request.

        :returns: True if ``fetch_batch()`` makes a single API call.
        """
        return False

    async def fetch_batch(self, sources: list[str]) -> dict[str, ExchangeQuote | None]:
        """Fetch quotes for several sources.

        Default implementation only knows about its own source.

        :param sources: Source names to read.
        :returns: Dict mapping source name to quote or None.
        """
        results: dict[str, ExchangeQuote | None] = {s: None for s in sources}
        if self.name in results:
            results[self.name] = await self.fetch()
        return results

    def _build_quote(
        self, ask: Any, bid: Any, observed_at: Any, source: str | None = None
    ) -> ExchangeQuote | None:
        """Validate raw response fields and build a quote.

        :param ask: Raw ask value from the response.
        :param bid: Raw bid value from the response.
        :param observed_at: Raw Unix timestamp from the response.
        :param source: Source name (defaults to this fetcher's name).
        :returns: ExchangeQuote, or None if a field is missing or out of band.
        """
        source = source or self.name
        if not ask or not bid or not observed_at:
            logger.warning(f"[{source}] Invalid response: ask={ask} bid={bid} time={observed_at}")
            return None

        try:
            ask_dec = Decimal(str(ask))
            bid_dec = Decimal(str(bid))
            timestamp = int(observed_at)
        except (InvalidOperation, TypeError, ValueError, OverflowError) as e:
            logger.warning(f"[{source}] Failed to parse prices: {e}")
            return None

        if not ask_dec.is_finite() or not bid_dec.is_finite():
            logger.warning(f"[{source}] Non-finite price: ask={ask_dec} bid={bid_dec}")
            return None

        if not is_sane(ask_dec, bid_dec, self.price_min, self.price_max):
            logger.warning(
                f"[{source}] Price rejected: ask={ask_dec} bid={bid_dec} "
                f"(band {self.price_min}-{self.price_max}, ask must be >= bid)"
            )
            return None

        return ExchangeQuote(source=source, ask=ask_dec, bid=bid_dec, observed_at=timestamp)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        try:
            response = await self.client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            if not response.is_success:
                logger.debug(
                    "HTTP GET %s failed with status %s: %s",
                    url,
                    response.status_code,
                    response.text[:200],
                )
                raise FetcherHTTPError(self.name, response.status_code, response.text[:200])
            return response
        except httpx.TimeoutException as e:
            raise FetcherError(self.name, f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(self.name, f"Request failed: {e}") from e


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, **kwargs: Any) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Source name (e.g., "binance", "bybit").
    :param kwargs: Forwarded to the fetcher constructor.
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](**kwargs)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
