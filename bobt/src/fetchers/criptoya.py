"""CriptoYa P2P fetchers.

Endpoint (single exchange): {base}/{exchange}p2p/USDT/BOB/0.1
Endpoint (all exchanges):   {base}/usdt/bob
Rate Limit: Low (HTTP 429 when polled too often; callers cache)

The per-exchange endpoint is what the oracle push uses. The all-exchanges
endpoint is used for the dashboard price board, one request per refresh.
"""

import logging
from typing import ClassVar

from ..ExchangeQuote import ExchangeQuote
from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://criptoya.com/api"


class CriptoYaFetcher(BaseFetcher):
    """Fetcher for one P2P market exposed by the CriptoYa API.

    Subclasses only set ``name`` and ``endpoint``.

    :cvar endpoint: CriptoYa exchange slug (e.g., "binancep2p").
    :cvar ENDPOINTS: Mapping of every known source name to its slug.
    :ivar base_url: CriptoYa API root.
    """

    endpoint: ClassVar[str] = ""

    ENDPOINTS: ClassVar[dict[str, str]] = {
        "binance": "binancep2p",
        "bybit": "bybitp2p",
        "bitget": "bitgetp2p",
    }

    # Minimum trade volume (USDT) used by the single-exchange endpoint
    VOLUME = "0.1"

    def __init__(self, base_url: str | None = None, **kwargs):
        """Initialize the fetcher.

        :param base_url: CriptoYa API root (default: https://criptoya.com/api).
        :param kwargs: Forwarded to BaseFetcher.
        """
        super().__init__(**kwargs)
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")

    async def fetch(self) -> ExchangeQuote | None:
        """Fetch the USDT/BOB quote for this exchange.

        :returns: ExchangeQuote or None on failure.
        """
        url = f"{self.base_url}/{self.endpoint}/USDT/BOB/{self.VOLUME}"

        try:
            response = await self._get(url)
            data = response.json()
            return self._build_quote(data.get("ask"), data.get("bid"), data.get("time"))

        except FetcherError as e:
            logger.warning(f"[{self.name}] Failed to fetch USDT/BOB: {e.reason}")
            return None
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[{self.name}] Failed to parse response: {e}")
            return None

    @property
    def supports_batch(self) -> bool:
        """CriptoYa returns every exchange from /usdt/bob."""
        return True

    async def fetch_batch(self, sources: list[str]) -> dict[str, ExchangeQuote | None]:
        """Fetch quotes for several exchanges with a single API call.

        Missing ``ask``/``bid`` fall back to ``totalAsk``/``totalBid``, which
        CriptoYa fills for some markets.

        :param sources: Source names to read (e.g., ["binance", "bybit"]).
        :returns: Dict mapping source name to quote or None.
        """
        results: dict[str, ExchangeQuote | None] = {s: None for s in sources}
        if not sources:
            return results

        url = f"{self.base_url}/usdt/bob"

        try:
            response = await self._get(url)
            data = response.json()
        except FetcherError as e:
            logger.warning(f"[criptoya] Batch fetch failed: {e.reason}")
            return results
        except ValueError as e:
            logger.warning(f"[criptoya] Failed to parse batch response: {e}")
            return results

        if not isinstance(data, dict):
            logger.warning("[criptoya] Unexpected batch response shape")
            return results

        for source in sources:
            slug = self.ENDPOINTS.get(source)
            entry = data.get(slug) if slug else None
            if not isinstance(entry, dict):
                continue
            results[source] = self._build_quote(
                entry.get("ask") or entry.get("totalAsk"),
                entry.get("bid") or entry.get("totalBid"),
                entry.get("time"),
                source=source,
            )

        return results


@register_fetcher
class BinanceP2PFetcher(CriptoYaFetcher):
    """Binance P2P USDT/BOB market."""

    name = "binance"
    endpoint = "binancep2p"


@register_fetcher
class BybitP2PFetcher(CriptoYaFetcher):
    """Bybit P2P USDT/BOB market."""

    name = "bybit"
    endpoint = "bybitp2p"


@register_fetcher
class BitgetP2PFetcher(CriptoYaFetcher):
    """Bitget P2P USDT/BOB market."""

    name = "bitget"
    endpoint = "bitgetp2p"
