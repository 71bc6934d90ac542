"""HorizonVerifier: secondary transaction lookup through a Horizon server.

Used when the primary RPC cannot confirm a submitted transaction in time, or
returns a response that cannot be decoded. Horizon reports a boolean
``successful`` field for every transaction it has ingested.
"""

from __future__ import annotations

import logging

import httpx

from .retry import poll_until

logger = logging.getLogger(__name__)

# Retry configuration for Horizon lookups
MAX_RETRIES = 3
BACKOFF_BASE = 1.0
BACKOFF_MAX = 5.0


class HorizonVerifier:
    """Looks up transaction results on Horizon.

    :ivar horizon_url: Base URL of the Horizon server.
    """

    def __init__(
        self,
        horizon_url: str,
        client: httpx.AsyncClient | None = None,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
    ) -> None:
        """Initialize the verifier.

        :param horizon_url: Horizon base URL (e.g., https://horizon-testnet.stellar.org).
        :param client: Optional HTTP client. A private one is created otherwise.
        :param max_retries: Lookups attempted before giving up.
        :param backoff_base: Initial delay between attempts in seconds.
        """
        self.horizon_url = horizon_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0))
            self._owns_client = True
        return self._client

    async def _lookup_once(self, tx_hash: str) -> bool | None:
        response = await self.client.get(f"{self.horizon_url}/transactions/{tx_hash}")
        if response.status_code == 404:
            logger.debug(f"Horizon has no record of {tx_hash} yet")
            return None
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            return None
        successful = data.get("successful")
        if not isinstance(successful, bool):
            return None
        return successful

    async def lookup(self, tx_hash: str) -> bool | None:
        """Check whether a transaction succeeded.

        :param tx_hash: Transaction hash (hex).
        :returns: True if it succeeded, False if it failed on-chain, None if
            Horizon does not know it or could not be reached.
        """
        result = await poll_until(
            lambda: self._lookup_once(tx_hash),
            done=lambda found: found is not None,
            interval=self.backoff_base,
            max_attempts=self.max_retries,
            backoff=1.5,
            max_interval=BACKOFF_MAX,
            retry_on=(httpx.HTTPError, ValueError),
        )
        if result.last_error is not None and not result.finished:
            logger.warning(
                f"Horizon lookup for {tx_hash} failed after {result.attempts} attempts: "
                f"{result.last_error}"
            )
        return result.value if result.finished else None

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
