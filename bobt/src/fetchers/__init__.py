"""
Exchange quote sources.

This module provides a unified interface for fetching USDT/BOB bid/ask
quotes from P2P markets.

Usage:
    from bobt.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available fetchers
    available = get_available_fetchers()
    # ['binance', 'bitget', 'bybit']

    # Create a fetcher instance
    fetcher = get_fetcher("binance")
    quote = await fetcher.fetch()
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherError,
    FetcherHTTPError,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .criptoya import (
    BinanceP2PFetcher,
    BitgetP2PFetcher,
    BybitP2PFetcher,
    CriptoYaFetcher,
)

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetcherError",
    "FetcherHTTPError",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "CriptoYaFetcher",
    "BinanceP2PFetcher",
    "BybitP2PFetcher",
    "BitgetP2PFetcher",
]
