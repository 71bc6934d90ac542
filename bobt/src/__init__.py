"""
BOBT Ramp Service - Price Oracle and Ramp Lifecycle Module

This module provides the off-chain side of the BOBT stablecoin:
- ExchangeQuote: Bid/ask observations and stroop conversion
- PriceAggregator: Unweighted averaging of exchange quotes
- PriceService: Cached aggregated rate and per-exchange price board
- LedgerSubmitter: Build/simulate/sign/submit/confirm for contract calls
- OracleUpdater: Per-exchange price push to the oracle contract
- RampStateMachine: Quotes, ramp requests and their status lifecycle
- fetchers: CriptoYa P2P quote sources
"""

from .ExchangeQuote import AggregatedRate, ExchangeQuote
from .LedgerSubmitter import Confirmed, Failed, Indeterminate, LedgerSubmitter
from .OracleUpdater import OracleUpdater
from .PriceAggregator import AggregationResult, PriceAggregator
from .PriceService import PriceService
from .RampStateMachine import RampStateMachine
from .RampTypes import RampQuote, RampRequest, RampStatus, RampType

__all__ = [
    "AggregatedRate",
    "AggregationResult",
    "Confirmed",
    "ExchangeQuote",
    "Failed",
    "Indeterminate",
    "LedgerSubmitter",
    "OracleUpdater",
    "PriceAggregator",
    "PriceService",
    "RampQuote",
    "RampRequest",
    "RampStateMachine",
    "RampStatus",
    "RampType",
]
