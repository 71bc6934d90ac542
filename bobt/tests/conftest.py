"""
Shared test fixtures for the BOBT ramp service.

Provides a controllable clock, static exchange fetchers, an in-memory fake
of the ledger client and a fake secondary verifier.
"""

from decimal import Decimal
from typing import Any

import pytest

from bobt.src.ExchangeQuote import ExchangeQuote
from bobt.src.fetchers.base import BaseFetcher
from bobt.src.FetchCoordinator import FetchCoordinator
from bobt.src.LedgerClient import (
    ContractCall,
    LedgerClient,
    SendResult,
    SendStatus,
    SimulationResult,
    TxLookup,
    TxStatus,
)
from bobt.src.LedgerSubmitter import LedgerSubmitter
from bobt.src.PriceService import PriceService
from bobt.src.RampStateMachine import RampStateMachine
from bobt.src.RampStore import InMemoryRampStore
from bobt.src.RampTypes import RampConfig, TreasuryAccount

OPERATOR = "GOPERATOR"
USER = "GDUSERADDRESS"
OTHER_USER = "GDOTHERUSER"


class FakeClock:
    """Manually advanced clock returning Unix seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticFetcher(BaseFetcher):
    """Fetcher returning a fixed quote (or None, or raising)."""

    def __init__(self, name: str, quote: ExchangeQuote | None = None, error: Exception | None = None):
        super().__init__()
        self.name = name
        self.quote = quote
        self.error = error
        self.calls = 0

    async def fetch(self) -> ExchangeQuote | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.quote


def make_quote(source: str, ask: str, bid: str, observed_at: int = 1_700_000_000) -> ExchangeQuote:
    return ExchangeQuote(source, Decimal(ask), Decimal(bid), observed_at)


class FakeLedgerClient(LedgerClient):
    """In-memory ledger.

    ``lookups`` is consumed one entry per ``get_transaction`` call; an
    Exception entry is raised, and the last entry repeats once exhausted.
    ``reads`` maps a function name to its return value (or a callable
    taking the call).
    """

    def __init__(self) -> None:
        self.simulation_error: str | None = None
        self.simulation_result: Any = None
        self.send_status = SendStatus.PENDING
        self.send_error: Exception | None = None
        self.lookups: list[Any] = [TxLookup(TxStatus.SUCCESS, ledger=100)]
        self.reads: dict[str, Any] = {}
        self.built: list[ContractCall] = []
        self.sent: list[str] = []
        self.lookup_calls = 0
        self._counter = 0

    @property
    def source_address(self) -> str:
        return OPERATOR

    async def build(self, call: ContractCall) -> Any:
        self.built.append(call)
        return {"call": call}

    async def simulate(self, tx: Any) -> SimulationResult:
        if self.simulation_error:
            return SimulationResult(error=self.simulation_error)
        return SimulationResult(result=self.simulation_result, prepared=dict(tx, prepared=True))

    def sign(self, tx: Any) -> Any:
        self._counter += 1
        return dict(tx, signed=True, hash=f"tx{self._counter}")

    def tx_hash(self, tx: Any) -> str:
        return tx["hash"]

    def decode_envelope(self, envelope_xdr: str) -> Any:
        if not envelope_xdr.startswith("AAAA"):
            raise ValueError("not an envelope")
        return {"hash": "presigned-" + envelope_xdr[-4:]}

    async def send(self, tx: Any) -> SendResult:
        self.sent.append(tx["hash"])
        if self.send_error is not None:
            raise self.send_error
        error = "txBadSeq" if self.send_status is SendStatus.ERROR else None
        return SendResult(self.send_status, tx["hash"], error)

    async def get_transaction(self, tx_hash: str) -> TxLookup:
        index = min(self.lookup_calls, len(self.lookups) - 1)
        self.lookup_calls += 1
        entry = self.lookups[index]
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def read(self, call: ContractCall) -> Any:
        value = self.reads.get(call.function)
        return value(call) if callable(value) else value


class FakeVerifier:
    """Secondary source answering a fixed result."""

    def __init__(self, result: bool | None = None) -> None:
        self.result = result
        self.lookups: list[str] = []

    async def lookup(self, tx_hash: str) -> bool | None:
        self.lookups.append(tx_hash)
        return self.result

    async def close(self) -> None:
        return None


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def submitter(ledger: FakeLedgerClient, verifier: FakeVerifier) -> LedgerSubmitter:
    return LedgerSubmitter(ledger, verifier, poll_interval=1.0, max_attempts=30, sleep=no_sleep)


@pytest.fixture
def fetchers() -> dict[str, StaticFetcher]:
    return {
        "binance": StaticFetcher("binance", make_quote("binance", "6.96", "6.90", 1_700_000_000)),
        "bybit": StaticFetcher("bybit", make_quote("bybit", "6.98", "6.92", 1_700_000_010)),
        "bitget": StaticFetcher("bitget", make_quote("bitget", "6.95", "6.91", 1_700_000_005)),
    }


@pytest.fixture
def coordinator(fetchers: dict[str, StaticFetcher]) -> FetchCoordinator:
    return FetchCoordinator(fetchers, fetch_timeout=1.0, max_parallel=3)


@pytest.fixture
def price_service(coordinator: FetchCoordinator, clock: FakeClock) -> PriceService:
    return PriceService(coordinator, cache_ttl=30, board_ttl=60, max_age=3600, clock=clock)


@pytest.fixture
def ramp_config() -> RampConfig:
    return RampConfig(
        treasury_accounts=(TreasuryAccount("Banco Unión", "1234567890", "BOBT Treasury"),),
    )


@pytest.fixture
def store() -> InMemoryRampStore:
    return InMemoryRampStore()


@pytest.fixture
def machine(
    store: InMemoryRampStore,
    price_service: PriceService,
    ramp_config: RampConfig,
    submitter: LedgerSubmitter,
    clock: FakeClock,
) -> RampStateMachine:
    return RampStateMachine(
        store,
        price_service,
        ramp_config,
        submitter=submitter,
        token_contract_id="CTOKEN",
        treasury_contract_id="CTREASURY",
        clock=clock,
    )
