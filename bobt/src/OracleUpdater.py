"""OracleUpdater: Pushes per-exchange BOB/USDT quotes to the on-chain oracle.

One update cycle:
    1. Confirm the operator account is authorized on the oracle contract
    2. Fetch every exchange concurrently
    3. Skip the cycle if fewer than ``min_exchanges`` returned a quote
    4. Submit ``update_prices_batch`` with stroop-scaled prices; a missing
       exchange is sent as 0 so the contract ignores that slot
    5. Retry a Failed submission that never reached the chain

The contract derives its own average, so no aggregation happens here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .errors import LedgerSimulationError, LedgerUnavailable
from .ExchangeQuote import ExchangeQuote, from_stroops, to_stroops
from .FetchCoordinator import FetchCoordinator
from .LedgerClient import Arg, ContractCall
from .LedgerSubmitter import Confirmed, Failed, LedgerSubmitter, SubmissionOutcome

logger = logging.getLogger(__name__)

# Exchange slots in the oracle's update_prices_batch signature, in order.
ORACLE_SLOTS = ("binance", "bybit", "bitget")


@dataclass
class OracleUpdateResult:
    """Outcome of one update cycle.

    :ivar quotes: Per-exchange quotes gathered for the cycle.
    :ivar outcome: Submission outcome, None if the cycle was skipped.
    :ivar skipped: Reason the cycle was skipped, if it was.
    """

    quotes: dict[str, ExchangeQuote | None] = field(default_factory=dict)
    outcome: SubmissionOutcome | None = None
    skipped: str | None = None

    @property
    def success(self) -> bool:
        return isinstance(self.outcome, Confirmed)

    @property
    def tx_hash(self) -> str | None:
        return getattr(self.outcome, "tx_hash", None)


@dataclass(frozen=True)
class OnchainPrice:
    """The oracle contract's stored aggregate."""

    ask: Decimal
    bid: Decimal
    mid: Decimal
    spread_bps: int
    num_sources: int
    timestamp: int

    @classmethod
    def from_native(cls, value: dict[str, Any]) -> OnchainPrice:
        return cls(
            ask=from_stroops(int(value["ask"])),
            bid=from_stroops(int(value["bid"])),
            mid=from_stroops(int(value["mid"])),
            spread_bps=int(value.get("spread_bps", 0)),
            num_sources=int(value.get("num_sources", 0)),
            timestamp=int(value["timestamp"]),
        )


class OracleUpdater:
    """Feeds exchange quotes to the oracle contract.

    :ivar coordinator: Fan-out over the exchange sources.
    :ivar submitter: Ledger submission pipeline.
    :ivar contract_id: Oracle contract address.
    :ivar min_exchanges: Minimum quotes needed to submit.
    :ivar max_retries: Extra attempts after a retryable failure.
    :ivar max_age: Quotes older than this many seconds are left out, None keeps all.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        submitter: LedgerSubmitter,
        contract_id: str,
        min_exchanges: int = 1,
        max_retries: int = 1,
        max_age: float | None = None,
        clock=time.time,
    ) -> None:
        self.coordinator = coordinator
        self.submitter = submitter
        self.contract_id = contract_id
        self.min_exchanges = max(1, min_exchanges)
        self.max_retries = max(0, max_retries)
        self.max_age = max_age
        self.clock = clock

    @property
    def operator(self) -> str:
        return self.submitter.client.source_address

    async def check_operator(self) -> bool:
        """Check whether the operator account may push prices.

        :returns: True if the contract lists the operator.
        :raises LedgerUnavailable: If the RPC could not answer.
        """
        call = ContractCall(self.contract_id, "is_operator", (Arg.address(self.operator),))
        try:
            return bool(await self.submitter.read(call))
        except LedgerSimulationError as e:
            logger.error(f"[oracle] is_operator check failed: {e}")
            return False

    def build_call(self, quotes: dict[str, ExchangeQuote | None], timestamp: int) -> ContractCall:
        """Build the ``update_prices_batch`` invocation.

        :param quotes: Per-exchange quotes; absent or None slots become 0.
        :param timestamp: Observation time to record (Unix seconds).
        :returns: ContractCall.
        """
        args = [Arg.address(self.operator)]
        for slot in ORACLE_SLOTS:
            quote = quotes.get(slot)
            args.append(Arg.i128(to_stroops(quote.ask) if quote else 0))
            args.append(Arg.i128(to_stroops(quote.bid) if quote else 0))
        args.append(Arg.u64(timestamp))
        return ContractCall(self.contract_id, "update_prices_batch", tuple(args))

    async def update(self) -> OracleUpdateResult:
        """Run one update cycle.

        :returns: OracleUpdateResult.
        """
        try:
            authorized = await self.check_operator()
        except LedgerUnavailable as e:
            logger.error(f"[oracle] Cannot reach the ledger, skipping update: {e}")
            return OracleUpdateResult(skipped="rpc_unavailable")
        if not authorized:
            logger.error(f"[oracle] {self.operator} is not an oracle operator, skipping update")
            return OracleUpdateResult(skipped="not_operator")

        quotes = await self.coordinator.fetch_all(list(ORACLE_SLOTS))
        if self.max_age is not None:
            now = self.clock()
            for name, quote in quotes.items():
                if quote is not None and now - quote.observed_at > self.max_age:
                    logger.warning(f"[oracle] {name}: quote is {now - quote.observed_at:.0f}s old, dropping")
                    quotes[name] = None
        present = {name: q for name, q in quotes.items() if q is not None}
        for name, quote in quotes.items():
            if quote is None:
                logger.warning(f"[oracle] {name}: no data")
            else:
                logger.info(f"[oracle] {name}: ask={quote.ask} bid={quote.bid}")

        if len(present) < self.min_exchanges:
            logger.error(
                f"[oracle] Only {len(present)} exchanges returned data, "
                f"need {self.min_exchanges}; skipping update"
            )
            return OracleUpdateResult(quotes=quotes, skipped="insufficient_sources")

        timestamp = max(q.observed_at for q in present.values())
        call = self.build_call(quotes, timestamp)

        outcome: SubmissionOutcome = await self.submitter.submit(call)
        attempt = 0
        while isinstance(outcome, Failed) and outcome.retryable and attempt < self.max_retries:
            attempt += 1
            logger.warning(f"[oracle] Retrying update ({attempt}/{self.max_retries}): {outcome.reason}")
            outcome = await self.submitter.submit(call)

        if isinstance(outcome, Confirmed):
            logger.info(f"[oracle] Prices updated from {len(present)} exchanges: {outcome.tx_hash}")
        else:
            logger.error(f"[oracle] Update did not confirm: {outcome}")
        return OracleUpdateResult(quotes=quotes, outcome=outcome)

    async def read_onchain_price(self) -> OnchainPrice | None:
        """Read the oracle's stored aggregate.

        :returns: OnchainPrice, or None if the contract has no price yet.
        :raises LedgerUnavailable: If the RPC could not answer.
        """
        call = ContractCall(self.contract_id, "get_price")
        try:
            value = await self.submitter.read(call)
        except LedgerSimulationError as e:
            logger.warning(f"[oracle] get_price failed: {e}")
            return None
        if not isinstance(value, dict):
            return None
        return OnchainPrice.from_native(value)
