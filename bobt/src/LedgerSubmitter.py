"""LedgerSubmitter: Build, simulate, sign, submit and confirm contract calls.

Pipeline:
    1. Build a call against the operator account's current sequence
    2. Simulate it; a simulation error is terminal and costs nothing
    3. Sign the prepared transaction
    4. Send it and hand the hash and simulated result to ``on_submitted``
       before waiting
    5. Poll the primary RPC for the result (bounded, fixed interval)
    6. If polling runs out, ask the secondary verifier once
    7. Return Confirmed, Failed or Indeterminate

An Indeterminate outcome means the transaction may or may not have landed.
It is never resubmitted here; :meth:`LedgerSubmitter.reconcile` resolves it
later from the recorded hash.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from .errors import BobtError, ConfigurationError, LedgerUnavailable
from .LedgerClient import ContractCall, LedgerClient, SendStatus, TxLookup, TxStatus
from .retry import poll_until

if TYPE_CHECKING:
    from .HorizonVerifier import HorizonVerifier

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_POLL_ATTEMPTS = 30


@dataclass(frozen=True)
class Confirmed:
    """The transaction executed successfully.

    :ivar tx_hash: Transaction hash.
    :ivar result: Contract return value from simulation, if any.
    :ivar via_secondary: True if only the secondary verifier confirmed it.
    """

    tx_hash: str
    result: Any = None
    via_secondary: bool = False


@dataclass(frozen=True)
class Failed:
    """The call did not take effect.

    :ivar reason: Human-readable failure detail.
    :ivar stage: ``build``, ``simulate``, ``send`` or ``chain``.
    :ivar tx_hash: Hash if a transaction was signed.
    """

    reason: str
    stage: str
    tx_hash: str | None = None

    @property
    def retryable(self) -> bool:
        """True if the call never reached the chain and can be attempted again."""
        return self.stage in ("build", "simulate", "send")


@dataclass(frozen=True)
class Indeterminate:
    """The transaction was submitted but its outcome is unknown.

    :ivar tx_hash: Transaction hash.
    :ivar result: Contract return value from simulation, if any.
    """

    tx_hash: str
    result: Any = None


SubmissionOutcome = Union[Confirmed, Failed, Indeterminate]
OnSubmitted = Callable[[str, Any], Awaitable[None]]


class LedgerSubmitter:
    """Runs contract calls through the submission pipeline.

    :ivar client: Ledger client used for every step.
    :ivar verifier: Optional secondary transaction lookup.
    :ivar poll_interval: Seconds between status polls.
    :ivar max_attempts: Number of status polls before giving up.
    """

    def __init__(
        self,
        client: LedgerClient,
        verifier: HorizonVerifier | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.verifier = verifier
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def submit(
        self, call: ContractCall, on_submitted: OnSubmitted | None = None
    ) -> SubmissionOutcome:
        """Run one contract call through the full pipeline.

        :param call: Contract invocation.
        :param on_submitted: Awaited with the transaction hash and the simulated
            return value as soon as the network has (or may have) received it.
        :returns: Confirmed, Failed or Indeterminate.
        :raises ConfigurationError: If no signing key is configured.
        """
        label = call.describe()

        try:
            tx = await self.client.build(call)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"[{label}] Build failed: {e}")
            return Failed(str(e), stage="build")

        try:
            simulation = await self.client.simulate(tx)
        except Exception as e:
            logger.error(f"[{label}] Simulation request failed: {e}")
            return Failed(str(e), stage="simulate")

        if not simulation.success:
            logger.error(f"[{label}] Simulation rejected: {simulation.error}")
            return Failed(simulation.error or "simulation failed", stage="simulate")

        signed = self.client.sign(simulation.prepared)
        tx_hash = self.client.tx_hash(signed)
        return await self._send(label, signed, tx_hash, simulation.result, on_submitted)

    async def submit_presigned(
        self, envelope_xdr: str, on_submitted: OnSubmitted | None = None
    ) -> SubmissionOutcome:
        """Send a transaction that was signed elsewhere and wait for it.

        :param envelope_xdr: Base64 transaction envelope.
        :param on_submitted: Callback receiving the hash (and None) after sending.
        :returns: Confirmed, Failed or Indeterminate.
        """
        try:
            signed = self.client.decode_envelope(envelope_xdr)
        except Exception as e:
            logger.error(f"[presigned] Cannot decode envelope: {e}")
            return Failed(f"invalid envelope: {e}", stage="build")
        tx_hash = self.client.tx_hash(signed)
        return await self._send("presigned", signed, tx_hash, None, on_submitted)

    async def _send(
        self,
        label: str,
        signed: Any,
        tx_hash: str,
        result: Any,
        on_submitted: OnSubmitted | None,
    ) -> SubmissionOutcome:
        try:
            sent = await self.client.send(signed)
        except Exception as e:
            # The network may have received it; only polling can tell.
            logger.warning(f"[{label}] Send of {tx_hash} raised, checking status: {e}")
            if on_submitted is not None:
                await on_submitted(tx_hash, result)
            return await self.confirm(tx_hash, result=result, label=label)

        if sent.status is SendStatus.ERROR:
            logger.error(f"[{label}] Submission rejected: {sent.error}")
            return Failed(sent.error or "submission rejected", stage="send", tx_hash=tx_hash)
        if sent.status is SendStatus.TRY_AGAIN_LATER:
            logger.warning(f"[{label}] Network busy, submission not accepted")
            return Failed("network busy, try again later", stage="send", tx_hash=tx_hash)

        logger.info(f"[{label}] Submitted tx {sent.tx_hash or tx_hash} ({sent.status.value})")
        if on_submitted is not None:
            await on_submitted(sent.tx_hash or tx_hash, result)
        return await self.confirm(sent.tx_hash or tx_hash, result=result, label=label)

    async def confirm(
        self, tx_hash: str, result: Any = None, label: str = "confirm"
    ) -> SubmissionOutcome:
        """Poll for a transaction's result, then fall back to the secondary check.

        :param tx_hash: Transaction hash.
        :param result: Value to attach to a Confirmed outcome.
        :param label: Log prefix.
        :returns: Confirmed, Failed or Indeterminate.
        """
        poll = await poll_until(
            lambda: self.client.get_transaction(tx_hash),
            done=lambda lookup: lookup.final,
            interval=self.poll_interval,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )

        if poll.finished:
            lookup: TxLookup = poll.value
            if lookup.status is TxStatus.SUCCESS:
                logger.info(f"[{label}] Confirmed {tx_hash} in ledger {lookup.ledger}")
                return Confirmed(tx_hash, result=result)
            logger.error(f"[{label}] Transaction {tx_hash} failed on-chain: {lookup.error}")
            return Failed(lookup.error or "failed on-chain", stage="chain", tx_hash=tx_hash)

        logger.warning(
            f"[{label}] No result for {tx_hash} after {poll.attempts} polls "
            f"({poll.errors} unreadable responses), asking secondary source"
        )
        if self.verifier is not None and await self.verifier.lookup(tx_hash) is True:
            logger.info(f"[{label}] Secondary source confirms {tx_hash}")
            return Confirmed(tx_hash, result=result, via_secondary=True)

        logger.error(f"[{label}] Outcome of {tx_hash} is unknown, manual reconciliation required")
        return Indeterminate(tx_hash, result=result)

    async def reconcile(self, tx_hash: str) -> SubmissionOutcome:
        """Resolve a previously indeterminate transaction without resubmitting.

        One primary lookup, then the secondary source. Either source reporting
        a definite failure yields Failed.

        :param tx_hash: Recorded transaction hash.
        :returns: Confirmed, Failed or Indeterminate.
        """
        try:
            lookup = await self.client.get_transaction(tx_hash)
        except Exception as e:
            logger.warning(f"[reconcile] Primary lookup of {tx_hash} failed: {e}")
            lookup = None

        if lookup is not None and lookup.status is TxStatus.SUCCESS:
            return Confirmed(tx_hash)
        if lookup is not None and lookup.status is TxStatus.FAILED:
            return Failed(lookup.error or "failed on-chain", stage="chain", tx_hash=tx_hash)

        if self.verifier is not None:
            found = await self.verifier.lookup(tx_hash)
            if found is True:
                return Confirmed(tx_hash, via_secondary=True)
            if found is False:
                return Failed("failed on-chain (secondary source)", stage="chain", tx_hash=tx_hash)

        return Indeterminate(tx_hash)

    async def read(self, call: ContractCall) -> Any:
        """Run a view call through the client.

        :param call: Contract invocation.
        :returns: Decoded return value.
        :raises LedgerSimulationError: If the contract rejected the call.
        :raises LedgerUnavailable: If the RPC could not be reached or answered garbage.
        """
        try:
            return await self.client.read(call)
        except BobtError:
            raise
        except Exception as e:
            raise LedgerUnavailable(f"{call.describe()} failed: {e}") from e
