"""LedgerClient: Abstract base class for smart-contract ledger access.

The submitter, oracle updater and ramp state machine talk to the ledger only
through this interface. :class:`~bobt.src.SorobanLedgerClient.SorobanLedgerClient`
is the production implementation; tests use in-memory fakes.

Contract arguments are described with :class:`Arg` so callers never touch
SDK value types:

.. code-block:: python

    call = ContractCall(
        contract_id=token_id,
        function="admin_mint",
        args=(Arg.address(operator), Arg.address(user), Arg.i128(995_0000000), Arg.string("r1")),
    )
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Arg:
    """A typed contract argument.

    :ivar kind: One of ``address``, ``i128``, ``u64``, ``u32``, ``string``,
        ``symbol``, ``bool``.
    :ivar value: Python value for the argument.
    """

    kind: str
    value: Any

    @classmethod
    def address(cls, value: str) -> Arg:
        return cls("address", value)

    @classmethod
    def i128(cls, value: int) -> Arg:
        return cls("i128", int(value))

    @classmethod
    def u64(cls, value: int) -> Arg:
        return cls("u64", int(value))

    @classmethod
    def u32(cls, value: int) -> Arg:
        return cls("u32", int(value))

    @classmethod
    def string(cls, value: str) -> Arg:
        return cls("string", value)

    @classmethod
    def symbol(cls, value: str) -> Arg:
        return cls("symbol", value)

    @classmethod
    def bool(cls, value: bool) -> Arg:
        return cls("bool", bool(value))


@dataclass(frozen=True)
class ContractCall:
    """One contract function invocation.

    :ivar contract_id: Contract address (C...).
    :ivar function: Function name.
    :ivar args: Ordered typed arguments.
    """

    contract_id: str
    function: str
    args: tuple[Arg, ...] = ()

    def describe(self) -> str:
        """Short label for log lines."""
        return f"{self.function}@{self.contract_id[:8]}"


@dataclass
class SimulationResult:
    """Outcome of a dry run.

    :ivar error: Error message when the dry run failed, else None.
    :ivar result: Return value decoded to native Python, if any.
    :ivar prepared: Transaction with resource footprint and fee applied,
        ready to sign. None on error.
    """

    error: str | None = None
    result: Any = None
    prepared: Any = None

    @property
    def success(self) -> bool:
        return self.error is None


class SendStatus(str, Enum):
    """Acknowledgement returned by the network on submission."""

    PENDING = "PENDING"
    DUPLICATE = "DUPLICATE"
    TRY_AGAIN_LATER = "TRY_AGAIN_LATER"
    ERROR = "ERROR"


@dataclass
class SendResult:
    status: SendStatus
    tx_hash: str
    error: str | None = None

    @property
    def accepted(self) -> bool:
        """True if the network holds the transaction (new or already known)."""
        return self.status in (SendStatus.PENDING, SendStatus.DUPLICATE)


class TxStatus(str, Enum):
    """Confirmation state of a submitted transaction."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class TxLookup:
    """Result of a transaction status query.

    :ivar status: Confirmation state.
    :ivar ledger: Ledger sequence that included the transaction, if known.
    :ivar error: Failure detail when status is FAILED.
    """

    status: TxStatus
    ledger: int | None = None
    error: str | None = None

    @property
    def final(self) -> bool:
        return self.status is not TxStatus.NOT_FOUND


class LedgerClient(ABC):
    """Abstract base class for ledger client implementations.

    Provides the build/simulate/sign/send/status primitives used by
    :class:`~bobt.src.LedgerSubmitter.LedgerSubmitter`, plus a read-only
    call helper for view functions.
    """

    @property
    @abstractmethod
    def source_address(self) -> str:
        """Public address of the operator account that signs transactions.

        :raises ConfigurationError: If no signing key is configured.
        """

    @abstractmethod
    async def build(self, call: ContractCall) -> Any:
        """Build an unsigned transaction invoking ``call``.

        Loads the operator account's current sequence number.

        :param call: Contract invocation.
        :returns: Unsigned transaction.
        """

    @abstractmethod
    async def simulate(self, tx: Any) -> SimulationResult:
        """Dry-run a transaction and prepare it for signing.

        :param tx: Unsigned transaction from :meth:`build`.
        :returns: SimulationResult.
        """

    @abstractmethod
    def sign(self, tx: Any) -> Any:
        """Sign a prepared transaction with the operator key.

        :param tx: Prepared transaction.
        :returns: Signed transaction.
        """

    @abstractmethod
    def tx_hash(self, tx: Any) -> str:
        """Compute the hash of a signed transaction before sending it."""

    @abstractmethod
    def decode_envelope(self, envelope_xdr: str) -> Any:
        """Decode a transaction envelope signed elsewhere (e.g., by a wallet)."""

    @abstractmethod
    async def send(self, tx: Any) -> SendResult:
        """Submit a signed transaction.

        :param tx: Signed transaction.
        :returns: SendResult with the network's acknowledgement.
        """

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> TxLookup:
        """Query a transaction's confirmation state.

        May raise if the response cannot be decoded; callers treat that as
        inconclusive.

        :param tx_hash: Transaction hash (hex).
        :returns: TxLookup.
        """

    @abstractmethod
    async def read(self, call: ContractCall) -> Any:
        """Evaluate a view function by simulation. Nothing is submitted.

        :param call: Contract invocation.
        :returns: Decoded return value.
        :raises LedgerSimulationError: If the simulation fails.
        """

    async def close(self) -> None:
        """Release network resources."""
        return None
