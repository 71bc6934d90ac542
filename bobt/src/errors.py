"""Error taxonomy shared by the price, ledger and ramp components.

Network and SDK failures are converted into these types at the boundary of
the component that observed them. The ramp state machine and the HTTP layer
only ever see the classes defined here.
"""

from __future__ import annotations


class BobtError(Exception):
    """Base exception for all BOBT service errors."""

    pass


class ConfigurationError(BobtError):
    """Raised when a required setting (e.g., the operator key) is missing."""

    pass


class ValidationError(BobtError):
    """Raised for bad input (amount out of range, malformed address)."""

    pass


class SourceUnavailable(BobtError):
    """Raised internally when a single exchange cannot be used.

    Never escapes a fetcher: the fetcher logs it and returns None.
    """

    def __init__(self, source: str, reason: str):
        """Initialize the error.

        :param source: Exchange name.
        :param reason: Why the source was excluded.
        """
        self.source = source
        self.reason = reason
        super().__init__(f"[{source}] {reason}")


class AggregationFailed(BobtError):
    """Raised when zero usable sources are available and no fallback exists."""

    pass


class RequestNotFound(BobtError):
    """Raised when a ramp request id is unknown."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} not found")


class NotRequestOwner(BobtError):
    """Raised when a caller acts on a request owned by another address."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} does not belong to caller")


class TransitionRejected(BobtError):
    """Raised when a status change is not allowed from the current status.

    :ivar request_id: Request that was left untouched.
    :ivar current: Status the request actually had.
    :ivar attempted: Status the caller tried to move to.
    """

    def __init__(self, request_id: str, current: str, attempted: str):
        self.request_id = request_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Request {request_id}: cannot move from {current} to {attempted}"
        )


class LedgerError(BobtError):
    """Base class for ledger submission failures."""

    pass


class LedgerSimulationError(LedgerError):
    """Dry-run rejected the call. Nothing was submitted, no fee was spent."""

    pass


class LedgerSubmitFailed(LedgerError):
    """The network rejected the transaction or it failed on-chain."""

    def __init__(self, reason: str, tx_hash: str | None = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(reason)


class LedgerIndeterminate(LedgerError):
    """A transaction was submitted but its outcome could not be confirmed.

    An operator or the reconciliation path must resolve it; the call must not
    be blindly resubmitted.
    """

    def __init__(self, tx_hash: str | None):
        self.tx_hash = tx_hash
        if tx_hash is None:
            super().__init__("Settlement outcome unknown")
        else:
            super().__init__(f"Transaction {tx_hash} outcome unknown")


class LedgerUnavailable(LedgerError):
    """A read against the ledger could not be completed (RPC or network down)."""

    pass
