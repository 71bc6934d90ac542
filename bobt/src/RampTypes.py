"""Ramp entities, statuses and the status transition table.

Amounts are ``Decimal`` at stroop precision. Timestamps are Unix
milliseconds. ``to_dict`` renders the camelCase shape served by the HTTP API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class RampType(str, Enum):
    ON_RAMP = "on_ramp"
    OFF_RAMP = "off_ramp"


class RampStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_RECEIVED = "payment_received"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    PROCESSING = "processing"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


S = RampStatus

# Allowed status changes. Statuses without an entry are terminal.
TRANSITIONS: dict[RampStatus, frozenset[RampStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PAYMENT_RECEIVED, S.CANCELLED, S.EXPIRED}),
    S.PAYMENT_RECEIVED: frozenset({S.PENDING_VERIFICATION, S.FAILED}),
    S.PENDING_VERIFICATION: frozenset({S.VERIFIED, S.FAILED}),
    S.VERIFIED: frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.PENDING_APPROVAL, S.FAILED}),
    S.PENDING_APPROVAL: frozenset({S.COMPLETED, S.FAILED}),
}

TERMINAL_STATUSES = frozenset(s for s in RampStatus if s not in TRANSITIONS)


def can_transition(current: RampStatus, target: RampStatus) -> bool:
    """Check whether ``current -> target`` is in the transition table."""
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: RampStatus) -> bool:
    return status in TERMINAL_STATUSES


def _amount(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


@dataclass(frozen=True)
class TreasuryAccount:
    """A bank account users pay into for on-ramp."""

    bank_name: str
    account_number: str
    account_name: str


@dataclass(frozen=True)
class PaymentInstructions:
    bank_name: str
    account_number: str
    account_name: str
    reference: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "bankName": self.bank_name,
            "accountNumber": self.account_number,
            "accountName": self.account_name,
            "reference": self.reference,
        }


@dataclass(frozen=True)
class RampConfig:
    """Business limits and timing for quotes and requests.

    :ivar min_on_ramp_bob: Smallest on-ramp amount in BOB.
    :ivar max_on_ramp_bob: Largest on-ramp amount in BOB.
    :ivar min_off_ramp_bobt: Smallest off-ramp amount in BOBT.
    :ivar max_off_ramp_bobt: Largest off-ramp amount in BOBT.
    :ivar on_ramp_fee_percent: Fee charged on the BOB input.
    :ivar off_ramp_fee_percent: Fee charged on the BOBT input.
    :ivar quote_validity_minutes: Lifetime of a quote.
    :ivar payment_timeout_minutes: Time a user has to pay before expiry.
    :ivar treasury_accounts: Accounts shown in payment instructions.
    """

    min_on_ramp_bob: Decimal = Decimal("100")
    max_on_ramp_bob: Decimal = Decimal("50000")
    min_off_ramp_bobt: Decimal = Decimal("100")
    max_off_ramp_bobt: Decimal = Decimal("50000")
    on_ramp_fee_percent: Decimal = Decimal("0.5")
    off_ramp_fee_percent: Decimal = Decimal("0.5")
    quote_validity_minutes: int = 15
    payment_timeout_minutes: int = 60
    treasury_accounts: tuple[TreasuryAccount, ...] = ()


@dataclass(frozen=True)
class RampQuote:
    """A non-binding, time-limited price computation."""

    id: str
    type: RampType
    input_amount: Decimal
    input_currency: str
    output_amount: Decimal
    output_currency: str
    exchange_rate: Decimal
    fee_amount: Decimal
    fee_percent: Decimal
    valid_until: int
    created_at: int
    payment_instructions: PaymentInstructions | None = None

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.valid_until

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "inputAmount": _amount(self.input_amount),
            "inputCurrency": self.input_currency,
            "outputAmount": _amount(self.output_amount),
            "outputCurrency": self.output_currency,
            "exchangeRate": _amount(self.exchange_rate),
            "feeAmount": _amount(self.fee_amount),
            "feePercent": _amount(self.fee_percent),
            "validUntil": self.valid_until,
            "createdAt": self.created_at,
        }
        if self.payment_instructions is not None:
            data["paymentInstructions"] = self.payment_instructions.to_dict()
        return data


@dataclass
class RampRequest:
    """The persisted unit of work for one ramp operation.

    Mutated only by :class:`~bobt.src.RampStateMachine.RampStateMachine`
    through the store's compare-and-swap update.
    """

    id: str
    type: RampType
    status: RampStatus
    user_address: str
    bob_amount: Decimal
    bobt_amount: Decimal
    exchange_rate: Decimal
    fee_amount: Decimal
    created_at: int
    updated_at: int
    expires_at: int
    bank_reference: str | None = None
    user_bank_account: str | None = None
    user_bank_name: str | None = None
    tx_hash: str | None = None
    proposal_id: str | None = None
    completed_at: int | None = None
    verified_by: str | None = None
    notes: str | None = None
    history: list[tuple[RampStatus, int]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "userAddress": self.user_address,
            "bobAmount": _amount(self.bob_amount),
            "bobtAmount": _amount(self.bobt_amount),
            "exchangeRate": _amount(self.exchange_rate),
            "feeAmount": _amount(self.fee_amount),
            "bankReference": self.bank_reference,
            "userBankAccount": self.user_bank_account,
            "userBankName": self.user_bank_name,
            "txHash": self.tx_hash,
            "proposalId": self.proposal_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "expiresAt": self.expires_at,
            "completedAt": self.completed_at,
            "verifiedBy": self.verified_by,
            "notes": self.notes,
        }
