"""DepositVerifier: the "deposit verified" signal for on-ramp payments.

Bank-statement polling is an external collaborator. The state machine only
asks whether a deposit carrying a given reference and at least a given
amount has arrived.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositCheck:
    """Result of a deposit lookup.

    :ivar verified: True if a matching deposit was found.
    :ivar amount: Amount of the matching deposit, if one exists.
    :ivar message: Reason when not verified.
    """

    verified: bool
    amount: Decimal | None = None
    message: str | None = None


@dataclass(frozen=True)
class SimulatedDeposit:
    reference: str
    amount: Decimal
    sender_name: str
    received_at: int

    def to_dict(self) -> dict[str, object]:
        return {
            "reference": self.reference,
            "amount": str(self.amount),
            "senderName": self.sender_name,
            "receivedAt": self.received_at,
        }


class DepositVerifier(ABC):
    """Abstract base class for deposit verification backends."""

    @abstractmethod
    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositCheck:
        """Look for a deposit matching ``reference``.

        :param reference: Payment reference (matched case-insensitively).
        :param expected_amount: Minimum amount the deposit must carry.
        :returns: DepositCheck.
        """


class SimulatedDepositVerifier(DepositVerifier):
    """In-memory verifier fed by the test endpoints."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._deposits: dict[str, SimulatedDeposit] = {}
        self._clock = clock

    def simulate_deposit(
        self, reference: str, amount: Decimal, sender_name: str = "Test User"
    ) -> SimulatedDeposit:
        """Record a deposit as if it appeared on the bank statement."""
        deposit = SimulatedDeposit(
            reference=reference.upper(),
            amount=amount,
            sender_name=sender_name,
            received_at=int(self._clock() * 1000),
        )
        self._deposits[deposit.reference] = deposit
        logger.info(f"[deposits] Simulated deposit {deposit.reference}: {amount} BOB")
        return deposit

    def list_deposits(self) -> list[SimulatedDeposit]:
        return list(self._deposits.values())

    def clear_deposits(self) -> int:
        count = len(self._deposits)
        self._deposits.clear()
        return count

    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositCheck:
        deposit = self._deposits.get(reference.upper())
        if deposit is None:
            return DepositCheck(False, message=f"No deposit found with reference {reference}")
        if deposit.amount < expected_amount:
            return DepositCheck(
                False,
                amount=deposit.amount,
                message=f"Deposit amount {deposit.amount} is less than expected {expected_amount}",
            )
        return DepositCheck(True, amount=deposit.amount)
