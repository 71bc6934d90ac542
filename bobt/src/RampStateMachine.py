"""RampStateMachine: quotes, ramp requests and their status lifecycle.

Lifecycle::

    pending_payment -> payment_received -> pending_verification -> verified
        -> processing -> [pending_approval] -> completed

with ``cancelled`` / ``expired`` reachable from ``pending_payment`` and
``failed`` from every step after it. Every status change goes through
:meth:`RampStateMachine.transition`, which writes with the store's
compare-and-swap update so a change applies only if the request still holds
a status the transition table allows moving from.

Settlement:
    - on-ramp: token ``admin_mint(operator, user, amount, request_id)``.
      The request id is the contract-side idempotency key; the mint is never
      submitted when ``mint_request_exists(request_id)`` is already true.
    - off-ramp: treasury ``propose_burn(operator, user, amount, request_id)``,
      after which the request waits in ``pending_approval``.

Fees are charged on the input amount. BOBT is 1:1 with BOB, so the market
rate only annotates quotes and requests.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
import uuid
from decimal import Decimal
from typing import Any, Callable

from .DepositVerifier import DepositVerifier
from .errors import (
    ConfigurationError,
    LedgerError,
    LedgerIndeterminate,
    LedgerSimulationError,
    LedgerSubmitFailed,
    NotRequestOwner,
    RequestNotFound,
    TransitionRejected,
    ValidationError,
)
from .ExchangeQuote import quantize_amount, to_stroops
from .LedgerClient import Arg, ContractCall
from .LedgerSubmitter import Confirmed, Failed, LedgerSubmitter, SubmissionOutcome
from .PriceService import PriceService
from .RampStore import RampRepository
from .RampTypes import (
    TRANSITIONS,
    PaymentInstructions,
    RampConfig,
    RampQuote,
    RampRequest,
    RampStatus,
    RampType,
    is_terminal,
)

logger = logging.getLogger(__name__)

BANK_REFERENCE_PREFIX = "BOBT-"
BANK_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
BANK_REFERENCE_LENGTH = 8

# Statuses an operator still has to act on before settlement.
AWAITING_OPERATOR = (
    RampStatus.PENDING_PAYMENT,
    RampStatus.PAYMENT_RECEIVED,
    RampStatus.PENDING_VERIFICATION,
)


def generate_bank_reference() -> str:
    """Generate a payment reference such as ``BOBT-7KQ2M9XA``."""
    suffix = "".join(secrets.choice(BANK_REFERENCE_ALPHABET) for _ in range(BANK_REFERENCE_LENGTH))
    return BANK_REFERENCE_PREFIX + suffix


def compute_fee(amount: Decimal, fee_percent: Decimal) -> tuple[Decimal, Decimal]:
    """Split an input amount into (fee, output).

    Both parts are at stroop precision and always sum to ``amount``.

    :param amount: Input amount.
    :param fee_percent: Fee in percent (0.5 means 0.5%).
    :returns: Tuple of (fee, output).
    """
    amount = quantize_amount(amount)
    fee = quantize_amount(amount * fee_percent / 100)
    return fee, amount - fee


def _predecessors(target: RampStatus) -> frozenset[RampStatus]:
    return frozenset(s for s, allowed in TRANSITIONS.items() if target in allowed)


class RampStateMachine:
    """Owns ramp quotes and requests and every change to them.

    :ivar store: Request and quote repository.
    :ivar prices: Aggregated rate provider.
    :ivar config: Limits, fees and timing.
    :ivar submitter: Ledger pipeline for settlement (None disables it).
    """

    def __init__(
        self,
        store: RampRepository,
        prices: PriceService,
        config: RampConfig | None = None,
        submitter: LedgerSubmitter | None = None,
        token_contract_id: str | None = None,
        treasury_contract_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.prices = prices
        self.config = config or RampConfig()
        self.submitter = submitter
        self.token_contract_id = token_contract_id
        self.treasury_contract_id = treasury_contract_id
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def _validate_amount(self, amount: Decimal, ramp_type: RampType) -> None:
        if ramp_type is RampType.ON_RAMP:
            low, high, unit = self.config.min_on_ramp_bob, self.config.max_on_ramp_bob, "BOB"
        else:
            low, high, unit = self.config.min_off_ramp_bobt, self.config.max_off_ramp_bobt, "BOBT"
        if not amount.is_finite() or amount < low or amount > high:
            raise ValidationError(f"Amount must be between {low} and {high} {unit}")

    async def _current_rate(self) -> Decimal:
        snapshot = await self.prices.get_rate()
        if not snapshot.is_valid:
            logger.warning(f"Quoting with stale price from {snapshot.rate.as_of}")
        return quantize_amount(snapshot.rate.mid)

    def _instructions(self, reference: str) -> PaymentInstructions | None:
        if not self.config.treasury_accounts:
            return None
        treasury = self.config.treasury_accounts[0]
        return PaymentInstructions(
            bank_name=treasury.bank_name,
            account_number=treasury.account_number,
            account_name=treasury.account_name,
            reference=reference,
        )

    async def create_on_ramp_quote(self, bob_amount: Decimal) -> RampQuote:
        """Quote a BOB -> BOBT conversion.

        :param bob_amount: BOB the user will pay.
        :returns: Stored RampQuote with payment instructions.
        :raises ValidationError: If the amount is out of range.
        :raises AggregationFailed: If no rate has ever been obtained.
        """
        self._validate_amount(bob_amount, RampType.ON_RAMP)
        rate = await self._current_rate()
        fee, output = compute_fee(bob_amount, self.config.on_ramp_fee_percent)
        now = self._now_ms()
        quote = RampQuote(
            id=uuid.uuid4().hex,
            type=RampType.ON_RAMP,
            input_amount=quantize_amount(bob_amount),
            input_currency="BOB",
            output_amount=output,
            output_currency="BOBT",
            exchange_rate=rate,
            fee_amount=fee,
            fee_percent=self.config.on_ramp_fee_percent,
            valid_until=now + self.config.quote_validity_minutes * 60 * 1000,
            created_at=now,
            payment_instructions=self._instructions(generate_bank_reference()),
        )
        return await self.store.create_quote(quote)

    async def create_off_ramp_quote(self, bobt_amount: Decimal) -> RampQuote:
        """Quote a BOBT -> BOB conversion.

        :param bobt_amount: BOBT the user will redeem.
        :returns: Stored RampQuote.
        """
        self._validate_amount(bobt_amount, RampType.OFF_RAMP)
        rate = await self._current_rate()
        fee, output = compute_fee(bobt_amount, self.config.off_ramp_fee_percent)
        now = self._now_ms()
        quote = RampQuote(
            id=uuid.uuid4().hex,
            type=RampType.OFF_RAMP,
            input_amount=quantize_amount(bobt_amount),
            input_currency="BOBT",
            output_amount=output,
            output_currency="BOB",
            exchange_rate=rate,
            fee_amount=fee,
            fee_percent=self.config.off_ramp_fee_percent,
            valid_until=now + self.config.quote_validity_minutes * 60 * 1000,
            created_at=now,
        )
        return await self.store.create_quote(quote)

    async def get_quote(self, quote_id: str) -> RampQuote | None:
        """Get a quote; an expired quote is deleted and reported as absent."""
        quote = await self.store.get_quote(quote_id)
        if quote is None:
            return None
        if quote.is_expired(self._now_ms()):
            await self.store.delete_quote(quote_id)
            return None
        return quote

    async def cleanup_expired_quotes(self) -> int:
        return await self.store.cleanup_expired_quotes(self._now_ms())

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_on_ramp_request(self, user_address: str, bob_amount: Decimal) -> RampRequest:
        """Open an on-ramp request awaiting the user's bank payment.

        :param user_address: Wallet that will receive BOBT.
        :param bob_amount: BOB the user will pay.
        :returns: The stored request in ``pending_payment``.
        """
        self._validate_amount(bob_amount, RampType.ON_RAMP)
        rate = await self._current_rate()
        fee, output = compute_fee(bob_amount, self.config.on_ramp_fee_percent)
        now = self._now_ms()
        request = RampRequest(
            id=uuid.uuid4().hex,
            type=RampType.ON_RAMP,
            status=RampStatus.PENDING_PAYMENT,
            user_address=user_address,
            bob_amount=quantize_amount(bob_amount),
            bobt_amount=output,
            exchange_rate=rate,
            fee_amount=fee,
            bank_reference=generate_bank_reference(),
            created_at=now,
            updated_at=now,
            expires_at=now + self.config.payment_timeout_minutes * 60 * 1000,
        )
        created = await self.store.create(request)
        logger.info(
            f"[{created.id}] On-ramp request: {created.bob_amount} BOB -> "
            f"{created.bobt_amount} BOBT for {user_address} ref={created.bank_reference}"
        )
        return created

    async def create_off_ramp_request(
        self, user_address: str, bobt_amount: Decimal, bank_account: str, bank_name: str
    ) -> RampRequest:
        """Open an off-ramp request.

        :param user_address: Wallet redeeming BOBT.
        :param bobt_amount: BOBT to redeem.
        :param bank_account: Account receiving the BOB payout.
        :param bank_name: Bank of that account.
        :returns: The stored request in ``pending_payment``.
        """
        self._validate_amount(bobt_amount, RampType.OFF_RAMP)
        rate = await self._current_rate()
        fee, output = compute_fee(bobt_amount, self.config.off_ramp_fee_percent)
        now = self._now_ms()
        request = RampRequest(
            id=uuid.uuid4().hex,
            type=RampType.OFF_RAMP,
            status=RampStatus.PENDING_PAYMENT,
            user_address=user_address,
            bob_amount=output,
            bobt_amount=quantize_amount(bobt_amount),
            exchange_rate=rate,
            fee_amount=fee,
            user_bank_account=bank_account,
            user_bank_name=bank_name,
            created_at=now,
            updated_at=now,
            expires_at=now + self.config.payment_timeout_minutes * 60 * 1000,
        )
        created = await self.store.create(request)
        logger.info(
            f"[{created.id}] Off-ramp request: {created.bobt_amount} BOBT -> "
            f"{created.bob_amount} BOB for {user_address}"
        )
        return created

    async def get_request(self, request_id: str) -> RampRequest:
        """Get a request.

        :raises RequestNotFound: If the id is unknown.
        """
        request = await self.store.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    async def get_user_requests(self, user_address: str) -> list[RampRequest]:
        return await self.store.list_by_user(user_address)

    async def list_pending(self) -> list[RampRequest]:
        """Requests waiting on payment confirmation by an operator."""
        return await self.store.list_by_status(*AWAITING_OPERATOR)

    async def list_all(self) -> list[RampRequest]:
        requests = await self.store.list_all()
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    def get_payment_instructions(self, request: RampRequest) -> PaymentInstructions | None:
        """Bank transfer details for an on-ramp request, None for off-ramp."""
        if request.type is not RampType.ON_RAMP or not request.bank_reference:
            return None
        return self._instructions(request.bank_reference)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(self, request_id: str, target: RampStatus, **changes: Any) -> RampRequest:
        """Move a request to ``target`` if the transition table allows it.

        :param request_id: Request to move.
        :param target: New status.
        :param changes: Extra fields written in the same atomic update.
        :returns: Updated request.
        :raises RequestNotFound: If the id is unknown.
        :raises TransitionRejected: If the current status cannot move to
            ``target``; the request is left untouched.
        """
        try:
            updated = await self.store.update_if_status(
                request_id, _predecessors(target), target, self._now_ms(), **changes
            )
        except TransitionRejected as e:
            logger.warning(f"[{request_id}] Rejected transition: {e}")
            raise
        logger.info(f"[{request_id}] -> {target.value}")
        return updated

    async def mark_payment_received(
        self, request_id: str, bank_reference: str | None = None
    ) -> RampRequest:
        changes: dict[str, Any] = {}
        if bank_reference:
            changes["bank_reference"] = bank_reference
        return await self.transition(request_id, RampStatus.PAYMENT_RECEIVED, **changes)

    async def submit_for_verification(self, request_id: str) -> RampRequest:
        return await self.transition(request_id, RampStatus.PENDING_VERIFICATION)

    async def verify_request(self, request_id: str, verified_by: str) -> RampRequest:
        return await self.transition(request_id, RampStatus.VERIFIED, verified_by=verified_by)

    async def confirm_payment(
        self, request_id: str, bank_reference: str | None, verified_by: str
    ) -> RampRequest:
        """Operator confirmation: received, submitted and verified in one call.

        Each step is guarded separately, so the request must start in
        ``pending_payment``.
        """
        await self.mark_payment_received(request_id, bank_reference)
        await self.submit_for_verification(request_id)
        return await self.verify_request(request_id, verified_by)

    async def mark_processing(self, request_id: str) -> RampRequest:
        return await self.transition(request_id, RampStatus.PROCESSING)

    async def mark_pending_approval(
        self, request_id: str, proposal_id: str | None, tx_hash: str | None = None
    ) -> RampRequest:
        changes: dict[str, Any] = {"proposal_id": proposal_id}
        if tx_hash:
            changes["tx_hash"] = tx_hash
        return await self.transition(request_id, RampStatus.PENDING_APPROVAL, **changes)

    async def mark_completed(self, request_id: str, tx_hash: str | None) -> RampRequest:
        changes: dict[str, Any] = {"completed_at": self._now_ms()}
        if tx_hash:
            changes["tx_hash"] = tx_hash
        return await self.transition(request_id, RampStatus.COMPLETED, **changes)

    async def mark_failed(self, request_id: str, reason: str) -> RampRequest:
        return await self.transition(request_id, RampStatus.FAILED, notes=reason)

    async def cancel_request(self, request_id: str, user_address: str) -> RampRequest:
        """Cancel on behalf of the request's owner.

        :raises NotRequestOwner: If ``user_address`` does not own the request.
        :raises TransitionRejected: If the request left ``pending_payment``.
        """
        request = await self.get_request(request_id)
        if request.user_address != user_address:
            logger.warning(f"[{request_id}] Cancel attempt by non-owner {user_address}")
            raise NotRequestOwner(request_id)
        return await self.transition(request_id, RampStatus.CANCELLED)

    async def expire_stale(self) -> list[str]:
        """Expire ``pending_payment`` requests whose payment window has passed.

        :returns: Ids of the requests that were expired.
        """
        now = self._now_ms()
        expired: list[str] = []
        for request in await self.store.list_by_status(RampStatus.PENDING_PAYMENT):
            if request.expires_at >= now:
                continue
            try:
                await self.store.update_if_status(
                    request.id, RampStatus.PENDING_PAYMENT, RampStatus.EXPIRED, now
                )
            except TransitionRejected:
                # Payment arrived between the listing and the update.
                continue
            expired.append(request.id)
        if expired:
            logger.info(f"Expired {len(expired)} unpaid requests: {expired}")
        return expired

    async def auto_verify(self, request_id: str, verifier: DepositVerifier) -> RampRequest:
        """Verify an on-ramp request against the deposit verifier.

        :raises ValidationError: If no matching deposit exists.
        """
        request = await self.get_request(request_id)
        if request.type is not RampType.ON_RAMP or not request.bank_reference:
            raise ValidationError("Only on-ramp requests can be verified against deposits")

        check = await verifier.verify_deposit(request.bank_reference, request.bob_amount)
        if not check.verified:
            raise ValidationError(check.message or "Deposit not found")

        logger.info(f"[{request_id}] Deposit {request.bank_reference} verified ({check.amount} BOB)")
        return await self.confirm_payment(request_id, request.bank_reference, "auto-verify")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _require_submitter(self) -> LedgerSubmitter:
        if self.submitter is None:
            raise ConfigurationError("Ledger submission is not configured")
        return self.submitter

    def _mint_call(self, request: RampRequest) -> ContractCall:
        if not self.token_contract_id:
            raise ConfigurationError("TOKEN_CONTRACT_ID is not configured")
        operator = self._require_submitter().client.source_address
        return ContractCall(
            self.token_contract_id,
            "admin_mint",
            (
                Arg.address(operator),
                Arg.address(request.user_address),
                Arg.i128(to_stroops(request.bobt_amount)),
                Arg.string(request.id),
            ),
        )

    def _burn_call(self, request: RampRequest) -> ContractCall:
        if not self.treasury_contract_id:
            raise ConfigurationError("TREASURY_CONTRACT_ID is not configured")
        operator = self._require_submitter().client.source_address
        return ContractCall(
            self.treasury_contract_id,
            "propose_burn",
            (
                Arg.address(operator),
                Arg.address(request.user_address),
                Arg.i128(to_stroops(request.bobt_amount)),
                Arg.string(request.id),
            ),
        )

    async def mint_exists(self, request_id: str) -> bool:
        """Ask the token contract whether a mint for this request id exists.

        :raises LedgerUnavailable: If the RPC could not answer.
        """
        if not self.token_contract_id:
            raise ConfigurationError("TOKEN_CONTRACT_ID is not configured")
        call = ContractCall(self.token_contract_id, "mint_request_exists", (Arg.string(request_id),))
        return bool(await self._require_submitter().read(call))

    async def _mint_exists_or_unknown(self, request_id: str) -> bool | None:
        try:
            return await self.mint_exists(request_id)
        except LedgerError as e:
            logger.warning(f"[{request_id}] Cannot check mint on-chain: {e}")
            return None

    async def execute_settlement(self, request_id: str) -> RampRequest:
        """Run the settlement leg of a verified request.

        Configuration and the on-chain mint lookup are checked while the
        request is still ``verified``, so those failures leave it untouched.

        :returns: The request in ``completed`` (mint) or ``pending_approval``
            (burn proposal).
        :raises TransitionRejected: If the request is not ``verified``.
        :raises ConfigurationError: If a contract id or signing key is missing.
        :raises LedgerUnavailable: If the pre-submission mint lookup failed.
        :raises LedgerSimulationError: If the dry run rejected the call.
        :raises LedgerSubmitFailed: If the call failed; the request is failed.
        :raises LedgerIndeterminate: If the outcome is unknown; the request
            stays ``processing`` with its tx hash recorded.
        """
        submitter = self._require_submitter()
        request = await self.get_request(request_id)
        if request.status is not RampStatus.VERIFIED:
            raise TransitionRejected(request_id, request.status.value, RampStatus.PROCESSING.value)

        on_ramp = request.type is RampType.ON_RAMP
        call = self._mint_call(request) if on_ramp else self._burn_call(request)
        already_minted = on_ramp and await self.mint_exists(request_id)

        request = await self.mark_processing(request_id)
        if already_minted:
            logger.warning(f"[{request_id}] Mint already recorded on-chain, not resubmitting")
            return await self.mark_completed(request_id, request.tx_hash)

        async def record_submission(tx_hash: str, result: Any) -> None:
            changes: dict[str, Any] = {"tx_hash": tx_hash}
            if not on_ramp and result is not None:
                changes["proposal_id"] = str(result)
            await self.store.update_if_status(
                request_id, RampStatus.PROCESSING, None, self._now_ms(), **changes
            )

        outcome = await submitter.submit(call, on_submitted=record_submission)
        return await self._apply_outcome(request, outcome)

    async def _leave_unresolved(self, request_id: str, tx_hash: str | None, result: Any = None) -> None:
        changes: dict[str, Any] = {"notes": "Settlement outcome unknown, reconciliation required"}
        if tx_hash is not None:
            changes["tx_hash"] = tx_hash
        if result is not None:
            changes["proposal_id"] = str(result)
        await self.store.update_if_status(
            request_id, RampStatus.PROCESSING, None, self._now_ms(), **changes
        )

    async def _apply_outcome(self, request: RampRequest, outcome: SubmissionOutcome) -> RampRequest:
        request_id = request.id
        on_ramp = request.type is RampType.ON_RAMP

        if isinstance(outcome, Confirmed):
            if not on_ramp:
                proposal = None if outcome.result is None else str(outcome.result)
                return await self.mark_pending_approval(request_id, proposal, outcome.tx_hash)
            return await self.mark_completed(request_id, outcome.tx_hash)

        if isinstance(outcome, Failed):
            exists = await self._mint_exists_or_unknown(request_id) if on_ramp else False
            if exists:
                # A dry run of a repeated mint fails with "request already exists".
                logger.warning(f"[{request_id}] Submission failed but mint exists on-chain")
                return await self.mark_completed(request_id, outcome.tx_hash or request.tx_hash)
            if exists is None:
                await self._leave_unresolved(request_id, outcome.tx_hash)
                raise LedgerIndeterminate(outcome.tx_hash)
            await self.mark_failed(request_id, f"Settlement failed: {outcome.reason}")
            if outcome.stage == "simulate":
                raise LedgerSimulationError(outcome.reason)
            raise LedgerSubmitFailed(outcome.reason, outcome.tx_hash)

        if on_ramp and await self._mint_exists_or_unknown(request_id):
            return await self.mark_completed(request_id, outcome.tx_hash)
        await self._leave_unresolved(request_id, outcome.tx_hash, None if on_ramp else outcome.result)
        raise LedgerIndeterminate(outcome.tx_hash)

    async def reconcile_settlement(self, request_id: str) -> RampRequest:
        """Resolve a ``processing`` request from its recorded tx hash.

        Never submits a transaction.

        :raises TransitionRejected: If the request is not ``processing``.
        :raises LedgerIndeterminate: If the outcome is still unknown.
        """
        submitter = self._require_submitter()
        request = await self.get_request(request_id)
        if request.status is not RampStatus.PROCESSING:
            raise TransitionRejected(request_id, request.status.value, "reconcile")

        if request.type is RampType.ON_RAMP and await self.mint_exists(request_id):
            logger.info(f"[{request_id}] Reconciled: mint found on-chain")
            return await self.mark_completed(request_id, request.tx_hash)

        if request.tx_hash is None:
            logger.warning(f"[{request_id}] No submission recorded and no mint on-chain")
            return await self.mark_failed(request_id, "Settlement was never submitted")

        outcome = await submitter.reconcile(request.tx_hash)
        if isinstance(outcome, Confirmed):
            logger.info(f"[{request_id}] Reconciled: {outcome.tx_hash} succeeded")
            if request.type is RampType.OFF_RAMP:
                return await self.mark_pending_approval(request_id, request.proposal_id, outcome.tx_hash)
            return await self.mark_completed(request_id, outcome.tx_hash)
        if isinstance(outcome, Failed):
            logger.info(f"[{request_id}] Reconciled: {outcome.tx_hash} failed")
            return await self.mark_failed(request_id, f"Settlement failed: {outcome.reason}")
        raise LedgerIndeterminate(request.tx_hash)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        requests = await self.store.list_all()
        completed = [r for r in requests if r.status is RampStatus.COMPLETED]
        return {
            "totalRequests": len(requests),
            "pendingRequests": sum(1 for r in requests if not is_terminal(r.status)),
            "completedRequests": len(completed),
            "totalOnRampVolume": str(
                sum((r.bob_amount for r in completed if r.type is RampType.ON_RAMP), Decimal(0))
            ),
            "totalOffRampVolume": str(
                sum((r.bobt_amount for r in completed if r.type is RampType.OFF_RAMP), Decimal(0))
            ),
        }
