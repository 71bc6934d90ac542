"""Unit tests for RampStateMachine."""

import itertools
from decimal import Decimal

import pytest

from bobt.src.DepositVerifier import SimulatedDepositVerifier
from bobt.src.errors import (
    ConfigurationError,
    LedgerIndeterminate,
    LedgerSimulationError,
    LedgerSubmitFailed,
    LedgerUnavailable,
    NotRequestOwner,
    RequestNotFound,
    TransitionRejected,
    ValidationError,
)
from bobt.src.LedgerClient import Arg, SendStatus, TxLookup, TxStatus
from bobt.src.RampStateMachine import RampStateMachine, compute_fee, generate_bank_reference
from bobt.src.RampTypes import RampRequest, RampStatus, RampType, can_transition

NOW_MS = 1_700_000_000_000
USER = "GDUSERADDRESS"
OTHER_USER = "GDOTHERUSER"
NOT_FOUND = TxLookup(TxStatus.NOT_FOUND)


async def seed(store, status: RampStatus, ramp_type: RampType = RampType.ON_RAMP,
               request_id: str = "seeded", **fields) -> RampRequest:
    request = RampRequest(
        id=request_id,
        type=ramp_type,
        status=status,
        user_address=USER,
        bob_amount=Decimal("1000"),
        bobt_amount=Decimal("995"),
        exchange_rate=Decimal("6.93"),
        fee_amount=Decimal("5"),
        created_at=NOW_MS,
        updated_at=NOW_MS,
        expires_at=NOW_MS + 3_600_000,
        bank_reference="BOBT-SEEDED01",
        **fields,
    )
    return await store.create(request)


class TestHelpers:
    """Test fee and reference helpers."""

    def test_fee_on_input(self) -> None:
        """0.5% of 1000 BOB is 5, leaving 995."""
        assert compute_fee(Decimal("1000"), Decimal("0.5")) == (Decimal("5"), Decimal("995"))

    def test_fee_plus_output_is_input(self) -> None:
        """Rounding never creates or loses value."""
        amount = Decimal("100.00001")
        fee, output = compute_fee(amount, Decimal("0.5"))
        assert fee == Decimal("0.5000001")
        assert fee + output == amount

    def test_bank_reference_format(self) -> None:
        """References are BOBT- plus 8 uppercase alphanumerics."""
        reference = generate_bank_reference()
        assert reference.startswith("BOBT-")
        suffix = reference[len("BOBT-"):]
        assert len(suffix) == 8
        assert suffix.isalnum() and suffix == suffix.upper()


class TestQuotes:
    """Test quote creation and expiry."""

    @pytest.mark.asyncio
    async def test_on_ramp_quote(self, machine) -> None:
        """An on-ramp quote charges the fee on BOB and carries instructions."""
        quote = await machine.create_on_ramp_quote(Decimal("1000"))
        assert quote.output_amount == Decimal("995")
        assert quote.fee_amount == Decimal("5")
        assert quote.output_currency == "BOBT"
        assert quote.exchange_rate == Decimal("6.9366667")
        assert quote.valid_until == NOW_MS + 15 * 60 * 1000
        assert quote.payment_instructions.bank_name == "Banco Unión"
        assert quote.payment_instructions.reference.startswith("BOBT-")

    @pytest.mark.asyncio
    async def test_off_ramp_quote(self, machine) -> None:
        """An off-ramp quote charges the fee on BOBT."""
        quote = await machine.create_off_ramp_quote(Decimal("200"))
        assert quote.output_amount == Decimal("199")
        assert quote.output_currency == "BOB"
        assert quote.payment_instructions is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["99.99", "50000.01", "NaN"])
    async def test_amount_out_of_range(self, machine, amount) -> None:
        """Amounts outside the limits are rejected."""
        with pytest.raises(ValidationError, match="Amount must be between 100 and 50000 BOB"):
            await machine.create_on_ramp_quote(Decimal(amount))

    @pytest.mark.asyncio
    async def test_limits_inclusive(self, machine) -> None:
        """The bounds themselves are accepted."""
        await machine.create_on_ramp_quote(Decimal("100"))
        await machine.create_off_ramp_quote(Decimal("50000"))

    @pytest.mark.asyncio
    async def test_quote_expiry(self, machine, clock) -> None:
        """A quote is readable until valid_until and gone after it."""
        quote = await machine.create_on_ramp_quote(Decimal("1000"))
        clock.advance(15 * 60)
        assert await machine.get_quote(quote.id) == quote
        clock.advance(1)
        assert await machine.get_quote(quote.id) is None
        assert await machine.store.get_quote(quote.id) is None


class TestRequests:
    """Test request creation and lookup."""

    @pytest.mark.asyncio
    async def test_on_ramp_request(self, machine) -> None:
        """A new on-ramp request awaits payment with a bank reference."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        assert request.status is RampStatus.PENDING_PAYMENT
        assert request.bob_amount == Decimal("1000")
        assert request.bobt_amount == Decimal("995")
        assert request.bank_reference.startswith("BOBT-")
        assert request.expires_at == NOW_MS + 60 * 60 * 1000
        instructions = machine.get_payment_instructions(request)
        assert instructions.reference == request.bank_reference

    @pytest.mark.asyncio
    async def test_off_ramp_request(self, machine) -> None:
        """An off-ramp request pays out BOB minus the fee."""
        request = await machine.create_off_ramp_request(USER, Decimal("500"), "987654", "BNB")
        assert request.bob_amount == Decimal("497.5")
        assert request.user_bank_account == "987654"
        assert machine.get_payment_instructions(request) is None

    @pytest.mark.asyncio
    async def test_unknown_request(self, machine) -> None:
        """Unknown ids raise RequestNotFound."""
        with pytest.raises(RequestNotFound):
            await machine.get_request("missing")

    @pytest.mark.asyncio
    async def test_user_requests_and_pending(self, machine, store) -> None:
        """Listings filter by owner and by operator-pending status."""
        mine = await machine.create_on_ramp_request(USER, Decimal("1000"))
        await machine.create_on_ramp_request(OTHER_USER, Decimal("1000"))
        await seed(store, RampStatus.VERIFIED)

        assert {r.id for r in await machine.get_user_requests(USER)} == {mine.id, "seeded"}
        assert len(await machine.list_pending()) == 2
        assert len(await machine.list_all()) == 3


class TestTransitions:
    """Test the transition table is enforced."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "current,target", list(itertools.product(list(RampStatus), list(RampStatus)))
    )
    async def test_table(self, machine, store, clock, current, target) -> None:
        """Allowed pairs apply and bump updated_at, every other pair is rejected and changes nothing."""
        await seed(store, current)
        clock.advance(5)
        if can_transition(current, target):
            updated = await machine.transition("seeded", target)
            assert updated.status is target
            assert updated.updated_at == NOW_MS + 5_000
        else:
            with pytest.raises(TransitionRejected):
                await machine.transition("seeded", target)
            assert (await store.get("seeded")).status is current
            assert (await store.get("seeded")).updated_at == NOW_MS

    @pytest.mark.asyncio
    async def test_confirm_payment(self, machine) -> None:
        """Confirmation walks through payment_received and pending_verification."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        verified = await machine.confirm_payment(request.id, "BOBT-BANKREF1", "admin")
        assert verified.status is RampStatus.VERIFIED
        assert verified.verified_by == "admin"
        assert verified.bank_reference == "BOBT-BANKREF1"
        assert [s for s, _ in verified.history] == [
            RampStatus.PENDING_PAYMENT,
            RampStatus.PAYMENT_RECEIVED,
            RampStatus.PENDING_VERIFICATION,
            RampStatus.VERIFIED,
        ]

    @pytest.mark.asyncio
    async def test_confirm_twice_rejected(self, machine) -> None:
        """A second confirmation of the same request is rejected."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        await machine.confirm_payment(request.id, None, "admin")
        with pytest.raises(TransitionRejected):
            await machine.confirm_payment(request.id, None, "admin")

    @pytest.mark.asyncio
    async def test_mark_failed_records_reason(self, machine, store) -> None:
        """Failure reasons are stored in notes."""
        await seed(store, RampStatus.VERIFIED)
        failed = await machine.mark_failed("seeded", "Bank transfer bounced")
        assert failed.status is RampStatus.FAILED
        assert failed.notes == "Bank transfer bounced"


class TestCancelAndExpire:
    """Test user cancellation and the expiry sweep."""

    @pytest.mark.asyncio
    async def test_owner_cancels(self, machine) -> None:
        """The owner may cancel while payment is pending."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        cancelled = await machine.cancel_request(request.id, USER)
        assert cancelled.status is RampStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_non_owner_rejected(self, machine) -> None:
        """Another address cannot cancel."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        with pytest.raises(NotRequestOwner):
            await machine.cancel_request(request.id, OTHER_USER)
        assert (await machine.get_request(request.id)).status is RampStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_cancel_after_payment_rejected(self, machine, store) -> None:
        """Cancellation is only possible from pending_payment."""
        await seed(store, RampStatus.PAYMENT_RECEIVED)
        with pytest.raises(TransitionRejected):
            await machine.cancel_request("seeded", USER)

    @pytest.mark.asyncio
    async def test_expire_stale(self, machine, store, clock) -> None:
        """Unpaid requests past expires_at expire; others are untouched."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        await store.create(RampRequest(
            id="verified-old",
            type=RampType.ON_RAMP,
            status=RampStatus.VERIFIED,
            user_address=USER,
            bob_amount=Decimal("1000"),
            bobt_amount=Decimal("995"),
            exchange_rate=Decimal("6.93"),
            fee_amount=Decimal("5"),
            created_at=NOW_MS,
            updated_at=NOW_MS,
            expires_at=NOW_MS,
        ))

        clock.advance(60 * 60)
        assert await machine.expire_stale() == []

        clock.advance(1)
        assert await machine.expire_stale() == [request.id]
        assert (await machine.get_request(request.id)).status is RampStatus.EXPIRED
        assert (await machine.get_request("verified-old")).status is RampStatus.VERIFIED


class TestAutoVerify:
    """Test deposit-based verification."""

    @pytest.mark.asyncio
    async def test_matching_deposit(self, machine, clock) -> None:
        """A deposit with the reference and amount verifies the request."""
        deposits = SimulatedDepositVerifier(clock)
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        deposits.simulate_deposit(request.bank_reference.lower(), Decimal("1000"))

        verified = await machine.auto_verify(request.id, deposits)
        assert verified.status is RampStatus.VERIFIED
        assert verified.verified_by == "auto-verify"

    @pytest.mark.asyncio
    async def test_short_deposit(self, machine, clock) -> None:
        """A deposit below the expected amount does not verify."""
        deposits = SimulatedDepositVerifier(clock)
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        deposits.simulate_deposit(request.bank_reference, Decimal("999"))

        with pytest.raises(ValidationError, match="less than expected"):
            await machine.auto_verify(request.id, deposits)
        assert (await machine.get_request(request.id)).status is RampStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_no_deposit(self, machine, clock) -> None:
        """Without a deposit verification fails."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        with pytest.raises(ValidationError, match="No deposit found"):
            await machine.auto_verify(request.id, SimulatedDepositVerifier(clock))


async def verified_on_ramp(machine) -> RampRequest:
    request = await machine.create_on_ramp_request(USER, Decimal("1000"))
    return await machine.confirm_payment(request.id, None, "admin")


class TestSettlement:
    """Test minting and burn proposals."""

    @pytest.mark.asyncio
    async def test_on_ramp_end_to_end(self, machine, ledger) -> None:
        """1000 BOB at 0.5% mints 995 BOBT and completes."""
        request = await verified_on_ramp(machine)
        ledger.reads["mint_request_exists"] = False

        completed = await machine.execute_settlement(request.id)

        assert completed.status is RampStatus.COMPLETED
        assert completed.tx_hash == "tx1"
        assert completed.completed_at == NOW_MS
        call = ledger.built[0]
        assert call.contract_id == "CTOKEN"
        assert call.function == "admin_mint"
        assert call.args == (
            Arg.address("GOPERATOR"),
            Arg.address(USER),
            Arg.i128(9_950_000_000),
            Arg.string(request.id),
        )

    @pytest.mark.asyncio
    async def test_settlement_requires_verified(self, machine, ledger) -> None:
        """An unpaid request cannot be settled."""
        request = await machine.create_on_ramp_request(USER, Decimal("1000"))
        with pytest.raises(TransitionRejected):
            await machine.execute_settlement(request.id)
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_existing_mint_not_resubmitted(self, machine, ledger) -> None:
        """A mint already on-chain completes the request without sending."""
        request = await verified_on_ramp(machine)
        ledger.reads["mint_request_exists"] = True

        completed = await machine.execute_settlement(request.id)
        assert completed.status is RampStatus.COMPLETED
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_secondary_confirmation_settles_once(self, machine, ledger, verifier) -> None:
        """A poll timeout confirmed by the secondary source completes; a retry is rejected."""
        request = await verified_on_ramp(machine)
        ledger.lookups = [NOT_FOUND]
        verifier.result = True

        completed = await machine.execute_settlement(request.id)
        assert completed.status is RampStatus.COMPLETED
        assert ledger.sent == ["tx1"]

        with pytest.raises(TransitionRejected):
            await machine.execute_settlement(request.id)
        assert ledger.sent == ["tx1"]

    @pytest.mark.asyncio
    async def test_simulation_failure(self, machine, ledger) -> None:
        """A rejected dry run fails the request and raises."""
        request = await verified_on_ramp(machine)
        ledger.simulation_error = "Error(Contract, #6)"

        with pytest.raises(LedgerSimulationError):
            await machine.execute_settlement(request.id)
        failed = await machine.get_request(request.id)
        assert failed.status is RampStatus.FAILED
        assert failed.notes == "Settlement failed: Error(Contract, #6)"

    @pytest.mark.asyncio
    async def test_send_failure(self, machine, ledger) -> None:
        """A rejected submission fails the request."""
        request = await verified_on_ramp(machine)
        ledger.send_status = SendStatus.ERROR

        with pytest.raises(LedgerSubmitFailed):
            await machine.execute_settlement(request.id)
        assert (await machine.get_request(request.id)).status is RampStatus.FAILED

    @pytest.mark.asyncio
    async def test_failure_with_existing_mint_completes(self, machine, ledger) -> None:
        """If the mint turns out to exist after a failure the request completes."""
        request = await verified_on_ramp(machine)
        answers = iter([False, True])
        ledger.reads["mint_request_exists"] = lambda call: next(answers)
        ledger.send_status = SendStatus.ERROR

        completed = await machine.execute_settlement(request.id)
        assert completed.status is RampStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_indeterminate_then_reconcile(self, machine, ledger, verifier) -> None:
        """An unknown outcome keeps processing with the hash; reconcile resolves it."""
        request = await verified_on_ramp(machine)
        ledger.lookups = [NOT_FOUND]
        verifier.result = None

        with pytest.raises(LedgerIndeterminate) as exc_info:
            await machine.execute_settlement(request.id)
        assert exc_info.value.tx_hash == "tx1"
        pending = await machine.get_request(request.id)
        assert pending.status is RampStatus.PROCESSING
        assert pending.tx_hash == "tx1"

        with pytest.raises(LedgerIndeterminate):
            await machine.reconcile_settlement(request.id)

        ledger.lookups = [TxLookup(TxStatus.SUCCESS, ledger=9)]
        ledger.lookup_calls = 0
        reconciled = await machine.reconcile_settlement(request.id)
        assert reconciled.status is RampStatus.COMPLETED
        assert reconciled.tx_hash == "tx1"
        assert ledger.sent == ["tx1"]

    @pytest.mark.asyncio
    async def test_reconcile_failed_transaction(self, machine, store, ledger) -> None:
        """A recorded hash that failed on-chain fails the request."""
        await seed(store, RampStatus.PROCESSING, tx_hash="deadbeef")
        ledger.lookups = [TxLookup(TxStatus.FAILED, error="trapped")]
        failed = await machine.reconcile_settlement("seeded")
        assert failed.status is RampStatus.FAILED

    @pytest.mark.asyncio
    async def test_reconcile_never_submitted(self, machine, store) -> None:
        """No hash and no mint means the settlement never happened."""
        await seed(store, RampStatus.PROCESSING)
        failed = await machine.reconcile_settlement("seeded")
        assert failed.status is RampStatus.FAILED
        assert failed.notes == "Settlement was never submitted"

    @pytest.mark.asyncio
    async def test_reconcile_requires_processing(self, machine, store) -> None:
        """Only processing requests can be reconciled."""
        await seed(store, RampStatus.VERIFIED)
        with pytest.raises(TransitionRejected):
            await machine.reconcile_settlement("seeded")

    @pytest.mark.asyncio
    async def test_off_ramp_burn_proposal(self, machine, ledger) -> None:
        """An off-ramp proposes a burn and waits for approval."""
        request = await machine.create_off_ramp_request(USER, Decimal("500"), "987654", "BNB")
        await machine.confirm_payment(request.id, None, "admin")
        ledger.simulation_result = 7

        proposed = await machine.execute_settlement(request.id)
        assert proposed.status is RampStatus.PENDING_APPROVAL
        assert proposed.proposal_id == "7"
        assert proposed.tx_hash == "tx1"
        assert ledger.built[0].function == "propose_burn"
        assert ledger.built[0].contract_id == "CTREASURY"

        completed = await machine.mark_completed(request.id, None)
        assert completed.status is RampStatus.COMPLETED
        assert completed.tx_hash == "tx1"

    @pytest.mark.asyncio
    async def test_missing_token_contract_leaves_request_verified(
        self, store, price_service, ramp_config, submitter, clock, ledger
    ) -> None:
        """A configuration error is raised before the request moves to processing."""
        machine = RampStateMachine(
            store, price_service, ramp_config, submitter=submitter,
            token_contract_id=None, treasury_contract_id="CTREASURY", clock=clock,
        )
        request = await verified_on_ramp(machine)

        with pytest.raises(ConfigurationError):
            await machine.execute_settlement(request.id)
        assert (await machine.get_request(request.id)).status is RampStatus.VERIFIED
        assert ledger.built == []

    @pytest.mark.asyncio
    async def test_mint_lookup_error_leaves_request_verified(self, machine, ledger) -> None:
        """An unreachable RPC before submission is typed and leaves the request untouched."""
        request = await verified_on_ramp(machine)

        def rpc_down(call):
            raise ConnectionError("rpc down")

        ledger.reads["mint_request_exists"] = rpc_down

        with pytest.raises(LedgerUnavailable, match="rpc down"):
            await machine.execute_settlement(request.id)
        assert (await machine.get_request(request.id)).status is RampStatus.VERIFIED
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_unknown_mint_after_failure_stays_processing(self, machine, ledger) -> None:
        """If the mint cannot be checked after a failure the request awaits reconciliation."""
        request = await verified_on_ramp(machine)
        answers = iter([False])

        def flaky(call):
            try:
                return next(answers)
            except StopIteration:
                raise ConnectionError("rpc down") from None

        ledger.reads["mint_request_exists"] = flaky
        ledger.send_status = SendStatus.ERROR

        with pytest.raises(LedgerIndeterminate):
            await machine.execute_settlement(request.id)
        pending = await machine.get_request(request.id)
        assert pending.status is RampStatus.PROCESSING
        assert pending.tx_hash == "tx1"

    @pytest.mark.asyncio
    async def test_burn_proposal_survives_reconcile(self, machine, ledger, verifier) -> None:
        """The proposal id from an unconfirmed burn is kept for the operator."""
        request = await machine.create_off_ramp_request(USER, Decimal("500"), "987654", "BNB")
        await machine.confirm_payment(request.id, None, "admin")
        ledger.simulation_result = 42
        ledger.lookups = [NOT_FOUND]
        verifier.result = None

        with pytest.raises(LedgerIndeterminate):
            await machine.execute_settlement(request.id)
        pending = await machine.get_request(request.id)
        assert pending.status is RampStatus.PROCESSING
        assert pending.proposal_id == "42"

        ledger.lookups = [TxLookup(TxStatus.SUCCESS, ledger=9)]
        ledger.lookup_calls = 0
        reconciled = await machine.reconcile_settlement(request.id)
        assert reconciled.status is RampStatus.PENDING_APPROVAL
        assert reconciled.proposal_id == "42"
        assert reconciled.tx_hash == "tx1"


class TestStats:
    """Test aggregate statistics."""

    @pytest.mark.asyncio
    async def test_stats(self, machine, ledger) -> None:
        """Volumes count completed requests only."""
        request = await verified_on_ramp(machine)
        await machine.execute_settlement(request.id)
        await machine.create_on_ramp_request(USER, Decimal("200"))

        stats = await machine.get_stats()
        assert stats["totalRequests"] == 2
        assert stats["pendingRequests"] == 1
        assert stats["completedRequests"] == 1
        assert Decimal(stats["totalOnRampVolume"]) == Decimal("1000")
        assert Decimal(stats["totalOffRampVolume"]) == 0
