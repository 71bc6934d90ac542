"""
RampAPI: FastAPI application exposing prices, quotes and ramp requests.

Every response uses the ``{"success": bool, "data" | "error": ...}``
envelope. Errors from :mod:`bobt.src.errors` are mapped to HTTP status
codes in one place; anything unexpected is logged with its traceback and
answered with a generic message.

Operator endpoints require the ``X-Admin-Token`` header when an admin
token is configured. Test endpoints are only mounted when enabled.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .DepositVerifier import SimulatedDepositVerifier
from .errors import (
    AggregationFailed,
    BobtError,
    LedgerIndeterminate,
    LedgerSimulationError,
    LedgerSubmitFailed,
    LedgerUnavailable,
    NotRequestOwner,
    RequestNotFound,
    TransitionRejected,
    ValidationError,
)
from .ExchangeQuote import ExchangeQuote
from .OracleUpdater import OracleUpdater
from .PriceService import PriceService
from .RampStateMachine import RampStateMachine
from .RampTypes import RampRequest, RampType
from .schemas import (
    CancelRequest,
    CompleteRequest,
    FailRequest,
    OffRampCreateRequest,
    OffRampQuoteRequest,
    OnRampCreateRequest,
    OnRampQuoteRequest,
    RequestIdBody,
    VerifyPaymentRequest,
)

logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[BobtError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotRequestOwner, status.HTTP_403_FORBIDDEN),
    (RequestNotFound, status.HTTP_404_NOT_FOUND),
    (TransitionRejected, status.HTTP_409_CONFLICT),
    (LedgerSimulationError, status.HTTP_502_BAD_GATEWAY),
    (LedgerSubmitFailed, status.HTTP_502_BAD_GATEWAY),
    (AggregationFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
    (LedgerUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (LedgerIndeterminate, status.HTTP_202_ACCEPTED),
]


def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def fail(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_machine(request: Request) -> RampStateMachine:
    return request.app.state.machine


def get_prices(request: Request) -> PriceService:
    return request.app.state.prices


def get_oracle(request: Request) -> OracleUpdater | None:
    return request.app.state.oracle


def get_deposits(request: Request) -> SimulatedDepositVerifier:
    return request.app.state.deposits


async def require_admin(
    request: Request, x_admin_token: str | None = Header(default=None)
) -> None:
    """Reject operator calls without the configured admin token."""
    expected = request.app.state.admin_token
    if not expected:
        return
    if x_admin_token is None or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def quote_json(quote: ExchangeQuote | None) -> dict[str, Any] | None:
    if quote is None:
        return None
    return {"ask": str(quote.ask), "bid": str(quote.bid), "time": quote.observed_at}


def request_json(machine: RampStateMachine, request: RampRequest) -> dict[str, Any]:
    data = request.to_dict()
    instructions = machine.get_payment_instructions(request)
    if instructions is not None:
        data["paymentInstructions"] = instructions.to_dict()
    return data


# ---------------------------------------------------------------------------
# Public routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/api/price")
async def current_price(prices: PriceService = Depends(get_prices)):
    """Aggregated BOB/USDT rate across the configured exchanges."""
    snapshot = await prices.get_rate()
    rate = snapshot.rate
    return ok({
        "ask": str(rate.ask),
        "bid": str(rate.bid),
        "mid": str(rate.mid),
        "numSources": rate.source_count,
        "sources": list(rate.sources),
        "timestamp": rate.as_of,
        "cached": snapshot.cached,
        "isValid": snapshot.is_valid,
    })


@router.get("/api/price/oracle")
async def oracle_price(oracle: OracleUpdater | None = Depends(get_oracle)):
    """Price currently stored in the on-chain oracle."""
    if oracle is None:
        return fail(status.HTTP_503_SERVICE_UNAVAILABLE, "Oracle is not configured")
    price = await oracle.read_onchain_price()
    if price is None:
        return fail(status.HTTP_404_NOT_FOUND, "Oracle has no price yet")
    return ok({
        "ask": str(price.ask),
        "bid": str(price.bid),
        "mid": str(price.mid),
        "spreadBps": price.spread_bps,
        "numSources": price.num_sources,
        "timestamp": price.timestamp,
    })


@router.get("/api/prices/exchanges")
async def exchange_prices(prices: PriceService = Depends(get_prices)):
    """Per-exchange P2P quotes and the cheapest place to buy USDT."""
    board = await prices.get_exchange_board()
    best = None
    if board.best_buy is not None:
        best = {"exchange": board.best_buy[0], "price": str(board.best_buy[1])}
    return ok({
        "prices": {name: quote_json(q) for name, q in board.prices.items()},
        "bestBuy": best,
        "timestamp": board.timestamp,
        "cached": board.cached,
        "stale": board.stale,
    })


@router.post("/api/quote/on-ramp")
async def on_ramp_quote(body: OnRampQuoteRequest, machine: RampStateMachine = Depends(get_machine)):
    quote = await machine.create_on_ramp_quote(body.bob_amount)
    return ok(quote.to_dict())


@router.post("/api/quote/off-ramp")
async def off_ramp_quote(body: OffRampQuoteRequest, machine: RampStateMachine = Depends(get_machine)):
    quote = await machine.create_off_ramp_quote(body.bobt_amount)
    return ok(quote.to_dict())


@router.get("/api/quote/{quote_id}")
async def get_quote(quote_id: str, machine: RampStateMachine = Depends(get_machine)):
    quote = await machine.get_quote(quote_id)
    if quote is None:
        return fail(status.HTTP_404_NOT_FOUND, "Quote not found or expired")
    return ok(quote.to_dict())


@router.post("/api/ramp/on-ramp")
async def create_on_ramp(body: OnRampCreateRequest, machine: RampStateMachine = Depends(get_machine)):
    request = await machine.create_on_ramp_request(body.user_address, body.bob_amount)
    return ok(request_json(machine, request))


@router.post("/api/ramp/off-ramp")
async def create_off_ramp(body: OffRampCreateRequest, machine: RampStateMachine = Depends(get_machine)):
    request = await machine.create_off_ramp_request(
        body.user_address, body.bobt_amount, body.bank_account, body.bank_name
    )
    return ok(request_json(machine, request))


@router.get("/api/ramp/user/{address}")
async def user_requests(address: str, machine: RampStateMachine = Depends(get_machine)):
    requests = await machine.get_user_requests(address)
    return ok([r.to_dict() for r in requests])


@router.get("/api/ramp/{request_id}")
async def get_request(request_id: str, machine: RampStateMachine = Depends(get_machine)):
    request = await machine.get_request(request_id)
    return ok(request_json(machine, request))


@router.post("/api/ramp/{request_id}/cancel")
async def cancel_request(
    request_id: str, body: CancelRequest, machine: RampStateMachine = Depends(get_machine)
):
    request = await machine.cancel_request(request_id, body.user_address)
    return ok(request.to_dict())


@router.get("/api/stats")
async def stats(machine: RampStateMachine = Depends(get_machine)):
    return ok(await machine.get_stats())


# ---------------------------------------------------------------------------
# Operator routes
# ---------------------------------------------------------------------------

admin_router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


@admin_router.get("/pending")
async def pending_requests(machine: RampStateMachine = Depends(get_machine)):
    return ok([r.to_dict() for r in await machine.list_pending()])


@admin_router.get("/all")
async def all_requests(machine: RampStateMachine = Depends(get_machine)):
    return ok([r.to_dict() for r in await machine.list_all()])


@admin_router.post("/verify")
async def verify_payment(body: VerifyPaymentRequest, machine: RampStateMachine = Depends(get_machine)):
    """Confirm a bank payment: received, submitted and verified in one call."""
    request = await machine.confirm_payment(body.request_id, body.bank_reference, body.verified_by)
    return ok(request.to_dict())


@admin_router.post("/process")
async def process_request(body: RequestIdBody, machine: RampStateMachine = Depends(get_machine)):
    """Run the settlement leg (mint or burn proposal) of a verified request."""
    request = await machine.execute_settlement(body.request_id)
    return ok(request.to_dict())


@admin_router.post("/complete")
async def complete_request(body: CompleteRequest, machine: RampStateMachine = Depends(get_machine)):
    request = await machine.mark_completed(body.request_id, body.tx_hash)
    return ok(request.to_dict())


@admin_router.post("/fail")
async def fail_request(body: FailRequest, machine: RampStateMachine = Depends(get_machine)):
    request = await machine.mark_failed(body.request_id, body.reason)
    return ok(request.to_dict())


@admin_router.post("/reconcile")
async def reconcile_request(body: RequestIdBody, machine: RampStateMachine = Depends(get_machine)):
    request = await machine.reconcile_settlement(body.request_id)
    return ok(request.to_dict())


# ---------------------------------------------------------------------------
# Test routes (simulated bank)
# ---------------------------------------------------------------------------

test_router = APIRouter(prefix="/api/test")


@test_router.post("/simulate-deposit")
async def simulate_deposit(
    body: RequestIdBody,
    machine: RampStateMachine = Depends(get_machine),
    deposits: SimulatedDepositVerifier = Depends(get_deposits),
):
    request = await machine.get_request(body.request_id)
    if request.type is not RampType.ON_RAMP or not request.bank_reference:
        raise ValidationError("Only on-ramp requests take bank deposits")
    deposit = deposits.simulate_deposit(request.bank_reference, request.bob_amount)
    return ok(deposit.to_dict())


@test_router.post("/auto-verify")
async def auto_verify(
    body: RequestIdBody,
    machine: RampStateMachine = Depends(get_machine),
    deposits: SimulatedDepositVerifier = Depends(get_deposits),
):
    request = await machine.auto_verify(body.request_id, deposits)
    return ok(request.to_dict())


@test_router.get("/deposits")
async def list_deposits(deposits: SimulatedDepositVerifier = Depends(get_deposits)):
    return ok([d.to_dict() for d in deposits.list_deposits()])


@test_router.post("/clear-deposits")
async def clear_deposits(deposits: SimulatedDepositVerifier = Depends(get_deposits)):
    return ok({"cleared": deposits.clear_deposits()})


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


async def handle_bobt_error(request: Request, exc: BobtError) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            if isinstance(exc, LedgerIndeterminate):
                logger.warning(f"{request.url.path}: {exc}")
                return fail(status_code, str(exc), txHash=exc.tx_hash)
            if status_code >= 500:
                logger.error(f"{request.url.path}: {exc}")
            return fail(status_code, str(exc))
    logger.exception(f"{request.url.path}: unhandled {type(exc).__name__}", exc_info=exc)
    return fail(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal error")


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.debug(f"{request.url.path}: invalid body: {exc.errors()}")
    return fail(status.HTTP_400_BAD_REQUEST, "Invalid request body")


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return fail(exc.status_code, str(exc.detail))


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.url.path}: unexpected error", exc_info=exc)
    return fail(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal error")


def create_app(
    machine: RampStateMachine,
    prices: PriceService,
    oracle: OracleUpdater | None = None,
    deposits: SimulatedDepositVerifier | None = None,
    admin_token: str | None = None,
    enable_test_endpoints: bool = False,
    lifespan: Any = None,
) -> FastAPI:
    """Build the FastAPI application around already constructed services.

    :param machine: Ramp state machine.
    :param prices: Price service for the price endpoints.
    :param oracle: Oracle updater for the on-chain price read.
    :param deposits: Simulated bank used by the test endpoints.
    :param admin_token: Token required on operator endpoints (None disables).
    :param enable_test_endpoints: Mount ``/api/test/*``.
    :param lifespan: Optional lifespan context manager.
    :returns: FastAPI app.
    """
    app = FastAPI(
        title="BOBT Ramp Service",
        description="BOB/BOBT on-ramp and off-ramp with an on-chain price oracle.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.machine = machine
    app.state.prices = prices
    app.state.oracle = oracle
    app.state.deposits = deposits or SimulatedDepositVerifier()
    app.state.admin_token = admin_token

    app.add_exception_handler(BobtError, handle_bobt_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_unexpected)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(router, tags=["Ramp"])
    app.include_router(admin_router, tags=["Admin"])
    if enable_test_endpoints:
        logger.warning("Test endpoints enabled: /api/test/*")
        app.include_router(test_router, tags=["Test"])

    return app
