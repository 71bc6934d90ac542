"""Tests for the FastAPI ramp application."""

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from stellar_sdk import Keypair

from bobt.src.DepositVerifier import SimulatedDepositVerifier
from bobt.src.LedgerClient import TxLookup, TxStatus
from bobt.src.OracleUpdater import OracleUpdater
from bobt.src.RampAPI import create_app
from bobt.src.RampTypes import RampStatus

ADMIN = {"X-Admin-Token": "s3cret"}


@pytest.fixture
def user() -> str:
    return Keypair.random().public_key


@pytest.fixture
def deposits(clock) -> SimulatedDepositVerifier:
    return SimulatedDepositVerifier(clock)


@pytest.fixture
def app(machine, price_service, deposits):
    return create_app(
        machine,
        price_service,
        deposits=deposits,
        admin_token="s3cret",
        enable_test_endpoints=True,
    )


@pytest_asyncio.fixture
async def client(app):
    """Async test client bound to the app via ASGI transport."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def open_on_ramp(client, user: str, amount: int = 1000) -> dict:
    response = await client.post("/api/ramp/on-ramp", json={"userAddress": user, "bobAmount": amount})
    assert response.status_code == 200
    return response.json()["data"]


class TestHealthAndPrices:
    """Test health and price endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        """/health answers ok."""
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_price(self, client) -> None:
        """The aggregated price is served in the envelope."""
        response = await client.get("/api/price")
        body = response.json()
        assert body["success"] is True
        assert body["data"]["numSources"] == 3
        assert Decimal(body["data"]["bid"]) == Decimal("6.91")
        assert body["data"]["isValid"] is True

    @pytest.mark.asyncio
    async def test_price_unavailable(self, client, fetchers) -> None:
        """No rate at all is a 503, not an invented price."""
        for fetcher in fetchers.values():
            fetcher.quote = None
        response = await client.get("/api/price")
        assert response.status_code == 503
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_exchange_board(self, client) -> None:
        """Per-exchange prices include the best buy."""
        data = (await client.get("/api/prices/exchanges")).json()["data"]
        assert set(data["prices"]) == {"binance", "bybit", "bitget"}
        assert data["bestBuy"] == {"exchange": "bitget", "price": "6.95"}

    @pytest.mark.asyncio
    async def test_oracle_not_configured(self, client) -> None:
        """Without an oracle the on-chain price is unavailable."""
        assert (await client.get("/api/price/oracle")).status_code == 503

    @pytest.mark.asyncio
    async def test_oracle_price(self, machine, price_service, coordinator, submitter, ledger) -> None:
        """The stored on-chain price is decoded from stroops."""
        ledger.reads["get_price"] = {
            "ask": 69_600_000, "bid": 69_000_000, "mid": 69_300_000,
            "spread_bps": 86, "num_sources": 3, "timestamp": 1_700_000_010,
        }
        oracle = OracleUpdater(coordinator, submitter, "CORACLE")
        app = create_app(machine, price_service, oracle=oracle)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            data = (await ac.get("/api/price/oracle")).json()["data"]
        assert Decimal(data["ask"]) == Decimal("6.96")
        assert data["numSources"] == 3


class TestQuotes:
    """Test quote endpoints."""

    @pytest.mark.asyncio
    async def test_on_ramp_quote(self, client) -> None:
        """Amounts are returned as exact decimal strings."""
        response = await client.post("/api/quote/on-ramp", json={"bobAmount": 1000})
        data = response.json()["data"]
        assert Decimal(data["outputAmount"]) == Decimal("995")
        assert Decimal(data["feeAmount"]) == Decimal("5")
        assert data["paymentInstructions"]["bankName"] == "Banco Unión"

        fetched = await client.get(f"/api/quote/{data['id']}")
        assert fetched.json()["data"]["id"] == data["id"]

    @pytest.mark.asyncio
    async def test_out_of_range(self, client) -> None:
        """An amount below the minimum is a 400."""
        response = await client.post("/api/quote/off-ramp", json={"bobtAmount": 5})
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Amount must be between 100 and 50000 BOBT",
        }

    @pytest.mark.asyncio
    async def test_invalid_body(self, client) -> None:
        """A malformed body is a 400 in the envelope."""
        response = await client.post("/api/quote/on-ramp", json={"bobAmount": "lots"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"

    @pytest.mark.asyncio
    async def test_unknown_quote(self, client) -> None:
        """Unknown or expired quotes are a 404."""
        assert (await client.get("/api/quote/nope")).status_code == 404


class TestRampRequests:
    """Test request endpoints."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, client, user) -> None:
        """A created on-ramp can be read back with payment instructions."""
        data = await open_on_ramp(client, user)
        assert data["status"] == RampStatus.PENDING_PAYMENT.value
        assert data["paymentInstructions"]["reference"] == data["bankReference"]

        fetched = (await client.get(f"/api/ramp/{data['id']}")).json()["data"]
        assert fetched["id"] == data["id"]
        listed = (await client.get(f"/api/ramp/user/{user}")).json()["data"]
        assert [r["id"] for r in listed] == [data["id"]]

    @pytest.mark.asyncio
    async def test_invalid_address(self, client) -> None:
        """Malformed wallet addresses are rejected."""
        response = await client.post(
            "/api/ramp/on-ramp", json={"userAddress": "not-an-address", "bobAmount": 1000}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_off_ramp(self, client, user) -> None:
        """Off-ramp requests carry the payout bank details."""
        response = await client.post(
            "/api/ramp/off-ramp",
            json={"userAddress": user, "bobtAmount": 500, "bankAccount": "987654", "bankName": "BNB"},
        )
        data = response.json()["data"]
        assert Decimal(data["bobAmount"]) == Decimal("497.5")
        assert "paymentInstructions" not in data

    @pytest.mark.asyncio
    async def test_unknown_request(self, client) -> None:
        """Unknown ids are a 404."""
        response = await client.get("/api/ramp/missing")
        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_cancel(self, client, user) -> None:
        """Owners cancel, others get 403, a repeat is a 409."""
        data = await open_on_ramp(client, user)
        url = f"/api/ramp/{data['id']}/cancel"

        other = Keypair.random().public_key
        assert (await client.post(url, json={"userAddress": other})).status_code == 403

        response = await client.post(url, json={"userAddress": user})
        assert response.json()["data"]["status"] == "cancelled"
        assert (await client.post(url, json={"userAddress": user})).status_code == 409

    @pytest.mark.asyncio
    async def test_stats(self, client, user) -> None:
        """Stats count requests."""
        await open_on_ramp(client, user)
        data = (await client.get("/api/stats")).json()["data"]
        assert data["totalRequests"] == 1
        assert data["pendingRequests"] == 1


class TestAdmin:
    """Test operator endpoints."""

    @pytest.mark.asyncio
    async def test_requires_token(self, client) -> None:
        """Missing or wrong tokens are a 401."""
        assert (await client.get("/api/admin/pending")).status_code == 401
        response = await client.get("/api/admin/pending", headers={"X-Admin-Token": "wrong"})
        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Unauthorized"}

    @pytest.mark.asyncio
    async def test_verify_and_process(self, client, user, ledger) -> None:
        """Verification then processing mints and completes the request."""
        data = await open_on_ramp(client, user)
        assert len((await client.get("/api/admin/pending", headers=ADMIN)).json()["data"]) == 1

        verified = await client.post(
            "/api/admin/verify",
            json={"requestId": data["id"], "bankReference": data["bankReference"], "verifiedBy": "ops"},
            headers=ADMIN,
        )
        assert verified.json()["data"]["status"] == "verified"

        processed = await client.post("/api/admin/process", json={"requestId": data["id"]}, headers=ADMIN)
        assert processed.status_code == 200
        assert processed.json()["data"]["status"] == "completed"
        assert processed.json()["data"]["txHash"] == "tx1"

    @pytest.mark.asyncio
    async def test_process_unverified_conflict(self, client, user) -> None:
        """Settling an unpaid request is a 409."""
        data = await open_on_ramp(client, user)
        response = await client.post("/api/admin/process", json={"requestId": data["id"]}, headers=ADMIN)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_process_indeterminate(self, client, user, ledger, verifier) -> None:
        """An unknown outcome is a 202 carrying the transaction hash."""
        data = await open_on_ramp(client, user)
        await client.post(
            "/api/admin/verify",
            json={"requestId": data["id"], "bankReference": data["bankReference"], "verifiedBy": "ops"},
            headers=ADMIN,
        )
        ledger.lookups = [TxLookup(TxStatus.NOT_FOUND)]
        verifier.result = None

        response = await client.post("/api/admin/process", json={"requestId": data["id"]}, headers=ADMIN)
        assert response.status_code == 202
        assert response.json()["txHash"] == "tx1"

    @pytest.mark.asyncio
    async def test_simulation_failure_is_502(self, client, user, ledger) -> None:
        """A rejected dry run is a 502."""
        data = await open_on_ramp(client, user)
        await client.post(
            "/api/admin/verify",
            json={"requestId": data["id"], "bankReference": data["bankReference"], "verifiedBy": "ops"},
            headers=ADMIN,
        )
        ledger.simulation_error = "Error(Contract, #6)"
        response = await client.post("/api/admin/process", json={"requestId": data["id"]}, headers=ADMIN)
        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_rpc_down_is_503(self, client, user, ledger) -> None:
        """An unreachable RPC is a 503 and the request stays verified."""
        data = await open_on_ramp(client, user)
        await client.post(
            "/api/admin/verify",
            json={"requestId": data["id"], "bankReference": data["bankReference"], "verifiedBy": "ops"},
            headers=ADMIN,
        )

        def rpc_down(call):
            raise ConnectionError("rpc down")

        ledger.reads["mint_request_exists"] = rpc_down
        response = await client.post("/api/admin/process", json={"requestId": data["id"]}, headers=ADMIN)
        assert response.status_code == 503
        assert response.json()["success"] is False
        assert (await client.get(f"/api/ramp/{data['id']}")).json()["data"]["status"] == "verified"

    @pytest.mark.asyncio
    async def test_fail(self, client, user) -> None:
        """Operators can fail a request with a reason."""
        data = await open_on_ramp(client, user)
        await client.post(
            "/api/admin/verify",
            json={"requestId": data["id"], "bankReference": data["bankReference"], "verifiedBy": "ops"},
            headers=ADMIN,
        )
        response = await client.post(
            "/api/admin/fail", json={"requestId": data["id"], "reason": "chargeback"}, headers=ADMIN
        )
        assert response.json()["data"]["status"] == "failed"
        assert response.json()["data"]["notes"] == "chargeback"


class TestSimulatedBank:
    """Test the test-only deposit endpoints."""

    @pytest.mark.asyncio
    async def test_deposit_and_auto_verify(self, client, user, deposits) -> None:
        """A simulated deposit lets auto-verify move the request to verified."""
        data = await open_on_ramp(client, user)
        await client.post("/api/test/simulate-deposit", json={"requestId": data["id"]})
        assert len(deposits.list_deposits()) == 1

        response = await client.post("/api/test/auto-verify", json={"requestId": data["id"]})
        assert response.json()["data"]["status"] == "verified"
        assert response.json()["data"]["verifiedBy"] == "auto-verify"

        listed = (await client.get("/api/test/deposits")).json()["data"]
        assert listed[0]["reference"] == data["bankReference"]
        cleared = (await client.post("/api/test/clear-deposits")).json()["data"]
        assert cleared == {"cleared": 1}

    @pytest.mark.asyncio
    async def test_auto_verify_without_deposit(self, client, user) -> None:
        """Without a deposit auto-verify is a 400."""
        data = await open_on_ramp(client, user)
        response = await client.post("/api/test/auto-verify", json={"requestId": data["id"]})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, machine, price_service) -> None:
        """Test endpoints are not mounted unless enabled."""
        app = create_app(machine, price_service)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/api/test/clear-deposits")
        assert response.status_code == 404
