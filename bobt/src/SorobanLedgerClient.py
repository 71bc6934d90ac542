"""SorobanLedgerClient: LedgerClient backed by a Soroban RPC endpoint."""

from __future__ import annotations

import logging
from typing import Any

from stellar_sdk import (
    Account,
    Keypair,
    Network,
    SorobanServerAsync,
    TransactionBuilder,
    TransactionEnvelope,
    scval,
)
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.soroban_rpc import GetTransactionStatus

from .errors import ConfigurationError, LedgerSimulationError
from .LedgerClient import (
    Arg,
    ContractCall,
    LedgerClient,
    SendResult,
    SendStatus,
    SimulationResult,
    TxLookup,
    TxStatus,
)

logger = logging.getLogger(__name__)

# Default endpoints per network: (rpc_url, horizon_url, passphrase).
NETWORKS: dict[str, tuple[str | None, str, str]] = {
    "testnet": (
        "https://soroban-testnet.stellar.org",
        "https://horizon-testnet.stellar.org",
        Network.TESTNET_NETWORK_PASSPHRASE,
    ),
    "mainnet": (
        None,
        "https://horizon.stellar.org",
        Network.PUBLIC_NETWORK_PASSPHRASE,
    ),
}

# All-zero ed25519 key; used as the source of read-only simulations when no
# operator key is configured.
READ_ONLY_SOURCE = "GAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAWHF"

DEFAULT_BASE_FEE = 100_000
DEFAULT_TX_TIMEOUT = 60


def to_scval(arg: Arg) -> stellar_xdr.SCVal:
    """Convert a typed argument into an SCVal.

    :param arg: Typed argument.
    :returns: stellar_sdk XDR value.
    :raises ValueError: If the argument kind is unknown.
    """
    converters = {
        "address": scval.to_address,
        "i128": scval.to_int128,
        "u64": scval.to_uint64,
        "u32": scval.to_uint32,
        "string": scval.to_string,
        "symbol": scval.to_symbol,
        "bool": scval.to_bool,
    }
    converter = converters.get(arg.kind)
    if converter is None:
        raise ValueError(f"Unsupported argument kind: {arg.kind}")
    return converter(arg.value)


class SorobanLedgerClient(LedgerClient):
    """Ledger client for Soroban smart contracts.

    :ivar rpc_url: Soroban RPC endpoint.
    :ivar network_passphrase: Passphrase of the target network.
    :ivar base_fee: Inclusion fee in stroops before resource fees.
    :ivar tx_timeout: Seconds a built transaction stays valid.
    """

    def __init__(
        self,
        rpc_url: str,
        network_passphrase: str,
        secret_key: str | None = None,
        base_fee: int = DEFAULT_BASE_FEE,
        tx_timeout: int = DEFAULT_TX_TIMEOUT,
        server: SorobanServerAsync | None = None,
    ) -> None:
        """Initialize the client.

        :param rpc_url: Soroban RPC URL.
        :param network_passphrase: Network passphrase used for signing.
        :param secret_key: Operator secret seed (S...). Read-only when omitted.
        :param base_fee: Base fee in stroops.
        :param tx_timeout: Transaction validity window in seconds.
        :param server: Optional pre-built server (for custom HTTP clients).
        """
        self.rpc_url = rpc_url
        self.network_passphrase = network_passphrase
        self.base_fee = base_fee
        self.tx_timeout = tx_timeout
        self.server = server or SorobanServerAsync(rpc_url)
        self._keypair = Keypair.from_secret(secret_key) if secret_key else None

    @property
    def source_address(self) -> str:
        if self._keypair is None:
            raise ConfigurationError("STELLAR_SECRET_KEY is not configured")
        return self._keypair.public_key

    def _builder(self, source: Account, call: ContractCall) -> TransactionEnvelope:
        return (
            TransactionBuilder(source, self.network_passphrase, base_fee=self.base_fee)
            .append_invoke_contract_function_op(
                contract_id=call.contract_id,
                function_name=call.function,
                parameters=[to_scval(arg) for arg in call.args],
            )
            .set_timeout(self.tx_timeout)
            .build()
        )

    async def build(self, call: ContractCall) -> TransactionEnvelope:
        account = await self.server.load_account(self.source_address)
        logger.debug(f"Building {call.describe()} from {self.source_address} seq={account.sequence}")
        return self._builder(account, call)

    async def simulate(self, tx: TransactionEnvelope) -> SimulationResult:
        response = await self.server.simulate_transaction(tx)
        if response.error:
            return SimulationResult(error=response.error)

        result = None
        if response.results:
            result = scval.to_native(stellar_xdr.SCVal.from_xdr(response.results[0].xdr))

        prepared = await self.server.prepare_transaction(tx, response)
        return SimulationResult(result=result, prepared=prepared)

    def sign(self, tx: TransactionEnvelope) -> TransactionEnvelope:
        if self._keypair is None:
            raise ConfigurationError("STELLAR_SECRET_KEY is not configured")
        tx.sign(self._keypair)
        return tx

    def tx_hash(self, tx: TransactionEnvelope) -> str:
        return tx.hash_hex()

    def decode_envelope(self, envelope_xdr: str) -> TransactionEnvelope:
        return TransactionEnvelope.from_xdr(envelope_xdr, self.network_passphrase)

    async def send(self, tx: TransactionEnvelope) -> SendResult:
        response = await self.server.send_transaction(tx)
        status = SendStatus(response.status.value)
        error = response.error_result_xdr if status is SendStatus.ERROR else None
        return SendResult(status=status, tx_hash=response.hash, error=error)

    async def get_transaction(self, tx_hash: str) -> TxLookup:
        response = await self.server.get_transaction(tx_hash)
        if response.status == GetTransactionStatus.SUCCESS:
            return TxLookup(TxStatus.SUCCESS, ledger=response.ledger)
        if response.status == GetTransactionStatus.FAILED:
            return TxLookup(TxStatus.FAILED, ledger=response.ledger, error=response.result_xdr)
        return TxLookup(TxStatus.NOT_FOUND)

    async def read(self, call: ContractCall) -> Any:
        source = Account(
            self._keypair.public_key if self._keypair else READ_ONLY_SOURCE, 0
        )
        tx = self._builder(source, call)
        response = await self.server.simulate_transaction(tx)
        if response.error:
            raise LedgerSimulationError(f"{call.describe()}: {response.error}")
        if not response.results:
            return None
        return scval.to_native(stellar_xdr.SCVal.from_xdr(response.results[0].xdr))

    async def close(self) -> None:
        await self.server.close()
