"""Config: service settings loaded from environment variables.

.. code-block:: python

    config = load_config()
    for problem in config.validate():
        logger.warning(problem)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping

from .errors import ConfigurationError
from .fetchers.criptoya import DEFAULT_BASE_URL as CRIPTOYA_BASE_URL
from .RampTypes import RampConfig, TreasuryAccount
from .SorobanLedgerClient import NETWORKS

# Predeployed contract ids based on the network.
DEFAULT_CONTRACTS: dict[str, dict[str, str | None]] = {
    "testnet": {
        "oracle": "CBNL5SYNKPCKVESILEX457DL4RRE6NAUPWRKYO4WI2AOV733NRM2WAMI",
        "token": "CDWJIAIGSQBDKIGM22LOVX2FSP5R4K2FRF4FBIG3FZBPM2OH5IIJX65C",
        "treasury": "CBPSP452DQ5HEXID2JFGBUWZ3MODTEV43T7UO7YG5QYA2LY4FARBQOZV",
    },
    "mainnet": {"oracle": None, "token": None, "treasury": None},
}

DEFAULT_SOURCES = ("binance", "bybit", "bitget")


@dataclass(frozen=True)
class NetworkConfig:
    network: str = "testnet"
    rpc_url: str | None = None
    horizon_url: str = ""
    network_passphrase: str = ""
    oracle_contract_id: str | None = None
    token_contract_id: str | None = None
    treasury_contract_id: str | None = None
    secret_key: str = field(default="", repr=False)


@dataclass(frozen=True)
class PriceConfig:
    """Exchange sources, sanity band and cache lifetimes (seconds)."""

    criptoya_base_url: str = CRIPTOYA_BASE_URL
    sources: tuple[str, ...] = DEFAULT_SOURCES
    fetch_timeout: float = 10.0
    max_parallel: int = 3
    price_min: Decimal = Decimal("5")
    price_max: Decimal = Decimal("15")
    cache_ttl: float = 30.0
    board_ttl: float = 60.0
    quote_max_age: float = 3600.0
    oracle_max_age: float = 600.0
    min_exchanges: int = 1


@dataclass(frozen=True)
class ServiceConfig:
    confirm_interval: float = 1.0
    confirm_attempts: int = 30
    oracle_period: float = 300.0
    sweep_period: float = 60.0
    host: str = "0.0.0.0"
    port: int = 3002
    admin_token: str | None = field(default=None, repr=False)
    enable_test_endpoints: bool = False


@dataclass(frozen=True)
class Config:
    """Complete service configuration."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    prices: PriceConfig = field(default_factory=PriceConfig)
    ramp: RampConfig = field(default_factory=RampConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)

    def validate(self) -> list[str]:
        """List problems that leave parts of the service unusable.

        The service still starts with these; affected operations fail with
        :class:`~bobt.src.errors.ConfigurationError`.

        :returns: Human-readable problems, empty when fully configured.
        """
        problems = []
        if not self.network.secret_key:
            problems.append("STELLAR_SECRET_KEY is required for ledger writes")
        if not self.network.rpc_url:
            problems.append(f"STELLAR_RPC_URL is required on {self.network.network}")
        if not self.network.oracle_contract_id:
            problems.append("ORACLE_CONTRACT_ID is not set")
        if not self.network.token_contract_id:
            problems.append("TOKEN_CONTRACT_ID is not set")
        if not self.network.treasury_contract_id:
            problems.append("TREASURY_CONTRACT_ID is not set")
        if not self.ramp.treasury_accounts:
            problems.append("At least one treasury account is required")
        if not self.service.admin_token:
            problems.append("ADMIN_TOKEN is not set; operator endpoints are unprotected")
        return problems


def _str(env: Mapping[str, str], key: str, default: str | None = None) -> str | None:
    value = env.get(key)
    return value if value else default


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from None


def _decimal(env: Mapping[str, str], key: str, default: str) -> Decimal:
    value = env.get(key) or default
    try:
        return Decimal(value)
    except InvalidOperation:
        raise ConfigurationError(f"{key} must be a decimal number, got {value!r}") from None


def _bool(env: Mapping[str, str], key: str) -> bool:
    return (env.get(key) or "").strip().lower() in ("1", "true", "yes", "on")


def load_config(env: Mapping[str, str] | None = None) -> Config:
    """Build the configuration from environment variables.

    :param env: Mapping to read from (default: ``os.environ``).
    :returns: Config.
    :raises ValueError: If STELLAR_NETWORK is not testnet or mainnet.
    :raises ConfigurationError: If a numeric setting cannot be parsed.
    """
    env = os.environ if env is None else env

    network_name = (_str(env, "STELLAR_NETWORK", "testnet") or "testnet").lower()
    if network_name not in NETWORKS:
        raise ValueError(f"Unknown STELLAR_NETWORK {network_name!r}. Available: {list(NETWORKS)}")
    rpc_url, horizon_url, passphrase = NETWORKS[network_name]
    contracts = DEFAULT_CONTRACTS[network_name]

    network = NetworkConfig(
        network=network_name,
        rpc_url=_str(env, "STELLAR_RPC_URL", rpc_url),
        horizon_url=_str(env, "STELLAR_HORIZON_URL", horizon_url) or horizon_url,
        network_passphrase=_str(env, "STELLAR_NETWORK_PASSPHRASE", passphrase) or passphrase,
        oracle_contract_id=_str(env, "ORACLE_CONTRACT_ID", contracts["oracle"]),
        token_contract_id=_str(env, "TOKEN_CONTRACT_ID", contracts["token"]),
        treasury_contract_id=_str(env, "TREASURY_CONTRACT_ID", contracts["treasury"]),
        secret_key=_str(env, "STELLAR_SECRET_KEY", "") or "",
    )

    sources_str = _str(env, "SOURCES", ",".join(DEFAULT_SOURCES)) or ""
    prices = PriceConfig(
        criptoya_base_url=_str(env, "CRIPTOYA_BASE_URL", CRIPTOYA_BASE_URL) or CRIPTOYA_BASE_URL,
        sources=tuple(s.strip().lower() for s in sources_str.split(",") if s.strip()),
        fetch_timeout=_float(env, "FETCH_TIMEOUT", 10.0),
        max_parallel=_int(env, "MAX_PARALLEL_FETCHES", 3),
        price_min=_decimal(env, "PRICE_MIN", "5"),
        price_max=_decimal(env, "PRICE_MAX", "15"),
        cache_ttl=_float(env, "PRICE_CACHE_TTL", 30.0),
        board_ttl=_float(env, "EXCHANGE_BOARD_TTL", 60.0),
        quote_max_age=_float(env, "QUOTE_MAX_AGE", 3600.0),
        oracle_max_age=_float(env, "ORACLE_MAX_AGE", 600.0),
        min_exchanges=_int(env, "MIN_EXCHANGES", 1),
    )

    treasury = TreasuryAccount(
        bank_name=_str(env, "TREASURY_BANK_NAME", "Banco Unión") or "Banco Unión",
        account_number=_str(env, "TREASURY_BANK_ACCOUNT", "1234567890") or "1234567890",
        account_name=_str(env, "TREASURY_ACCOUNT_NAME", "BOBT Treasury") or "BOBT Treasury",
    )
    ramp = RampConfig(
        min_on_ramp_bob=_decimal(env, "MIN_ON_RAMP_BOB", "100"),
        max_on_ramp_bob=_decimal(env, "MAX_ON_RAMP_BOB", "50000"),
        min_off_ramp_bobt=_decimal(env, "MIN_OFF_RAMP_BOBT", "100"),
        max_off_ramp_bobt=_decimal(env, "MAX_OFF_RAMP_BOBT", "50000"),
        on_ramp_fee_percent=_decimal(env, "ON_RAMP_FEE_PERCENT", "0.5"),
        off_ramp_fee_percent=_decimal(env, "OFF_RAMP_FEE_PERCENT", "0.5"),
        quote_validity_minutes=_int(env, "QUOTE_VALIDITY_MINUTES", 15),
        payment_timeout_minutes=_int(env, "PAYMENT_TIMEOUT_MINUTES", 60),
        treasury_accounts=(treasury,),
    )

    service = ServiceConfig(
        confirm_interval=_float(env, "CONFIRM_INTERVAL", 1.0),
        confirm_attempts=_int(env, "CONFIRM_ATTEMPTS", 30),
        oracle_period=_float(env, "ORACLE_PERIOD", 300.0),
        sweep_period=_float(env, "SWEEP_PERIOD", 60.0),
        host=_str(env, "HOST", "0.0.0.0") or "0.0.0.0",
        port=_int(env, "PORT", 3002),
        admin_token=_str(env, "ADMIN_TOKEN"),
        enable_test_endpoints=_bool(env, "ENABLE_TEST_ENDPOINTS"),
    )

    return Config(network=network, prices=prices, ramp=ramp, service=service)
