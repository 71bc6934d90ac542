#!/usr/bin/env python3
"""BOBT Ramp Service.

Serves the BOB/BOBT ramp API, keeps the on-chain oracle fed with P2P
exchange prices and expires unpaid requests.

Configured with environment variables (see bobt/src/Config.py); CLI args
take precedence.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from .src.BobtService import BobtService
from .src.Config import Config, load_config
from .src.errors import BobtError, LedgerUnavailable
from .src.fetchers import get_available_fetchers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply CLI flags on top of the environment configuration.

    :param config: Configuration loaded from the environment.
    :param args: Parsed arguments.
    :returns: Updated configuration.
    """
    if args.sources:
        sources = tuple(s.strip().lower() for s in args.sources.split(",") if s.strip())
        config = replace(config, prices=replace(config.prices, sources=sources))
    if args.rpc_url:
        config = replace(config, network=replace(config.network, rpc_url=args.rpc_url))
    if args.command == "serve":
        service = config.service
        if args.host:
            service = replace(service, host=args.host)
        if args.port:
            service = replace(service, port=args.port)
        if args.oracle_period:
            service = replace(service, oracle_period=args.oracle_period)
        config = replace(config, service=service)
    return config


def log_config(config: Config) -> None:
    logger.info("=" * 60)
    logger.info("BOBT Ramp Service")
    logger.info("=" * 60)
    logger.info(f"Network:           {config.network.network}")
    logger.info(f"RPC:               {config.network.rpc_url}")
    logger.info(f"Horizon:           {config.network.horizon_url}")
    logger.info(f"Oracle Contract:   {config.network.oracle_contract_id}")
    logger.info(f"Token Contract:    {config.network.token_contract_id}")
    logger.info(f"Treasury Contract: {config.network.treasury_contract_id}")
    logger.info(f"Sources:           {', '.join(config.prices.sources)}")
    logger.info(f"Min Exchanges:     {config.prices.min_exchanges}")
    logger.info(f"Fees:              on-ramp {config.ramp.on_ramp_fee_percent}%, "
                f"off-ramp {config.ramp.off_ramp_fee_percent}%")
    logger.info("=" * 60)
    for problem in config.validate():
        logger.warning(f"Config: {problem}")


async def update_prices(service: BobtService) -> int:
    """Run one oracle push.

    :returns: Process exit code.
    """
    if service.oracle is None:
        logger.error("Oracle is not configured (RPC URL and ORACLE_CONTRACT_ID required)")
        return 1
    try:
        result = await service.oracle.update()
    finally:
        await service.shutdown()
    if result.success:
        logger.info(f"Oracle updated: {result.tx_hash}")
        return 0
    logger.error(f"Oracle update did not succeed: {result.skipped or result.outcome}")
    return 1


async def check_operator(service: BobtService) -> int:
    if service.oracle is None:
        logger.error("Oracle is not configured (RPC URL and ORACLE_CONTRACT_ID required)")
        return 1
    try:
        authorized = await service.oracle.check_operator()
    except LedgerUnavailable as e:
        logger.error(f"Cannot reach the ledger: {e}")
        return 1
    finally:
        await service.shutdown()
    logger.info(f"{service.oracle.operator} is {'an' if authorized else 'NOT an'} oracle operator")
    return 0 if authorized else 1


async def run(config: Config, command: str) -> int:
    """Build the service inside the event loop and run one command."""
    service = BobtService(config)
    if command == "serve":
        await service.serve()
        return 0
    if command == "update-prices":
        return await update_prices(service)
    return await check_operator(service)


def main() -> None:
    """Main entry point for the BOBT ramp service CLI."""
    available_sources = get_available_fetchers()

    parser = argparse.ArgumentParser(
        description="BOBT Ramp Service: BOB/BOBT ramp API and price oracle feeder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # Serve the API with the oracle and expiry loops
  python -m bobt.main serve --port 3002

  # Push prices to the oracle once
  python -m bobt.main update-prices

  # Check that the operator key may write to the oracle
  python -m bobt.main check-operator

Environment variables (CLI args take precedence):
  STELLAR_NETWORK, STELLAR_RPC_URL, STELLAR_HORIZON_URL, STELLAR_SECRET_KEY,
  ORACLE_CONTRACT_ID, TOKEN_CONTRACT_ID, TREASURY_CONTRACT_ID, SOURCES,
  MIN_EXCHANGES, ON_RAMP_FEE_PERCENT, OFF_RAMP_FEE_PERCENT, HOST, PORT,
  ADMIN_TOKEN, ENABLE_TEST_ENDPOINTS, etc.
""",
    )
    parser.add_argument(
        "command",
        choices=["serve", "update-prices", "check-operator"],
        help="What to run",
    )
    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
    )
    parser.add_argument("--rpc-url", dest="rpc_url", type=str, help="Soroban RPC URL")
    parser.add_argument("--host", type=str, help="HTTP bind address (serve only)")
    parser.add_argument("--port", type=int, help="HTTP port (serve only)")
    parser.add_argument(
        "--oracle-period",
        dest="oracle_period",
        type=float,
        help="Seconds between oracle pushes (serve only, minimum: 10)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.oracle_period is not None and args.oracle_period < 10:
        parser.error("--oracle-period must be at least 10 seconds")

    try:
        config = apply_overrides(load_config(), args)
    except (ValueError, BobtError) as e:
        parser.error(str(e))

    invalid_sources = [s for s in config.prices.sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    log_config(config)

    try:
        exit_code = asyncio.run(run(config, args.command))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        exit_code = 0
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
