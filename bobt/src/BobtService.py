"""BobtService: Process-wide wiring of the price, ledger and ramp components.

Architecture:
    - One shared FetchCoordinator over the configured CriptoYa sources
    - PriceService (quote annotation and price display) and OracleUpdater
      (on-chain push) read the same coordinator
    - One ledger client, submitter and Horizon verifier for every write
    - RampStateMachine over an in-memory store
    - FastAPI app served by uvicorn; its lifespan starts and stops the
      periodic oracle push and the expiry sweep
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI

from .Config import Config
from .DepositVerifier import SimulatedDepositVerifier
from .FetchCoordinator import FetchCoordinator
from .fetchers import BaseFetcher, get_available_fetchers, get_fetcher
from .HorizonVerifier import HorizonVerifier
from .LedgerClient import LedgerClient
from .LedgerSubmitter import LedgerSubmitter
from .OracleUpdater import OracleUpdater
from .PriceAggregator import PriceAggregator
from .PriceService import PriceService
from .RampAPI import create_app
from .RampStateMachine import RampStateMachine
from .RampStore import InMemoryRampStore, RampRepository
from .SorobanLedgerClient import SorobanLedgerClient

logger = logging.getLogger(__name__)


class BobtService:
    """Owns every long-lived component and the periodic tasks.

    :ivar config: Service configuration.
    :ivar coordinator: Exchange fan-out.
    :ivar prices: Aggregated rate provider.
    :ivar ledger: Ledger client, None without an RPC URL.
    :ivar submitter: Submission pipeline, None without a ledger client.
    :ivar oracle: Oracle updater, None without an oracle contract.
    :ivar machine: Ramp state machine.
    """

    def __init__(
        self,
        config: Config,
        ledger: LedgerClient | None = None,
        store: RampRepository | None = None,
    ) -> None:
        """Build every component from the configuration.

        :param config: Loaded configuration.
        :param ledger: Ledger client override (a Soroban client is built
            from the configuration when omitted).
        :param store: Repository override (in-memory when omitted).
        :raises ValueError: If a configured source is unknown.
        """
        self.config = config
        prices_cfg = config.prices

        available = get_available_fetchers()
        invalid = [s for s in prices_cfg.sources if s not in available]
        if invalid:
            raise ValueError(f"Unknown sources: {invalid}. Available: {available}")

        fetchers: dict[str, BaseFetcher] = {
            source: get_fetcher(
                source,
                base_url=prices_cfg.criptoya_base_url,
                timeout=prices_cfg.fetch_timeout,
                price_min=prices_cfg.price_min,
                price_max=prices_cfg.price_max,
            )
            for source in prices_cfg.sources
        }
        self.coordinator = FetchCoordinator(
            fetchers, fetch_timeout=prices_cfg.fetch_timeout, max_parallel=prices_cfg.max_parallel
        )
        self.prices = PriceService(
            self.coordinator,
            PriceAggregator(min_sources=1),
            cache_ttl=prices_cfg.cache_ttl,
            board_ttl=prices_cfg.board_ttl,
            max_age=prices_cfg.quote_max_age,
        )

        network = config.network
        if ledger is None and network.rpc_url:
            ledger = SorobanLedgerClient(
                network.rpc_url, network.network_passphrase, network.secret_key or None
            )
        self.ledger = ledger

        self.verifier = HorizonVerifier(network.horizon_url) if network.horizon_url else None
        self.submitter: LedgerSubmitter | None = None
        self.oracle: OracleUpdater | None = None
        if self.ledger is not None:
            self.submitter = LedgerSubmitter(
                self.ledger,
                self.verifier,
                poll_interval=config.service.confirm_interval,
                max_attempts=config.service.confirm_attempts,
            )
            if network.oracle_contract_id:
                self.oracle = OracleUpdater(
                    self.coordinator,
                    self.submitter,
                    network.oracle_contract_id,
                    min_exchanges=prices_cfg.min_exchanges,
                    max_age=prices_cfg.oracle_max_age,
                )

        self.deposits = SimulatedDepositVerifier()
        self.machine = RampStateMachine(
            store or InMemoryRampStore(),
            self.prices,
            config.ramp,
            submitter=self.submitter,
            token_contract_id=network.token_contract_id,
            treasury_contract_id=network.treasury_contract_id,
        )
        self._tasks: list[asyncio.Task] = []

    async def run_oracle_loop(self) -> None:
        """Push prices on-chain every ``oracle_period`` seconds."""
        assert self.oracle is not None
        period = self.config.service.oracle_period
        logger.info(f"Starting oracle loop (every {period}s)")
        while True:
            try:
                await self.oracle.update()
            except Exception as e:
                logger.error(f"Oracle update failed: {e}")
            await asyncio.sleep(period)

    async def run_sweep_loop(self) -> None:
        """Expire unpaid requests and drop expired quotes periodically."""
        period = self.config.service.sweep_period
        logger.info(f"Starting expiry sweep (every {period}s)")
        while True:
            try:
                await self.machine.expire_stale()
                await self.machine.cleanup_expired_quotes()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}")
            await asyncio.sleep(period)

    def start_background_tasks(self) -> None:
        self._tasks.append(asyncio.create_task(self.run_sweep_loop(), name="sweep"))
        if self.oracle is not None and self.config.network.secret_key:
            self._tasks.append(asyncio.create_task(self.run_oracle_loop(), name="oracle"))
        else:
            logger.warning("Oracle loop disabled (no oracle contract or signing key)")

    async def shutdown(self) -> None:
        """Cancel periodic tasks and close network clients."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.ledger is not None:
            await self.ledger.close()
        if self.verifier is not None:
            await self.verifier.close()
        await BaseFetcher.close_shared_client()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        self.start_background_tasks()
        try:
            yield
        finally:
            await self.shutdown()

    def create_app(self) -> FastAPI:
        return create_app(
            self.machine,
            self.prices,
            oracle=self.oracle,
            deposits=self.deposits,
            admin_token=self.config.service.admin_token,
            enable_test_endpoints=self.config.service.enable_test_endpoints,
            lifespan=self.lifespan,
        )

    async def serve(self) -> None:
        """Run the HTTP API and the periodic tasks until interrupted."""
        service = self.config.service
        server = uvicorn.Server(
            uvicorn.Config(
                self.create_app(), host=service.host, port=service.port, log_config=None
            )
        )
        logger.info(f"Listening on {service.host}:{service.port}")
        await server.serve()
