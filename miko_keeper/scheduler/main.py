"""
Main entry point for the keeper service.
Wires the collaborators, runs the cycle driver and the status API.
"""

import asyncio
import signal
from typing import Optional

import structlog
import uvicorn

from miko_keeper.api.main import create_app
from miko_keeper.core.config import KeeperSettings, load_settings, TOKEN_2022_PROGRAM
from miko_keeper.core.database import Database
from miko_keeper.core.logging import setup_logging
from miko_keeper.services.birdeye_client import BirdeyeClient
from miko_keeper.services.blockchain.pool_detector import PoolDetector
from miko_keeper.services.blockchain.solana_ledger import SolanaLedgerAccessor, VaultExclusionSource
from miko_keeper.services.distribution.exclusions import ExclusionManager
from miko_keeper.services.distribution.executor import DistributionExecutor
from miko_keeper.services.distribution.planner import DistributionPlanner
from miko_keeper.services.fees.fee_schedule import FeeScheduleEngine
from miko_keeper.services.fees.harvest import HarvestCoordinator
from miko_keeper.services.jupiter_swap import JupiterSwapVenue
from miko_keeper.services.pyth_client import PythClient
from miko_keeper.services.state_store import SqlStateStore
from .keeper_scheduler import KeeperCycleDriver


logger = structlog.get_logger(__name__)


class KeeperMain:
    """Keeper service coordinator."""

    def __init__(self, settings: KeeperSettings):
        self.settings = settings
        self.database: Optional[Database] = None
        self.ledger: Optional[SolanaLedgerAccessor] = None
        self.birdeye: Optional[BirdeyeClient] = None
        self.driver: Optional[KeeperCycleDriver] = None
        self.api_server: Optional[uvicorn.Server] = None
        self.running = False
        self._stopped = False
        self.tasks = []

    async def initialize(self):
        """Initialize keeper components."""
        settings = self.settings
        try:
            logger.info("Initializing keeper service", environment=settings.environment)

            self.database = Database(settings.database_url)
            await self.database.init()
            await self.database.create_tables()
            store = SqlStateStore(self.database)

            self.ledger = SolanaLedgerAccessor(settings)
            await self.ledger.initialize()

            sources = [VaultExclusionSource(self.ledger)]
            if settings.pool_detection_enabled:
                sources.append(PoolDetector(self.ledger.client))
            exclusions = ExclusionManager(
                static_addresses=settings.excluded_addresses,
                system_addresses=[
                    self.ledger.vault_address,
                    self.ledger.keeper_address,
                    self.ledger.holding_account,
                    TOKEN_2022_PROGRAM,
                ],
                sources=sources,
                program_lookup=self.ledger.find_executable_accounts,
            )

            self.birdeye = BirdeyeClient(
                api_key=settings.birdeye_api_key,
                base_url=settings.birdeye_base_url,
                token_decimals=settings.token_decimals,
                holder_limit=settings.holder_fetch_limit,
                timeout=settings.call_timeout_seconds,
            )
            oracle = PythClient(endpoint=settings.pyth_endpoint, timeout=settings.call_timeout_seconds)
            swap_venue = JupiterSwapVenue(
                api_url=settings.jupiter_api_url,
                user_public_key=self.ledger.keeper_address,
                send_transaction=self.ledger.sign_and_send_serialized,
                slippage_bps=settings.slippage_bps,
                timeout=settings.call_timeout_seconds,
            )

            retry = dict(
                call_timeout=settings.call_timeout_seconds,
                max_retries=settings.max_retries,
                retry_delay=settings.retry_delay_seconds,
            )
            fee_engine = FeeScheduleEngine(self.ledger, store, settings.token_mint, **retry)
            await fee_engine.load()

            harvester = HarvestCoordinator(
                self.ledger,
                settings.token_mint,
                settings.harvest_threshold,
                batch_size=settings.harvest_batch_size,
                max_concurrent_batches=settings.max_concurrent_batches,
                **retry,
            )
            planner = DistributionPlanner(
                self.birdeye,
                oracle,
                exclusions,
                store,
                settings.token_mint,
                token_decimals=settings.token_decimals,
                minimum_holder_value_usd=settings.minimum_holder_value_usd,
                fallback_pool_ratio=settings.fallback_pool_ratio,
                **retry,
            )
            executor = DistributionExecutor(
                self.ledger,
                batch_size=settings.distribution_batch_size,
                max_concurrent_batches=settings.max_concurrent_batches,
                **retry,
            )

            self.driver = KeeperCycleDriver(
                settings, self.ledger, store, fee_engine, harvester, swap_venue, planner, executor
            )

            if settings.api_enabled:
                config = uvicorn.Config(
                    create_app(self.driver, self.database),
                    host=settings.api_host,
                    port=settings.api_port,
                    log_config=None,
                )
                self.api_server = uvicorn.Server(config)

            logger.info("Keeper service initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize keeper", error=str(e))
            raise

    async def start(self):
        """Start the keeper service and wait until it stops."""
        logger.info("Starting keeper service")
        self.running = True

        await self.driver.start()
        self.tasks.append(asyncio.create_task(self.driver.wait()))

        if self.api_server is not None:
            self.tasks.append(asyncio.create_task(self.api_server.serve()))
            logger.info("Status API started", host=self.settings.api_host, port=self.settings.api_port)

        logger.info("Keeper service started")
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def stop(self):
        """Stop the keeper service."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping keeper service")
        self.running = False

        if self.driver:
            await self.driver.stop()

        if self.api_server is not None:
            self.api_server.should_exit = True

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        if self.birdeye:
            await self.birdeye.close()
        if self.ledger:
            await self.ledger.close()
        if self.database:
            await self.database.close()

        logger.info("Keeper service stopped")


async def main():
    """Main function to run the keeper service."""
    settings = load_settings()
    setup_logging(settings, settings.log_file)

    keeper = KeeperMain(settings)

    def signal_handler(signum, frame):
        logger.info("Received signal, shutting down", signal=signum)
        asyncio.create_task(keeper.stop())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await keeper.initialize()
        await keeper.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
    except Exception as e:
        logger.error("Keeper service failed", error=str(e))
        raise
    finally:
        await keeper.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
