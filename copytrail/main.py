"""
Main entry point for the copytrail bot.
Run with: python -m copytrail.main
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional
from redis.exceptions import RedisError
import structlog

from .config import Config, load_config, LAMPORTS_PER_SOL
from .engine import StrategyEngine
from .executor import ExecutionClient
from .graduation import GraduationDetector
from .pnl import PnLCalculator
from .price_resolver import PriceResolver
from .price_sources import BondingCurveSource, AggregatorQuoteSource, MarketDataSource
from .rpc import RPCClient
from .signals import RedisSignalSource
from .store import PositionStore, InMemoryPositionStore, RedisPositionStore
from .strategy import CopyStrategy
from .trade_logger import TradeLogger
from .wallet import Wallet

logger = structlog.get_logger(__name__)

SIGNAL_RETRY_DELAY_SECONDS = 5.0


def configure_logging(level: str = "INFO") -> None:
    """JSON log lines, filtered by level."""
    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def log_event(event: str, payload: Dict[str, Any]) -> None:
    """Default notification sink: engine events go to the log."""
    logger.info("engine_event", event=event, **payload)


class CopytrailBot:
    """Wires the components together and runs the loops."""

    def __init__(self, config: Config):
        self.config = config
        self.wallet: Optional[Wallet] = None
        self.rpc: Optional[RPCClient] = None
        self.resolver: Optional[PriceResolver] = None
        self.executor: Optional[ExecutionClient] = None
        self.store: Optional[PositionStore] = None
        self.signals: Optional[RedisSignalSource] = None
        self.engine: Optional[StrategyEngine] = None
        self.running = False

    async def initialize(self) -> None:
        """Initialize all components."""
        logger.info("initializing_copytrail", mode="LIVE" if self.config.is_live else "PAPER")

        if self.config.wallet_private_key:
            self.wallet = Wallet.from_base58(self.config.wallet_private_key)
        self.rpc = RPCClient(self.config)

        if self.wallet:
            balance = await self.rpc.get_balance(self.wallet.pubkey)
            balance_sol = balance / LAMPORTS_PER_SOL
            logger.info("wallet_balance", address=self.wallet.address, balance_sol=f"{balance_sol:.4f}")
            if balance_sol < 0.05 and self.config.is_live:
                logger.warning("low_balance", message="Balance is very low, may not be able to execute trades")

        self.resolver = PriceResolver([
            BondingCurveSource(self.rpc),
            AggregatorQuoteSource(self.config),
            MarketDataSource(self.config),
        ])
        self.executor = ExecutionClient(self.config, self.rpc, self.wallet)

        if self.config.redis_url:
            self.store = RedisPositionStore.from_url(self.config.redis_url)
            self.signals = RedisSignalSource.from_url(self.config.redis_url)
        else:
            logger.warning("redis_not_configured", message="Using in-memory store, no signal intake")
            self.store = InMemoryPositionStore()

        strategy = CopyStrategy(self.config, self.store)
        self.engine = StrategyEngine(
            config=self.config,
            store=self.store,
            strategy=strategy,
            executor=self.executor,
            resolver=self.resolver,
            detector=GraduationDetector(self.resolver),
            pnl=PnLCalculator(),
            trade_logger=TradeLogger(self.config.trade_history_file),
            on_event=log_event,
        )

        open_positions = await self.store.list_open()
        logger.info("copytrail_initialized", open_positions=len(open_positions))

    async def _consume_signals(self) -> None:
        while self.running:
            try:
                trade_signal = await self.signals.next_signal()
            except RedisError as e:
                logger.error("signal_intake_failed", error=str(e))
                await asyncio.sleep(SIGNAL_RETRY_DELAY_SECONDS)
                continue
            if trade_signal is None:
                continue
            try:
                await self.engine.handle_signal(trade_signal)
            except Exception as e:
                logger.error("signal_handling_failed", token=trade_signal.mint[:8], error=str(e), exc_info=True)

    async def cleanup(self) -> None:
        """Clean up resources."""
        logger.info("cleaning_up")

        if self.engine:
            logger.info("session_stats", **self.engine.stats)
        if self.signals:
            await self.signals.close()
        if self.store:
            await self.store.close()
        if self.executor:
            await self.executor.close()
        if self.resolver:
            await self.resolver.close()
        if self.rpc:
            await self.rpc.close()

    async def run(self) -> None:
        """Main run loop."""
        self.running = True

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown)

        tasks = [asyncio.create_task(self.engine.run())]
        if self.signals:
            tasks.append(asyncio.create_task(self._consume_signals()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("copytrail_cancelled")
        finally:
            await self.cleanup()
            logger.info("copytrail_shutdown_complete")

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal."""
        logger.info("shutdown_requested")
        self.running = False

        if self.engine:
            self.engine.stop()


async def main():
    """Entry point."""
    try:
        config = load_config()
    except ValueError as e:
        configure_logging()
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    bot = CopytrailBot(config)

    try:
        await bot.initialize()
    except ValueError as e:
        # Bad wallet key
        logger.error("configuration_error", error=str(e))
        await bot.cleanup()
        sys.exit(1)

    try:
        await bot.run()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")


def run():
    """Sync entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
