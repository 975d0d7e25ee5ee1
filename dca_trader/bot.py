"""Bot runner: startup validation, feed wiring, event consumption, shutdown.

Startup is fail-fast: missing credentials, rejected credentials, an unknown
pair or a missing ticker raise StartupError before any order is placed.
Once running, the bot only stops on SIGINT/SIGTERM.
"""
import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from .config import BotConfig
from .controller import CycleController
from .errors import GatewayError, StartupError
from .fill_ledger import FillLedger
from .gateway import AsyncOkxGateway
from .health import ConnectionHealthMonitor
from .logging_setup import logger, setup_logging
from .persistence_sqlite import SQLitePersistence
from .position import PositionRegistry
from .rate_limit_policy import RateLimitManager
from .reconciliation import Reconciler
from .secrets import OkxCredentials, load_credentials
from .ws_client import AccountFeed, MarketFeed

FEED_READY_TIMEOUT = 15.0


class TradingBot:
    """Wires gateway, controller, reconciler, feeds and health monitor."""

    def __init__(
        self,
        config: BotConfig,
        credentials: Optional[OkxCredentials] = None,
        *,
        gateway=None,
        persistence=None,
    ):
        self.config = config
        self.credentials = credentials
        self.gateway = gateway
        self.persistence = persistence
        self.controller: Optional[CycleController] = None
        self.reconciler: Optional[Reconciler] = None
        self.market_feed: Optional[MarketFeed] = None
        self.account_feed: Optional[AccountFeed] = None
        self.monitor: Optional[ConnectionHealthMonitor] = None
        self._tasks: List[asyncio.Task] = []
        self._stopped: Optional[asyncio.Event] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    async def validate_startup(self):
        """Check credentials, pair and ticker; returns the current price.

        Raises:
            StartupError: If any check fails
        """
        cfg = self.config
        if self.credentials is None:
            try:
                self.credentials = load_credentials()
            except ValueError as e:
                raise StartupError(str(e)) from e

        if self.gateway is None:
            limiter = RateLimitManager.from_config(
                cfg.rate_limit.orders_per_window,
                cfg.rate_limit.default_per_window,
                cfg.rate_limit.window_seconds,
            )
            self.gateway = AsyncOkxGateway.from_config(self.credentials, cfg.exchange, limiter)
        await self.gateway.open()

        logger.info(f"Validating startup | inst_id={cfg.exchange.inst_id} sandbox={cfg.exchange.sandbox}")
        try:
            await self.gateway.check_credentials()
        except GatewayError as e:
            raise StartupError(f"API credentials check failed: {e}") from e
        try:
            await self.gateway.get_instrument()
        except GatewayError as e:
            raise StartupError(f"Unknown trading pair {cfg.exchange.inst_id}: {e}") from e
        try:
            price = await self.gateway.get_last_price()
        except GatewayError as e:
            raise StartupError(f"No ticker data for {cfg.exchange.inst_id}: {e}") from e

        logger.info(
            f"Startup checks passed | price={price} trade_size={cfg.strategy.trade_size} "
            f"estimated_order_value={price * cfg.strategy.trade_size}"
        )
        return price

    async def start(self) -> None:
        cfg = self.config
        price = await self.validate_startup()

        if self.persistence is None:
            self.persistence = SQLitePersistence(cfg.persistence.db_path, password=cfg.persistence.encryption_password)
        snapshot = await asyncio.to_thread(self.persistence.load_snapshot)
        ledger = FillLedger()
        ledger.update(await asyncio.to_thread(self.persistence.applied_fill_ids))
        registry = snapshot.registry if snapshot else PositionRegistry()
        registry.last_price = price

        self.controller = CycleController.from_config(
            self.gateway, self.persistence, cfg.strategy, registry=registry, ledger=ledger,
        )
        self.reconciler = Reconciler(self.controller)
        self.monitor = ConnectionHealthMonitor([], interval=cfg.connection.ping_interval, reconciler=self.reconciler)
        self.market_feed = MarketFeed(
            cfg.exchange.public_ws_url(), cfg.exchange.inst_id, self.controller.on_price,
            reconnect_delay=cfg.connection.reconnect_delay,
        )
        self.account_feed = AccountFeed(
            cfg.exchange.private_ws_url(), cfg.exchange.inst_id,
            self.credentials.api_key, self.credentials.api_secret, self.credentials.passphrase,
            reconnect_delay=cfg.connection.private_reconnect_delay,
            on_reconnect=self.monitor.handle_private_reconnect,
        )
        self.monitor.feeds = [self.market_feed, self.account_feed]

        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self.market_feed.run()))
        self._tasks.append(loop.create_task(self.account_feed.run()))
        try:
            await asyncio.wait_for(
                asyncio.gather(self.market_feed.ready.wait(), self.account_feed.ready.wait()),
                timeout=FEED_READY_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("Feeds not connected yet; starting anyway, they keep retrying")

        if cfg.persistence.startup_mode == "resume" and snapshot is not None:
            logger.info(f"Resuming from snapshot | saved_at_ms={snapshot.saved_at_ms} sell_slots={len(registry.sell_slots)}")
            await self.reconciler.reconcile(snapshot.saved_at_ms)
        else:
            try:
                await self.controller.start_fresh()
            except GatewayError as e:
                raise StartupError(f"Could not clear open orders: {e}") from e
        self.account_feed.open_gate()

        self._tasks.append(loop.create_task(self._consume_account_events()))
        self._tasks.append(loop.create_task(self.monitor.run()))
        logger.info(f"Bot started | phase={self.controller.phase.value} realized_profit={registry.realized_profit}")

    async def _consume_account_events(self) -> None:
        feed = self.account_feed
        while True:
            event = await feed.queue.get()
            await feed.gate.wait()
            try:
                await self.controller.dispatch(event)
            except Exception:
                logger.exception(f"Failed to apply account event | event={event!r}")

    async def run(self) -> None:
        """Start and block until shut down by a signal or shutdown()."""
        self._stopped = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:
                logger.debug(f"Signal handlers unsupported on this platform | signal={sig.name}")

        try:
            await self.start()
        except StartupError:
            await self._close_resources()
            raise
        await self._stopped.wait()

    def request_shutdown(self, reason: str = "requested") -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown(reason))

    async def shutdown(self, reason: str = "requested") -> None:
        logger.info(f"Shutting down | reason={reason}")
        conn = self.config.connection
        if self.monitor is not None:
            self.monitor.stop(reason)
        if self.controller is not None:
            await self.controller.shutdown(conn.shutdown_poll_interval, conn.shutdown_wait_polls)
        await self._close_resources()
        if self.controller is not None:
            logger.info(f"Bot stopped | realized_profit={self.controller.registry.realized_profit}")
        if self._stopped is not None:
            self._stopped.set()

    async def _close_resources(self) -> None:
        for feed in (self.market_feed, self.account_feed):
            if feed is not None:
                await feed.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.gateway is not None:
            await self.gateway.close()
        if self.persistence is not None:
            self.persistence.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OKX DCA trading bot")
    parser.add_argument("--config", help="YAML config file (default: OKX_* environment variables)")
    parser.add_argument("--mode", choices=["fresh", "resume"], help="Override the startup mode")
    parser.add_argument("--sandbox", action="store_true", help="Trade on the OKX demo environment")
    parser.add_argument("--log-level", help="Override the log level")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = BotConfig.from_yaml(args.config) if args.config else BotConfig.from_env()
    if args.mode:
        config.persistence.startup_mode = args.mode
    if args.sandbox:
        config.exchange.sandbox = True
    if args.log_level:
        config.persistence.log_level = args.log_level
    setup_logging(config.persistence.log_file, config.persistence.log_level)

    bot = TradingBot(config)
    try:
        asyncio.run(bot.run())
    except StartupError as e:
        logger.error(f"Startup failed | error={e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
