"""
TxRadar - Main Entry Point

Follows the node's mempool lifecycle feed, scores every new transaction
and publishes scores, lifecycle transitions and mempool stats.

Usage:
    bitcoin-zmq-bridge | python -m txradar.main
    python -m txradar.main --feed events.jsonl --config radar.json

Configuration:
    The radar reads configuration from:
    1. Built-in defaults
    2. A JSON file (--config or RADAR_CONFIG_PATH)
    3. Environment variables (below)

Environment Variables:
    BITCOIN_RPC_URL           Node JSON-RPC endpoint (default: http://127.0.0.1:8332)
    BITCOIN_RPC_USER          RPC user
    BITCOIN_RPC_PASSWORD      RPC password
    CACHE_PATH                Prevout cache file (default: data/utxo_cache.db)
    SIGNAL_WEIGHTS_PATH       JSON weight table replacing the defaults
    HOT_PATH_TIMEOUT_SECONDS  Wait before the provisional score (default: 1.0)
    CORRECTION_WINDOW_SECONDS Wait before the corrected score (default: 30)
    GRACE_WINDOW_SECONDS      Retention of confirmed/replaced/evicted entries (default: 300)
    DATABASE_URL              PostgreSQL signal history (optional)
    MIN_SCORE_PERSIST         Lowest score written to history (default: 10)
    DASHBOARD_ENABLED         Serve the JSON/WebSocket API (default: false)
    DASHBOARD_PORT            API port (default: 9050)
    ALERTS_ENABLED            Notify on high-scoring transactions (default: false)
    ALERT_MIN_SCORE           Lowest score that alerts (default: 60)
    ALERT_COOLDOWN_SECONDS    Per-transaction alert cooldown (default: 30)
    TELEGRAM_BOT_TOKEN        Telegram delivery (alerts are logged without it)
    TELEGRAM_CHAT_ID          Telegram chat receiving alerts
    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)

Feed format:
    One JSON object per line, see txradar.ingestion.feed.

Exit codes:
    0  clean shutdown (signal or end of feed)
    1  fatal runtime error
    2  invalid configuration
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from txradar.config import ConfigurationError, RadarConfig

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


class Radar:
    """
    Main radar orchestrator.

    Manages the lifecycle of all components:
    - Prevout cache and node RPC client
    - Prevout resolver and signal engine
    - Mempool state machine, publisher and pipeline
    - Optional signal history (PostgreSQL), alerts and dashboard
    - Background maintenance loops
    """

    def __init__(self, config: RadarConfig, feed_source: str = "-"):
        self.config = config
        self.feed_source = feed_source
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Components (initialized on start)
        self._cache = None
        self._rpc = None
        self._resolver = None
        self._engine = None
        self._state = None
        self._publisher = None
        self._raw_buffer = None
        self._pipeline = None
        self._db = None
        self._signal_repo = None
        self._history = None
        self._alerts = None
        self._health_checker = None
        self._background_tasks = None
        self._feed = None
        self._feed_task: Optional[asyncio.Task] = None
        self._dashboard_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the radar and run until shutdown or end of feed."""
        logger.info("=" * 60)
        logger.info("TXRADAR - MEMPOOL TRANSACTION RADAR")
        logger.info("=" * 60)
        logger.info(f"Node: {self.config.rpc.url}")
        logger.info(f"Feed: {'stdin' if self.feed_source == '-' else self.feed_source}")
        logger.info(f"History: {'ENABLED' if self.config.history.enabled else 'DISABLED'}")
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        # Setup signal handlers FIRST to catch early signals
        self._setup_signal_handlers()

        try:
            init_steps = (
                self._init_resolution,
                self._init_engine,
                self._init_pipeline,
                self._init_history,
                self._init_alerting,
                self._init_monitoring,
                self._init_background_tasks,
            )
            for step in init_steps:
                await step()
                # Check shutdown between init steps to abort early if signal received
                if self._shutdown_event.is_set():
                    logger.info("Shutdown requested during startup")
                    return

            # Initial snapshot so the sequence baseline and state are trusted
            await self._pipeline.resynchronize()
            self._start_feed()

            logger.info("=" * 60)
            logger.info("Radar started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._run_loop()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the radar gracefully."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        # Stop taking events first, then drain in reverse order of startup
        if self._feed_task:
            try:
                self._feed.close()
                if not self._feed_task.done():
                    self._feed_task.cancel()
                await asyncio.gather(self._feed_task, return_exceptions=True)
            except Exception as e:
                logger.warning(f"Error stopping feed: {e}")

        if self._background_tasks:
            try:
                await self._background_tasks.stop()
            except Exception as e:
                logger.warning(f"Error stopping background tasks: {e}")

        if self._pipeline:
            try:
                await self._pipeline.stop(self.config.pipeline.drain_timeout)
            except Exception as e:
                logger.warning(f"Error stopping pipeline: {e}")

        if self._history:
            try:
                await self._history.close()
            except Exception as e:
                logger.warning(f"Error closing signal history: {e}")

        if self._alerts:
            try:
                await self._alerts.close()
            except Exception as e:
                logger.warning(f"Error closing alert manager: {e}")

        if self._dashboard_task:
            try:
                self._dashboard_task.cancel()
                await asyncio.gather(self._dashboard_task, return_exceptions=True)
            except Exception as e:
                logger.warning(f"Error stopping dashboard: {e}")

        if self._rpc:
            try:
                await self._rpc.close()
            except Exception as e:
                logger.warning(f"Error closing RPC client: {e}")

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        if self._cache:
            try:
                self._cache.close()
            except Exception as e:
                logger.warning(f"Error closing prevout cache: {e}")

        logger.info("Shutdown complete")

    async def request_shutdown(self, reason: str = "manual") -> None:
        """Request a graceful shutdown."""
        if not self._running:
            return
        logger.warning(f"Shutdown requested: {reason}")
        self._shutdown_event.set()

    async def _init_resolution(self) -> None:
        """Open the prevout cache, the RPC client and the resolver."""
        from txradar.resolver import BitcoinRpcClient, PrevoutCache, PrevoutResolver

        self._cache = PrevoutCache(self.config.cache.path, timeout=self.config.cache.timeout)
        # CacheError propagates: the radar cannot run without its cache
        self._cache.open()

        rpc_config = self.config.rpc
        self._rpc = BitcoinRpcClient(
            url=rpc_config.url,
            user=rpc_config.user,
            password=rpc_config.password,
            timeout=rpc_config.timeout,
            max_retries=rpc_config.max_retries,
            retry_delay=rpc_config.retry_delay,
            header_cache_size=rpc_config.header_cache_size,
        )
        try:
            height = await self._rpc.get_block_count()
            logger.info(f"Node: Connected at height {height}")
        except Exception as e:
            logger.warning(f"Node not reachable yet ({e}); lookups will be retried")

        self._resolver = PrevoutResolver(self._cache, self._rpc, self.config.resolver)
        logger.info(
            f"Resolver: {self.config.resolver.max_workers} workers, "
            f"queue depth {self.config.resolver.max_queue_depth}"
        )

    async def _init_engine(self) -> None:
        """Build the signal engine from the weight table."""
        from txradar.signals import SignalEngine, default_registry

        # ConfigurationError propagates: a bad weight table is fatal
        self._engine = SignalEngine(default_registry(), self.config.signals)
        logger.info(f"Signal engine: rules={list(self._engine.rule_names)}")

    async def _init_pipeline(self) -> None:
        """Create the state machine, publisher and orchestrator."""
        from txradar.core import EventPublisher, MempoolStateMachine, PipelineOrchestrator
        from txradar.ingestion import RawTxBuffer

        self._state = MempoolStateMachine(grace_window=self.config.mempool.grace_window_seconds)
        self._publisher = EventPublisher()
        self._raw_buffer = RawTxBuffer(self.config.pipeline.raw_tx_buffer_size)
        self._pipeline = PipelineOrchestrator(
            state=self._state,
            resolver=self._resolver,
            engine=self._engine,
            publisher=self._publisher,
            rpc=self._rpc,
            config=self.config.pipeline,
            stats_config=self.config.stats,
            raw_buffer=self._raw_buffer,
        )

    async def _init_history(self) -> None:
        """Connect the optional PostgreSQL signal history."""
        if not self.config.history.enabled:
            logger.info("Signal history: Disabled (DATABASE_URL not set)")
            return

        from txradar.storage import (
            Database,
            DatabaseConfig,
            SignalHistoryRecorder,
            SignalRepository,
        )

        self._db = Database(DatabaseConfig(url=self.config.history.database_url))
        await self._db.initialize()

        self._signal_repo = SignalRepository(self._db)
        await self._signal_repo.ensure_schema()

        self._history = SignalHistoryRecorder(self._signal_repo, self.config.history)
        self._publisher.add_listener(self._history.on_message)
        logger.info(
            f"Signal history: Connected (min score {self.config.history.min_score_persist})"
        )

    async def _init_alerting(self) -> None:
        """Notifications for transactions scoring above the alert threshold."""
        from txradar.monitoring import AlertManager

        alerting = self.config.alerting
        if not alerting.enabled:
            logger.info("Alerts: Disabled")
            return

        self._alerts = AlertManager(alerting)
        self._publisher.add_listener(self._alerts.on_message)
        logger.info(
            f"Alerts: score >= {alerting.min_score}, "
            f"cooldown {alerting.cooldown_seconds}s, "
            f"{'telegram' if alerting.telegram_configured else 'log only'}"
        )

    async def _init_monitoring(self) -> None:
        """Health checks and the optional dashboard."""
        from txradar.monitoring import HealthChecker, create_dashboard_app, run_dashboard

        self._health_checker = HealthChecker(
            cache=self._cache,
            rpc=self._rpc,
            pipeline=self._pipeline,
            resolver=self._resolver,
            db=self._db,
        )

        dashboard = self.config.dashboard
        if not dashboard.enabled:
            logger.info("Dashboard: Disabled")
            return

        app = create_dashboard_app(
            pipeline=self._pipeline,
            publisher=self._publisher,
            health_checker=self._health_checker,
            signal_repo=self._signal_repo,
            subscriber_queue_size=dashboard.subscriber_queue_size,
        )
        self._dashboard_task = asyncio.create_task(
            run_dashboard(app, host=dashboard.host, port=dashboard.port),
            name="dashboard",
        )
        logger.info(f"Dashboard: http://{dashboard.host}:{dashboard.port}")

    async def _init_background_tasks(self) -> None:
        """Start pruning, stats, retry, history flush and resync loops."""
        from txradar.core import BackgroundTaskConfig, BackgroundTasksManager

        config = BackgroundTaskConfig(
            prune_interval_seconds=self.config.mempool.prune_interval_seconds,
            stats_tick_seconds=self.config.stats.tick_seconds,
            retry_interval_seconds=self.config.resolver.retry_interval,
            history_flush_interval_seconds=self.config.history.flush_interval_seconds,
            history_enabled=self._history is not None,
            resync_retry_interval_seconds=self.config.pipeline.resync_retry_interval,
        )
        self._background_tasks = BackgroundTasksManager(
            pipeline=self._pipeline,
            resolver=self._resolver,
            history=self._history,
            config=config,
        )
        await self._background_tasks.start()
        logger.info(f"Background tasks: {self._background_tasks.task_names}")

    def _start_feed(self) -> None:
        from txradar.ingestion import EventDecoder, JsonLinesFeed

        self._feed = JsonLinesFeed(self.feed_source, decoder=EventDecoder(self._raw_buffer))
        self._feed_task = asyncio.create_task(self._pipeline.run(self._feed), name="feed")

    async def _run_loop(self) -> None:
        """Main run loop: wait for shutdown or end of feed, check health."""
        health_check_interval = 30  # seconds
        shutdown_wait = asyncio.ensure_future(self._shutdown_event.wait())

        try:
            while self._running:
                try:
                    done, _ = await asyncio.wait(
                        {shutdown_wait, self._feed_task},
                        timeout=health_check_interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if shutdown_wait in done:
                        break  # Shutdown requested
                    if self._feed_task in done:
                        error = self._feed_task.exception() if not self._feed_task.cancelled() else None
                        if error is not None:
                            raise error
                        logger.info("Event feed ended, shutting down")
                        break

                    # Periodic health check
                    if self._health_checker:
                        from txradar.monitoring import HealthStatus
                        health = await self._health_checker.check_all()

                        unhealthy_components = [
                            c for c in health.components
                            if c.status == HealthStatus.UNHEALTHY
                        ]
                        if unhealthy_components:
                            logger.warning(
                                f"Health check failed: {[c.component for c in unhealthy_components]}"
                            )

                    # Log stats periodically
                    stats = self._pipeline.stats
                    logger.info(
                        f"Stats: events={stats.events_received}, "
                        f"processed={stats.transactions_processed}, "
                        f"pending={self._state.pending_count()}, "
                        f"resolver_queue={self._resolver.queue_depth}"
                    )

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if self._feed_task.done():
                        raise
                    logger.error(f"Error in main loop: {e}")
                    await asyncio.sleep(5)
        finally:
            shutdown_wait.cancel()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Bitcoin mempool transaction radar",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to JSON configuration file",
    )
    parser.add_argument(
        "--feed",
        type=str,
        default="-",
        help="Lifecycle event feed: a JSON-lines file, or - for stdin (default: -)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = RadarConfig.load(args.config)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    radar = Radar(config, feed_source=args.feed)

    try:
        await radar.start()
        return 0
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main() -> int:
    """Main entry point."""
    # Load .env file
    load_env_file()

    # Parse arguments
    args = parse_args()

    # Override log level if specified
    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
