"""
BackgroundTasksManager - Manages async background tasks.

Handles periodic tasks like:
- Terminal entry pruning after the grace window
- Time-triggered stats snapshots
- Prevout retry scheduling
- Signal history flushing
- Resync retry after a failed reconciliation
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from txradar.core.pipeline import PipelineOrchestrator
    from txradar.resolver.resolver import PrevoutResolver
    from txradar.storage.history import SignalHistoryRecorder

logger = logging.getLogger(__name__)


@dataclass
class BackgroundTaskConfig:
    """Configuration for background tasks."""

    # Terminal entry pruning
    prune_interval_seconds: float = 30
    prune_enabled: bool = True

    # Stats time trigger (checked more often than the stats interval)
    stats_tick_seconds: float = 0.5
    stats_enabled: bool = True

    # Prevout retries
    retry_interval_seconds: float = 1.0
    retry_enabled: bool = True

    # History flush
    history_flush_interval_seconds: float = 5.0
    history_enabled: bool = True

    # Resync retry (one attempt per interval while resync is required)
    resync_retry_interval_seconds: float = 10.0
    resync_retry_enabled: bool = True


class BackgroundTasksManager:
    """
    Manages background async tasks for the radar.

    Tasks run in the background and keep running after a failed
    iteration. The manager handles graceful shutdown.

    Usage:
        manager = BackgroundTasksManager(
            pipeline=pipeline,
            resolver=resolver,
            history=history,
            config=BackgroundTaskConfig(),
        )
        await manager.start()
        # ... radar runs ...
        await manager.stop()
    """

    def __init__(
        self,
        pipeline: Optional["PipelineOrchestrator"] = None,
        resolver: Optional["PrevoutResolver"] = None,
        history: Optional["SignalHistoryRecorder"] = None,
        config: Optional[BackgroundTaskConfig] = None,
    ) -> None:
        self._pipeline = pipeline
        self._resolver = resolver
        self._history = history
        self._config = config or BackgroundTaskConfig()

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Whether the manager is running."""
        return self._running

    @property
    def task_names(self) -> list[str]:
        return [t.get_name() for t in self._tasks]

    async def start(self) -> None:
        """Start all background tasks."""
        if self._running:
            logger.warning("BackgroundTasksManager already running")
            return

        logger.info("Starting background tasks...")
        self._running = True
        self._stop_event.clear()

        config = self._config
        if config.prune_enabled and self._pipeline:
            self._add("prune", config.prune_interval_seconds, self._prune_once)
        if config.stats_enabled and self._pipeline:
            self._add("stats_tick", config.stats_tick_seconds, self._stats_once)
        if config.retry_enabled and self._resolver:
            self._add("prevout_retry", config.retry_interval_seconds, self._retry_once)
        if config.history_enabled and self._history:
            self._add(
                "history_flush", config.history_flush_interval_seconds, self._flush_once
            )
        if config.resync_retry_enabled and self._pipeline:
            self._add(
                "resync_retry", config.resync_retry_interval_seconds, self._resync_once
            )

        logger.info(f"Background tasks started: {len(self._tasks)} tasks")

    def _add(self, name: str, interval: float, step: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.create_task(self._loop(name, interval, step), name=name)
        self._tasks.append(task)
        logger.info(f"Started {name} task (interval={interval}s)")

    async def stop(self) -> None:
        """Stop all background tasks gracefully."""
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False
        self._stop_event.set()

        # Cancel all tasks
        for task in self._tasks:
            if not task.done():
                task.cancel()

        # Wait for cancellation
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Background tasks stopped")

    async def _loop(
        self,
        name: str,
        interval: float,
        step: Callable[[], Awaitable[None]],
    ) -> None:
        while self._running:
            try:
                # Wait for interval or stop
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=interval,
                    )
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

                if not self._running:
                    break

                await step()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in {name}: {e}")
                await asyncio.sleep(5)  # Brief pause before retry

    # =========================================================================
    # Steps
    # =========================================================================

    async def _prune_once(self) -> None:
        expired = self._pipeline.prune()
        if expired:
            logger.info(f"Pruned {len(expired)} terminal mempool entries")

    async def _stats_once(self) -> None:
        await self._pipeline.publish_stats_if_due()

    async def _retry_once(self) -> None:
        launched = self._resolver.run_due_retries()
        if launched:
            logger.debug(f"Launched {launched} prevout retries")

    async def _flush_once(self) -> None:
        written = await self._history.flush()
        if written:
            logger.debug(f"Flushed {written} signal records")

    async def _resync_once(self) -> None:
        if self._pipeline.resync_required:
            logger.info("Retrying mempool resync...")
            await self._pipeline.resync_if_needed()
