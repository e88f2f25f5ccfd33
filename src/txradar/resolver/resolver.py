"""
Prevout Resolver - cache first, then the node, then an explicit marker.

Resolution order for (txid, vout):
    1. Cache lookup; a hit returns immediately
    2. Keys that exhausted their retries answer EXHAUSTED
    3. An in-flight fetch for the same key is awaited, never duplicated
    4. At max_queue_depth in-flight fetches, answer BACKPRESSURE
    5. Remote fetch on the worker pool; confirmed outputs are written
       through to the cache before returning
    6. Unavailable / transient failures answer UNAVAILABLE / TRANSIENT and
       schedule a bounded background retry with exponential backoff

resolve() never raises for lookup failures; completeness travels as data.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Optional

from txradar.config import ResolverConfig
from txradar.core.models import (
    PrevoutRecord,
    PrevoutResult,
    Transaction,
    UnresolvedPrevout,
    UnresolvedReason,
)

from .rpc import RpcError, RpcUnavailableError

if TYPE_CHECKING:
    from .cache import PrevoutCache
    from .rpc import BitcoinRpcClient

logger = logging.getLogger(__name__)

PrevoutKey = tuple[str, int]
ResolvedListener = Callable[[PrevoutRecord], Any]


@dataclass
class ResolverStats:
    """Runtime counters for the resolver."""

    cache_hits: int = 0
    remote_fetches: int = 0
    remote_successes: int = 0
    dedup_waits: int = 0
    backpressure_rejections: int = 0
    retries_scheduled: int = 0
    retries_succeeded: int = 0
    exhausted: int = 0
    abandoned: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class _RetryState:
    attempts: int
    due_at: float
    reason: UnresolvedReason


class PrevoutResolver:
    """
    Resolves funding outputs with dedup, backpressure and bounded retry.

    Usage:
        resolver = PrevoutResolver(cache, rpc, ResolverConfig())
        result = await resolver.resolve(txid, 0)
        if isinstance(result, PrevoutRecord):
            ...

        # From a background loop
        resolver.run_due_retries()

        await resolver.close(timeout=10)
    """

    def __init__(
        self,
        cache: "PrevoutCache",
        rpc: "BitcoinRpcClient",
        config: Optional[ResolverConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._rpc = rpc
        self._config = config or ResolverConfig()
        self._clock = clock

        self._workers = asyncio.Semaphore(self._config.max_workers)
        self._inflight: dict[PrevoutKey, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._retries: dict[PrevoutKey, _RetryState] = {}
        self._exhausted: set[PrevoutKey] = set()
        self._listeners: list[ResolvedListener] = []
        self._closing = False

        self.stats = ResolverStats()

    @property
    def queue_depth(self) -> int:
        """Remote fetches in flight or waiting for a worker."""
        return len(self._inflight)

    @property
    def max_queue_depth(self) -> int:
        return self._config.max_queue_depth

    @property
    def retry_backlog(self) -> int:
        return len(self._retries)

    def is_exhausted(self, txid: str, vout: int) -> bool:
        return (txid, vout) in self._exhausted

    def add_listener(self, listener: ResolvedListener) -> None:
        """Register a callback for prevouts resolved by a background retry."""
        self._listeners.append(listener)

    def forget(self, txid: str, vout: int) -> None:
        """Clear the exhausted mark so the key can be looked up again."""
        self._exhausted.discard((txid, vout))

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(self, txid: str, vout: int) -> PrevoutResult:
        key = (txid, vout)
        if self._closing:
            return UnresolvedPrevout(txid, vout, UnresolvedReason.SHUTDOWN)

        cached = await self._cache.aget(txid, vout)
        if cached is not None:
            self.stats.cache_hits += 1
            return cached

        if key in self._exhausted:
            return UnresolvedPrevout(txid, vout, UnresolvedReason.EXHAUSTED)

        inflight = self._inflight.get(key)
        if inflight is not None:
            self.stats.dedup_waits += 1
            return await asyncio.shield(inflight)

        if len(self._inflight) >= self._config.max_queue_depth:
            self.stats.backpressure_rejections += 1
            logger.debug(f"Resolver queue full, {txid}:{vout} left unresolved")
            return UnresolvedPrevout(txid, vout, UnresolvedReason.BACKPRESSURE)

        return await asyncio.shield(self._start_fetch(key))

    async def resolve_inputs(self, tx: Transaction) -> list[PrevoutResult]:
        """Resolve every input of a transaction concurrently, in input order."""
        return list(
            await asyncio.gather(*(self.resolve(i.prev_txid, i.prev_vout) for i in tx.inputs))
        )

    def _start_fetch(self, key: PrevoutKey) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        task = asyncio.create_task(self._fetch(key, future))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    async def _fetch(self, key: PrevoutKey, future: asyncio.Future) -> None:
        txid, vout = key
        result: PrevoutResult = UnresolvedPrevout(txid, vout, UnresolvedReason.SHUTDOWN)
        try:
            async with self._workers:
                result = await self._fetch_remote(txid, vout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error resolving {txid}:{vout}: {e}")
            result = UnresolvedPrevout(txid, vout, UnresolvedReason.TRANSIENT)
            self._schedule_retry(key, UnresolvedReason.TRANSIENT)
        finally:
            self._inflight.pop(key, None)
            if not future.done():
                future.set_result(result)

    async def _fetch_remote(self, txid: str, vout: int) -> PrevoutResult:
        key = (txid, vout)
        self.stats.remote_fetches += 1

        try:
            funding = await self._rpc.get_funding_transaction(txid)
        except RpcUnavailableError as e:
            logger.debug(f"Prevout {txid}:{vout} unavailable: {e}")
            self._schedule_retry(key, UnresolvedReason.UNAVAILABLE)
            return UnresolvedPrevout(txid, vout, UnresolvedReason.UNAVAILABLE)
        except RpcError as e:
            logger.warning(f"Remote lookup failed for {txid}:{vout}: {e}")
            self._schedule_retry(key, UnresolvedReason.TRANSIENT)
            return UnresolvedPrevout(txid, vout, UnresolvedReason.TRANSIENT)

        output = funding.output(vout)
        if output is None:
            logger.warning(f"Funding tx {txid} has no output {vout}")
            self._retries.pop(key, None)
            self._exhausted.add(key)
            return UnresolvedPrevout(txid, vout, UnresolvedReason.UNAVAILABLE)

        now = datetime.now(timezone.utc)
        records = {
            o.vout: PrevoutRecord(
                txid=txid,
                vout=o.vout,
                value=o.value,
                script_type=o.script_type,
                block_height=funding.block_height,
                block_time=funding.block_time,
                resolved_at=now,
            )
            for o in funding.outputs
        }

        # Unconfirmed outputs would gain block data later; keep them out
        # of the write-once cache.
        if funding.is_confirmed:
            try:
                await self._cache.aput_many(records.values())
            except Exception as e:
                logger.warning(f"Cache write for {txid} failed, serving uncached: {e}")

        self._retries.pop(key, None)
        self.stats.remote_successes += 1
        return records[vout]

    # =========================================================================
    # Retry scheduling
    # =========================================================================

    def _schedule_retry(self, key: PrevoutKey, reason: UnresolvedReason) -> None:
        state = self._retries.get(key)
        attempts = state.attempts + 1 if state else 1

        if attempts > self._config.retry_max_attempts:
            self._retries.pop(key, None)
            self._exhausted.add(key)
            self.stats.exhausted += 1
            logger.warning(
                f"Prevout {key[0]}:{key[1]} permanently unresolved "
                f"after {attempts - 1} retries ({reason.value})"
            )
            return

        delay = self._config.retry_delay(attempts)
        self._retries[key] = _RetryState(attempts, self._clock() + delay, reason)
        self.stats.retries_scheduled += 1
        logger.debug(f"Retry {attempts} for {key[0]}:{key[1]} in {delay:.1f}s")

    def run_due_retries(self) -> int:
        """Launch retries whose backoff has elapsed. Returns how many started."""
        if self._closing:
            return 0

        now = self._clock()
        due = [
            key for key, state in self._retries.items()
            if state.due_at <= now and key not in self._inflight
        ]

        launched = 0
        for key in due:
            if len(self._inflight) >= self._config.max_queue_depth:
                break
            self._retries[key].due_at = float("inf")
            future = self._start_fetch(key)
            future.add_done_callback(partial(self._on_retry_done, key))
            launched += 1
        return launched

    def _on_retry_done(self, key: PrevoutKey, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        result = future.result()
        if not isinstance(result, PrevoutRecord):
            return

        self.stats.retries_succeeded += 1
        logger.info(f"Retry resolved prevout {key[0]}:{key[1]}")
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as e:
                logger.error(f"Error in resolved listener: {e}")

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting work and drain in-flight fetches.

        Fetches still running after the timeout are logged as abandoned and
        cancelled; their waiters receive a SHUTDOWN marker.
        """
        self._closing = True
        timeout = self._config.drain_timeout if timeout is None else timeout

        pending = set(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                self.stats.abandoned += len(still_running)
                logger.warning(
                    f"Abandoning {len(still_running)} in-flight prevout lookups "
                    f"after {timeout:.1f}s drain"
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._retries:
            logger.info(f"Dropping {len(self._retries)} scheduled prevout retries at shutdown")
            self._retries.clear()
