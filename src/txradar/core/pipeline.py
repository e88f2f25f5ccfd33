"""
Pipeline Orchestrator - lifecycle events in, scores and transitions out.

Flow per event:
    1. Sequence check (duplicates skipped, a gap triggers one resync)
    2. Removed / block events: apply to the state machine, publish transition
    3. Added: parse, apply, publish transition, then hand the transaction to
       an analysis task and return to the feed immediately

Analysis task:
    resolve inputs concurrently
    -> wait up to hot_path_timeout, publish provisional ScoredTx (revision 0)
    -> index its unresolved prevouts; a background retry that resolves one
       republishes the score while the tx is pending
    -> wait the rest of correction_window, publish a corrected ScoredTx
       when more inputs resolved than the latest published score has

The feed consumer never awaits prevout resolution. The only awaits on the
event path are the snapshot fetch of a resync and, when the feed did not
inline raw bytes, the raw transaction fetch.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    AsyncIterable,
    Callable,
    Optional,
)

from txradar.config import PipelineConfig, StatsConfig
from txradar.signals.protocol import RuleContext

from .analyzer import build_analyzed_tx
from .events import (
    BlockConnected,
    BlockDisconnected,
    LifecycleEvent,
    TxAdded,
    TxRemoved,
)
from .mempool import MempoolStateMachine, SequenceCheck, SequenceTracker
from .models import (
    AnalyzedTx,
    ExchangeFlow,
    LifecycleTransition,
    PrevoutRecord,
    PrevoutResult,
    ScoredTx,
    Transaction,
    TxState,
    UnresolvedPrevout,
    UnresolvedReason,
)
from .publisher import EventPublisher
from .stats import PipelineStats, StatsBatcher
from .tx_parser import MalformedTransactionError, parse_transaction

if TYPE_CHECKING:
    from txradar.ingestion.feed import RawTxBuffer
    from txradar.resolver.resolver import PrevoutResolver
    from txradar.resolver.rpc import BitcoinRpcClient
    from txradar.signals.engine import SignalEngine

logger = logging.getLogger(__name__)

Enricher = Callable[[Transaction], Optional[ExchangeFlow]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineOrchestrator:
    """
    Wires the feed to the state machine, resolver, engine and publisher.

    Usage:
        pipeline = PipelineOrchestrator(
            state=MempoolStateMachine(),
            resolver=resolver,
            engine=engine,
            publisher=publisher,
            rpc=rpc,
        )
        await pipeline.run(feed)   # until the feed ends or stop() is called
        await pipeline.stop(drain_timeout=10)
    """

    def __init__(
        self,
        state: MempoolStateMachine,
        resolver: "PrevoutResolver",
        engine: "SignalEngine",
        publisher: EventPublisher,
        rpc: Optional["BitcoinRpcClient"] = None,
        config: Optional[PipelineConfig] = None,
        stats_config: Optional[StatsConfig] = None,
        raw_buffer: Optional["RawTxBuffer"] = None,
        enricher: Optional[Enricher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._state = state
        self._resolver = resolver
        self._engine = engine
        self._publisher = publisher
        self._rpc = rpc
        self.config = config or PipelineConfig()
        stats_config = stats_config or StatsConfig()
        self._raw_buffer = raw_buffer
        self._enricher = enricher
        self._clock = clock

        self._sequence = SequenceTracker()
        self._batcher = StatsBatcher(
            batch_size=stats_config.batch_size,
            interval=stats_config.interval_seconds,
        )

        self._tasks: set[asyncio.Task] = set()
        self._latest: dict[str, ScoredTx] = {}
        self._waiting: dict[tuple[str, int], set[str]] = {}
        self._resync_lock = asyncio.Lock()
        self._covered_through: Optional[int] = None

        self._running = False
        self._accepting = True
        self.resync_required = False
        self.last_event_at: Optional[datetime] = None
        self.stats = PipelineStats()

        self._resolver.add_listener(self._on_prevout_resolved)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> MempoolStateMachine:
        return self._state

    @property
    def sequence(self) -> SequenceTracker:
        return self._sequence

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    def latest_score(self, txid: str) -> Optional[ScoredTx]:
        return self._latest.get(txid)

    # =========================================================================
    # Event loop
    # =========================================================================

    async def run(self, feed: AsyncIterable[LifecycleEvent]) -> None:
        """Consume events in delivery order until the feed ends or stop()."""
        self._running = True
        logger.info("Pipeline consuming lifecycle events")
        try:
            async for event in feed:
                if not self._accepting:
                    break
                await self.process_event(event)
        finally:
            self._running = False
            logger.info("Pipeline feed consumption stopped")

    async def process_event(self, event: LifecycleEvent) -> None:
        """Process one event. Errors are logged; the pipeline keeps serving."""
        if not self._accepting:
            return

        self.stats.events_received += 1
        self.last_event_at = self._clock()

        try:
            if not await self._check_sequence(event.sequence):
                return

            if isinstance(event, TxAdded):
                await self._handle_added(event)
            elif isinstance(event, (TxRemoved, BlockConnected, BlockDisconnected)):
                transition = self._state.apply(event)
                if transition is not None:
                    await self._publish_transition(transition)
            else:
                logger.warning(f"Unsupported event type {type(event).__name__}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.analysis_errors += 1
            logger.error(f"Error processing event seq={event.sequence}: {e}")

    async def _check_sequence(self, sequence: Optional[int]) -> bool:
        """False when the event must be skipped."""
        if sequence is None:
            return True

        if self._covered_by_snapshot(sequence):
            return False

        check = self._sequence.observe(sequence)
        if check is SequenceCheck.DUPLICATE:
            self.stats.events_skipped_duplicate += 1
            logger.debug(f"Skipping duplicate delivery seq={sequence}")
            return False

        if check is SequenceCheck.GAP:
            await self.resynchronize()
            if self._covered_by_snapshot(sequence):
                return False

        return True

    def _covered_by_snapshot(self, sequence: int) -> bool:
        if self._covered_through is not None and sequence <= self._covered_through:
            self.stats.events_skipped_resync += 1
            return True
        return False

    # =========================================================================
    # Added
    # =========================================================================

    async def _handle_added(self, event: TxAdded) -> None:
        tx = event.tx
        if tx is None:
            tx = await self._parse_added(event)
            if tx is None:
                return

        seen_at = event.seen_at or self._clock()
        transition = self._state.apply(replace(event, tx=tx, seen_at=seen_at))
        if transition is None:
            return

        await self._publish_transition(transition)
        self.stats.transactions_processed += 1
        self._spawn(self._analyze(tx, seen_at))

        if self._batcher.record_processed():
            await self.publish_stats()

    async def _parse_added(self, event: TxAdded) -> Optional[Transaction]:
        raw = event.raw
        if raw is None and event.txid and self._raw_buffer is not None:
            raw = self._raw_buffer.pop(event.txid)
        if raw is None and event.txid and self._rpc is not None:
            try:
                raw = await self._rpc.get_raw_transaction_bytes(event.txid)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Could not fetch raw bytes for {event.txid}: {e}")
                return None
        if raw is None:
            self.stats.malformed_events += 1
            logger.warning(f"Added event seq={event.sequence} carries no transaction")
            return None

        try:
            tx = parse_transaction(raw)
        except MalformedTransactionError as e:
            self.stats.malformed_events += 1
            logger.warning(f"Malformed transaction at seq={event.sequence}: {e}")
            return None

        if event.txid and tx.txid != event.txid:
            self.stats.malformed_events += 1
            logger.warning(
                f"Raw bytes for {event.txid} decode to {tx.txid}, skipping"
            )
            return None
        return tx

    # =========================================================================
    # Analysis
    # =========================================================================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _analyze(self, tx: Transaction, seen_at: datetime) -> None:
        try:
            flow = self._enrich(tx)
            lookups = [
                asyncio.ensure_future(self._resolver.resolve(i.prev_txid, i.prev_vout))
                for i in tx.inputs
            ]

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.correction_window

            pending: set = set()
            if lookups:
                _, pending = await asyncio.wait(lookups, timeout=self.config.hot_path_timeout)
            analyzed = build_analyzed_tx(tx, self._collect(tx, lookups), seen_at, flow)
            await self._publish_score(analyzed)
            # Background retries can land while the correction window is open
            self._index_unresolved(analyzed)

            if pending:
                remaining = max(0.0, deadline - loop.time())
                _, pending = await asyncio.wait(pending, timeout=remaining)
                for lookup in pending:
                    lookup.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

                current = self._current_analysis(tx.txid) or analyzed
                corrected = build_analyzed_tx(
                    tx, self._collect(tx, lookups, current.prevouts), seen_at, flow
                )
                if corrected.resolved_input_count > current.resolved_input_count:
                    await self._publish_score(corrected)
                    self.stats.corrections_published += 1
                self._unindex_resolved(corrected)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.analysis_errors += 1
            logger.error(f"Analysis failed for {tx.txid}: {e}")

    @staticmethod
    def _collect(
        tx: Transaction,
        lookups: list[asyncio.Future],
        known: Optional[tuple[PrevoutResult, ...]] = None,
    ) -> list[PrevoutResult]:
        """Lookup outcomes per input; records in known win over unresolved lookups."""
        results: list[PrevoutResult] = []
        for index, (txin, lookup) in enumerate(zip(tx.inputs, lookups)):
            result: PrevoutResult = UnresolvedPrevout(
                txin.prev_txid, txin.prev_vout, UnresolvedReason.PENDING
            )
            if lookup.done() and not lookup.cancelled() and lookup.exception() is None:
                result = lookup.result()
            if known is not None and isinstance(result, UnresolvedPrevout):
                earlier = known[index]
                if isinstance(earlier, PrevoutRecord):
                    result = earlier
            results.append(result)
        return results

    def _current_analysis(self, txid: str) -> Optional[AnalyzedTx]:
        entry = self._state.get(txid)
        return entry.analyzed if entry is not None else None

    def _enrich(self, tx: Transaction) -> Optional[ExchangeFlow]:
        if self._enricher is None:
            return None
        try:
            return self._enricher(tx)
        except Exception as e:
            logger.debug(f"Enricher failed for {tx.txid}: {e}")
            return None

    async def _publish_score(self, analyzed: AnalyzedTx) -> ScoredTx:
        previous = self._latest.get(analyzed.txid)
        revision = previous.revision + 1 if previous else 0

        context = RuleContext(
            now=analyzed.seen_at,
            tip_height=self._state.tip_height,
            pending_count=self._state.pending_count(),
        )
        scored = self._engine.score(analyzed, context, revision=revision)

        self._state.update_analysis(analyzed.txid, analyzed)
        self._latest[analyzed.txid] = scored
        await self._publisher.publish(scored)
        self.stats.scores_published += 1
        logger.debug(
            f"Scored {analyzed.txid} rev={revision} score={scored.score:.2f} "
            f"tier={scored.tier.value} resolved={analyzed.resolved_input_count}/"
            f"{len(analyzed.tx.inputs)}"
        )
        return scored

    def _index_unresolved(self, analyzed: AnalyzedTx) -> None:
        for key in analyzed.unresolved_keys:
            self._waiting.setdefault(key, set()).add(analyzed.txid)

    def _unindex_resolved(self, analyzed: AnalyzedTx) -> None:
        unresolved = set(analyzed.unresolved_keys)
        for txin in analyzed.tx.inputs:
            key = (txin.prev_txid, txin.prev_vout)
            if key in unresolved:
                continue
            waiting = self._waiting.get(key)
            if waiting is None:
                continue
            waiting.discard(analyzed.txid)
            if not waiting:
                del self._waiting[key]

    def _on_prevout_resolved(self, record: PrevoutRecord) -> None:
        """Resolver listener for background retries."""
        txids = self._waiting.pop(record.key, None)
        if not txids or not self._accepting:
            return
        for txid in txids:
            self._spawn(self._republish(txid, record))

    async def _republish(self, txid: str, record: PrevoutRecord) -> None:
        entry = self._state.get(txid)
        if entry is None or entry.state is not TxState.PENDING:
            return

        current = entry.analyzed
        prevouts = [
            record if isinstance(p, UnresolvedPrevout) and p.key == record.key else p
            for p in current.prevouts
        ]
        analyzed = build_analyzed_tx(
            current.tx, prevouts, current.seen_at, current.exchange_flow
        )
        if analyzed.resolved_input_count == current.resolved_input_count:
            return

        try:
            await self._publish_score(analyzed)
            self.stats.corrections_published += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.analysis_errors += 1
            logger.error(f"Republish failed for {txid}: {e}")

    # =========================================================================
    # Publication
    # =========================================================================

    async def _publish_transition(self, transition: LifecycleTransition) -> None:
        await self._publisher.publish(transition)
        self.stats.transitions_published += 1

    async def publish_stats(self) -> None:
        processed = self._batcher.reset()
        snapshot = self._state.snapshot_stats(self._clock(), processed=processed)
        await self._publisher.publish(snapshot)
        self.stats.stats_published += 1

    async def publish_stats_if_due(self) -> bool:
        """Time trigger of the stats batch; called from the background tick."""
        if not self._batcher.time_due():
            return False
        await self.publish_stats()
        return True

    # =========================================================================
    # Resync
    # =========================================================================

    async def resynchronize(self) -> bool:
        """
        Reconcile against a fresh node snapshot.

        Pending entries the node no longer holds are evicted, and snapshot
        transactions not yet tracked are backfilled in the background.
        Incremental state is untrusted until this succeeds.
        """
        async with self._resync_lock:
            self.resync_required = True
            self.stats.resyncs += 1

            if self._rpc is None:
                self.stats.resync_failures += 1
                logger.error("Resync required but no RPC client is configured")
                return False

            try:
                snapshot = await self._rpc.get_mempool_snapshot()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.resync_failures += 1
                logger.error(f"Resync failed, will retry: {e}")
                return False

            transitions, missing = self._state.reconcile(snapshot.txids)
            for transition in transitions:
                await self._publish_transition(transition)

            if snapshot.mempool_sequence is not None:
                self._covered_through = snapshot.mempool_sequence
                self._sequence.reset(snapshot.mempool_sequence)

            if missing:
                self._spawn(self._backfill(missing))

            self.resync_required = False
            logger.info(
                f"Resync complete at mempool sequence {snapshot.mempool_sequence}: "
                f"{len(transitions)} evicted, {len(missing)} to backfill"
            )
            return True

    async def resync_if_needed(self) -> bool:
        """One resync attempt when the last one failed."""
        if not self.resync_required:
            return False
        return await self.resynchronize()

    async def _backfill(self, txids: list[str]) -> None:
        limit = self.config.resync_fetch_limit
        if len(txids) > limit:
            logger.warning(f"Backfilling {limit} of {len(txids)} untracked transactions")
            txids = txids[:limit]

        semaphore = asyncio.Semaphore(self.config.resync_fetch_concurrency)

        async def fetch_one(txid: str) -> None:
            async with semaphore:
                try:
                    raw = await self._rpc.get_raw_transaction_bytes(txid)
                    tx = parse_transaction(raw)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"Backfill skipped {txid}: {e}")
                    return

            if not self._accepting:
                return
            seen_at = self._clock()
            transition = self._state.apply(TxAdded(sequence=None, tx=tx, seen_at=seen_at))
            if transition is None:
                return
            await self._publish_transition(transition)
            self.stats.transactions_processed += 1
            if self._batcher.record_processed():
                await self.publish_stats()
            self._spawn(self._analyze(tx, seen_at))

        await asyncio.gather(*(fetch_one(txid) for txid in txids))

    # =========================================================================
    # Maintenance
    # =========================================================================

    def prune(self, now: Optional[datetime] = None) -> list[str]:
        """Purge expired terminal entries along with their scores."""
        expired = self._state.prune_terminal(now)
        for txid in expired:
            self._latest.pop(txid, None)
        if expired:
            gone = set(expired)
            for key in list(self._waiting):
                remaining = self._waiting[key] - gone
                if remaining:
                    self._waiting[key] = remaining
                else:
                    del self._waiting[key]
        return expired

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        """
        Stop accepting events, then drain analysis tasks and the resolver.

        Whatever is still running when the timeout expires is cancelled and
        logged as abandoned.
        """
        self._accepting = False
        timeout = self.config.drain_timeout if drain_timeout is None else drain_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        pending = set(self._tasks)
        if pending:
            logger.info(f"Draining {len(pending)} analysis tasks")
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning(
                    f"Abandoning {len(still_running)} analysis tasks after {timeout:.1f}s"
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        await self._resolver.close(timeout=max(0.0, deadline - loop.time()))
        logger.info(f"Pipeline stopped: {self.stats.to_dict()}")
