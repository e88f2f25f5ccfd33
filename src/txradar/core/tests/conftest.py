"""
Core layer test fixtures.

Core tests verify lifecycle and orchestration logic, so the resolver is a
controllable fake and the RPC client is an AsyncMock.
"""
import asyncio
from dataclasses import dataclass
from unittest.mock import AsyncMock, MagicMock

import pytest

from txradar.config import PipelineConfig, RuleWeight, SignalConfig, StatsConfig
from txradar.core import (
    EventPublisher,
    MempoolStateMachine,
    PipelineOrchestrator,
    PrevoutRecord,
    Subscription,
    UnresolvedPrevout,
    UnresolvedReason,
)
from txradar.signals import SignalEngine, default_registry


# =============================================================================
# Resolver Fixtures
# =============================================================================


class FakeResolver:
    """
    Resolver double.

    records: (txid, vout) -> PrevoutRecord answered once the key's gate opens
    gates: (txid, vout) -> asyncio.Event blocking that lookup
    Keys without a record answer UNAVAILABLE.
    """

    def __init__(self) -> None:
        self.records: dict = {}
        self.gates: dict = {}
        self.calls: list = []
        self.closed = False
        self.close_timeout = None
        self._listeners: list = []
        self.queue_depth = 0
        self.max_queue_depth = 100
        self.retry_backlog = 0

    def add(self, record: PrevoutRecord, gate: asyncio.Event = None) -> None:
        self.records[record.key] = record
        if gate is not None:
            self.gates[record.key] = gate

    def add_listener(self, listener) -> None:
        self._listeners.append(listener)

    def notify(self, record: PrevoutRecord) -> None:
        """Simulate a background retry resolving a prevout."""
        for listener in self._listeners:
            listener(record)

    async def resolve(self, txid: str, vout: int):
        key = (txid, vout)
        self.calls.append(key)
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()
        record = self.records.get(key)
        if record is None:
            return UnresolvedPrevout(txid, vout, UnresolvedReason.UNAVAILABLE)
        return record

    def run_due_retries(self) -> int:
        return 0

    async def close(self, timeout=None) -> None:
        self.closed = True
        self.close_timeout = timeout


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture
def mock_rpc():
    """RPC client double; resync snapshots are empty unless a test says otherwise."""
    from txradar.resolver import MempoolSnapshot

    rpc = MagicMock()
    rpc.get_mempool_snapshot = AsyncMock(return_value=MempoolSnapshot(txids=()))
    rpc.get_raw_transaction_bytes = AsyncMock()
    return rpc


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def value_age_config():
    """Weight table restricted to the prevout-driven rules."""
    return SignalConfig(
        rules=(
            RuleWeight(name="cdd", weight=9.0),
            RuleWeight(name="tx_value", weight=6.0),
            RuleWeight(name="utxo_age", weight=8.0),
        )
    )


@pytest.fixture
def engine(value_age_config):
    return SignalEngine(default_registry(), value_age_config)


# =============================================================================
# Pipeline Fixtures
# =============================================================================


@dataclass
class Harness:
    pipeline: PipelineOrchestrator
    state: MempoolStateMachine
    publisher: EventPublisher
    subscription: Subscription

    def drain(self) -> list:
        """Every message published so far, in order."""
        messages = []
        while self.subscription.qsize():
            messages.append(self.subscription.get_nowait())
        return messages

    async def settle(self, timeout: float = 2.0) -> None:
        """Wait until no analysis task is running."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.pipeline.active_tasks:
            if loop.time() > deadline:
                raise AssertionError("analysis tasks did not finish")
            await asyncio.sleep(0.01)


@pytest.fixture
def fast_pipeline_config():
    """Short deadlines so provisional/corrected timing runs in milliseconds."""
    return PipelineConfig(hot_path_timeout=0.05, correction_window=0.3, drain_timeout=1.0)


@pytest.fixture
def make_harness(fake_resolver, engine, fast_pipeline_config, now):
    """
    Build a pipeline around the fake resolver.

    Usage:
        h = make_harness(rpc=mock_rpc)
        await h.pipeline.process_event(TxAdded(sequence=1, raw=raw))
        await h.settle()
        messages = h.drain()
    """
    def build(
        rpc=None,
        config=None,
        stats_config=None,
        raw_buffer=None,
        enricher=None,
        grace_window: float = 300.0,
    ) -> Harness:
        state = MempoolStateMachine(grace_window=grace_window, clock=lambda: now)
        publisher = EventPublisher()
        subscription = publisher.subscribe()
        pipeline = PipelineOrchestrator(
            state=state,
            resolver=fake_resolver,
            engine=engine,
            publisher=publisher,
            rpc=rpc,
            config=config or fast_pipeline_config,
            stats_config=stats_config or StatsConfig(batch_size=1000, interval_seconds=3600),
            raw_buffer=raw_buffer,
            enricher=enricher,
            clock=lambda: now,
        )
        return Harness(pipeline, state, publisher, subscription)

    return build
