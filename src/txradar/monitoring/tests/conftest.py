"""
Monitoring layer test fixtures.

Tests health checks and dashboard endpoints.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from txradar.core import (
    EventPublisher,
    MempoolStateMachine,
    PipelineStats,
    RemovalReason,
    SequenceTracker,
    TxAdded,
    TxRemoved,
    pending_analysis,
)
from txradar.signals import RuleContext, SignalEngine, default_registry


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def mock_db():
    """Mock database for unit tests."""
    db = MagicMock()
    db.execute = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    return db


# =============================================================================
# Mock Component Fixtures
# =============================================================================


@pytest.fixture
def mock_cache():
    cache = MagicMock()
    cache.ping.return_value = True
    cache.hits = 10
    cache.misses = 2
    return cache


@pytest.fixture
def mock_rpc():
    rpc = MagicMock()
    rpc.get_block_count = AsyncMock(return_value=850_000)
    return rpc


@pytest.fixture
def mock_resolver():
    resolver = MagicMock()
    resolver.queue_depth = 0
    resolver.max_queue_depth = 100
    resolver.retry_backlog = 0
    return resolver


@pytest.fixture
def state(make_tx, now):
    """
    State machine holding:
        "a" replaced by "b" (pending), "c" pending.
    """
    machine = MempoolStateMachine(clock=lambda: now)
    for seq, seed in enumerate(("a", "b", "c"), start=1):
        machine.apply(TxAdded(sequence=seq, tx=make_tx(seed), seen_at=now))
    machine.apply(
        TxRemoved(
            sequence=4,
            txid=make_tx("a").txid,
            reason=RemovalReason.REPLACED,
            replaced_by=make_tx("b").txid,
        )
    )
    return machine


@pytest.fixture
def mock_pipeline(state, make_tx, now):
    """Pipeline double over a real state machine; "b" has a score."""
    engine = SignalEngine(default_registry())
    scored_b = engine.score(pending_analysis(make_tx("b"), now), RuleContext(now=now))

    pipeline = MagicMock()
    pipeline.state = state
    pipeline.stats = PipelineStats(events_received=4)
    pipeline.sequence = SequenceTracker()
    pipeline.resync_required = False
    pipeline.last_event_at = datetime.now(timezone.utc) - timedelta(seconds=5)
    pipeline.latest_score = MagicMock(
        side_effect=lambda txid: scored_b if txid == scored_b.txid else None
    )
    return pipeline


@pytest.fixture
def publisher():
    return EventPublisher()
