"""
Resolver layer test fixtures.

The cache is a real SQLite file under tmp_path (":memory:" would give every
worker thread its own empty database). The node is an AsyncMock.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from txradar.config import ResolverConfig
from txradar.resolver import (
    FundingOutput,
    FundingTransaction,
    PrevoutCache,
    PrevoutResolver,
)


# =============================================================================
# Cache Fixtures
# =============================================================================


@pytest.fixture
def cache(tmp_path):
    cache = PrevoutCache(str(tmp_path / "utxo_cache.db"))
    cache.open()
    yield cache
    cache.close()


# =============================================================================
# Node Fixtures
# =============================================================================


@pytest.fixture
def funding_tx():
    """
    Factory for FundingTransaction results.

    Usage:
        funding = funding_tx("aa" * 32, values=[50_000, 70_000], height=800_000)
    """
    def build(txid: str, values=(100_000,), height=800_000, script_type="p2wpkh"):
        confirmed = height is not None
        return FundingTransaction(
            txid=txid,
            outputs=tuple(
                FundingOutput(vout=i, value=v, script_type=script_type)
                for i, v in enumerate(values)
            ),
            block_height=height,
            block_time=datetime(2023, 1, 1, tzinfo=timezone.utc) if confirmed else None,
        )

    return build


@pytest.fixture
def mock_node():
    """RPC client double exposing get_funding_transaction."""
    rpc = MagicMock()
    rpc.get_funding_transaction = AsyncMock()
    return rpc


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def resolver_config():
    return ResolverConfig(
        max_workers=4,
        max_queue_depth=8,
        retry_initial_delay=1.0,
        retry_multiplier=2.0,
        retry_max_delay=10.0,
        retry_max_attempts=2,
        drain_timeout=0.5,
    )


@pytest.fixture
def make_resolver(cache, mock_node, resolver_config, clock):
    def build(config=None) -> PrevoutResolver:
        return PrevoutResolver(cache, mock_node, config or resolver_config, clock=clock)

    return build


@pytest.fixture
def gated_node(mock_node):
    """
    Node whose lookups block until the returned event is set.

    Usage:
        gate = gated_node(result)
        ...
        gate.set()
    """
    def build(result):
        gate = asyncio.Event()

        async def lookup(txid, block_hash=None):
            await gate.wait()
            if isinstance(result, Exception):
                raise result
            return result

        mock_node.get_funding_transaction.side_effect = lookup
        return gate

    return build
