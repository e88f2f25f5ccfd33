"""
Integration test fixtures.

These fixtures assemble the radar's real components around a mocked node
and verify cross-component interactions.
"""
import asyncio
from dataclasses import dataclass

import pytest
import pytest_asyncio

from txradar.config import PipelineConfig, ResolverConfig, StatsConfig
from txradar.core import (
    EventPublisher,
    MempoolStateMachine,
    PipelineOrchestrator,
    Subscription,
)
from txradar.ingestion import QueueFeed
from txradar.resolver import PrevoutCache, PrevoutResolver
from txradar.signals import SignalEngine, default_registry

# Mark all tests in this directory as integration tests
pytestmark = pytest.mark.integration


@dataclass
class RadarStack:
    cache: PrevoutCache
    resolver: PrevoutResolver
    publisher: EventPublisher
    pipeline: PipelineOrchestrator
    feed: QueueFeed
    subscription: Subscription

    async def next_message(self, message_type: str, timeout: float = 5.0) -> dict:
        """Next published message of the given type, as its JSON dict."""
        async def wait():
            while True:
                message = (await self.subscription.get()).to_dict()
                if message["type"] == message_type:
                    return message

        return await asyncio.wait_for(wait(), timeout)

    async def wait_for(self, condition, timeout: float = 5.0) -> None:
        async def wait():
            while not condition():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(wait(), timeout)

    async def settle(self, timeout: float = 5.0) -> None:
        """Wait until no analysis task is running."""
        await self.wait_for(lambda: self.pipeline.active_tasks == 0, timeout)


@pytest.fixture
def resolver_config():
    # Immediate retries; the tests drive them with run_due_retries()
    return ResolverConfig(
        max_workers=4,
        retry_initial_delay=0.0,
        retry_max_attempts=3,
        drain_timeout=1.0,
    )


@pytest_asyncio.fixture
async def radar(tmp_path, mock_bitcoin_rpc, resolver_config):
    """
    Running pipeline consuming a QueueFeed.

    The feed is closed and everything drained after the test.
    """
    cache = PrevoutCache(str(tmp_path / "utxo_cache.db"))
    cache.open()

    resolver = PrevoutResolver(cache, mock_bitcoin_rpc, resolver_config)
    publisher = EventPublisher()
    subscription = publisher.subscribe()
    pipeline = PipelineOrchestrator(
        state=MempoolStateMachine(),
        resolver=resolver,
        engine=SignalEngine(default_registry()),
        publisher=publisher,
        config=PipelineConfig(hot_path_timeout=1.0, correction_window=2.0, drain_timeout=1.0),
        stats_config=StatsConfig(batch_size=1000, interval_seconds=3600),
    )
    feed = QueueFeed()
    task = asyncio.create_task(pipeline.run(feed))

    yield RadarStack(cache, resolver, publisher, pipeline, feed, subscription)

    feed.close()
    await asyncio.wait_for(task, timeout=5.0)
    await pipeline.stop(drain_timeout=1.0)
    cache.close()
