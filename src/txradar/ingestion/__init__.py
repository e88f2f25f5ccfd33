"""
Ingestion Layer - Lifecycle event feeds.

This module provides:
    - EventDecoder: Feed message -> TxAdded / TxRemoved / block events
    - RawTxBuffer: Bounded store for the parallel raw-transaction stream
    - QueueFeed: In-process feed backed by an asyncio.Queue
    - JsonLinesFeed: Newline-delimited JSON from a file or stdin
"""

from .feed import (
    REMOVAL_REASONS,
    EventDecoder,
    FeedStats,
    JsonLinesFeed,
    MalformedEventError,
    QueueFeed,
    RawTxBuffer,
)

__all__ = [
    "REMOVAL_REASONS",
    "EventDecoder",
    "FeedStats",
    "JsonLinesFeed",
    "MalformedEventError",
    "QueueFeed",
    "RawTxBuffer",
]
