"""
Count-or-time batching for aggregate statistics snapshots.

A snapshot is due after `batch_size` processed transactions or after
`interval` seconds since the previous snapshot, whichever comes first.
Emitting a snapshot resets both triggers.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class PipelineStats:
    """Runtime counters for the orchestrator."""

    events_received: int = 0
    events_skipped_duplicate: int = 0
    events_skipped_resync: int = 0
    malformed_events: int = 0
    transactions_processed: int = 0
    transitions_published: int = 0
    scores_published: int = 0
    corrections_published: int = 0
    stats_published: int = 0
    resyncs: int = 0
    resync_failures: int = 0
    analysis_errors: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class StatsBatcher:
    """
    Usage:
        batcher = StatsBatcher(batch_size=100, interval=5.0)
        if batcher.record_processed():
            publish(snapshot); batcher.reset()
        ...
        if batcher.time_due():
            publish(snapshot); batcher.reset()
    """

    def __init__(
        self,
        batch_size: int = 100,
        interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._batch_size = batch_size
        self._interval = interval
        self._clock = clock
        self._count = 0
        self._last_emit = clock()

    @property
    def pending(self) -> int:
        """Transactions processed since the last snapshot."""
        return self._count

    def record_processed(self, n: int = 1) -> bool:
        """Count processed transactions; True when the count trigger fires."""
        self._count += n
        return self._count >= self._batch_size

    def time_due(self) -> bool:
        return self._clock() - self._last_emit >= self._interval

    def reset(self) -> int:
        """Mark a snapshot as emitted; returns the count it covered."""
        covered = self._count
        self._count = 0
        self._last_emit = self._clock()
        return covered
