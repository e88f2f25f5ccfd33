"""
Signal history recorder.

Listens on the publisher and persists the latest ScoredTx per transaction
in batches. Only scores at or above min_score_persist are written, plus
later revisions of transactions already written (so a correction that
lowers a score still reaches the table).
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Optional

from txradar.config import HistoryConfig
from txradar.core.models import ScoredTx
from txradar.core.publisher import PublishedMessage

from .models import SignalRecord
from .repositories.signal_repo import SignalRepository

logger = logging.getLogger(__name__)

# Txids remembered as persisted, for forwarding their corrections
_PERSISTED_MEMORY = 100_000


class SignalHistoryRecorder:
    """
    Usage:
        recorder = SignalHistoryRecorder(SignalRepository(db), config.history)
        publisher.add_listener(recorder.on_message)

        # From the background loop
        await recorder.flush()

        await recorder.close()
    """

    def __init__(self, repo: SignalRepository, config: Optional[HistoryConfig] = None) -> None:
        self._repo = repo
        self.config = config or HistoryConfig()
        self._buffer: OrderedDict[str, SignalRecord] = OrderedDict()
        self._persisted: OrderedDict[str, None] = OrderedDict()
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None

        self.written = 0
        self.dropped = 0
        self.failures = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def on_message(self, message: PublishedMessage) -> None:
        """Publisher listener. Ignores everything but ScoredTx."""
        if not isinstance(message, ScoredTx):
            return
        if message.score < self.config.min_score_persist and message.txid not in self._persisted:
            return

        current = self._buffer.get(message.txid)
        if current is not None and current.revision > message.revision:
            return

        self._buffer[message.txid] = SignalRecord.from_scored(message)
        self._buffer.move_to_end(message.txid)

        if len(self._buffer) >= self.config.batch_size and not self._flush_running():
            self._flush_task = asyncio.create_task(self.flush())

    def _flush_running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    async def flush(self) -> int:
        """
        Write buffered records. Returns how many were written.

        On failure the batch goes back into the buffer (newer revisions that
        arrived meanwhile win) and is retried on the next flush.
        """
        async with self._flush_lock:
            if not self._buffer:
                return 0

            batch = list(self._buffer.values())
            self._buffer.clear()

            try:
                written = await self._repo.upsert_many(batch)
            except asyncio.CancelledError:
                self._restore(batch)
                raise
            except Exception as e:
                self.failures += 1
                logger.error(f"Signal history flush of {len(batch)} records failed: {e}")
                self._restore(batch)
                return 0

            for record in batch:
                self._persisted[record.txid] = None
                self._persisted.move_to_end(record.txid)
            while len(self._persisted) > _PERSISTED_MEMORY:
                self._persisted.popitem(last=False)

            self.written += written
            return written

    def _restore(self, batch: list[SignalRecord]) -> None:
        pending = self._buffer
        self._buffer = OrderedDict((r.txid, r) for r in batch)
        for txid, record in pending.items():
            self._buffer[txid] = record
            self._buffer.move_to_end(txid)

        overflow = len(self._buffer) - self.config.max_buffered
        if overflow > 0:
            for _ in range(overflow):
                self._buffer.popitem(last=False)
            self.dropped += overflow
            logger.warning(f"Signal history buffer full, dropped {overflow} oldest records")

    async def close(self) -> None:
        """Final flush at shutdown."""
        if self._flush_running():
            await asyncio.gather(self._flush_task, return_exceptions=True)
        written = await self.flush()
        if self._buffer:
            logger.warning(f"Signal history closing with {len(self._buffer)} unwritten records")
        logger.info(f"Signal history closed ({self.written} written, final batch {written})")
