"""
Lifecycle event feed adapters.

The pipeline consumes any async iterator of LifecycleEvent. This module
decodes the newline-delimited JSON form of the node's notifications:

    {"seq": 41, "type": "added", "txid": "...", "raw": "0200..."}
    {"seq": 42, "type": "removed", "txid": "...", "reason": "replaced",
     "replaced_by": "..."}
    {"seq": 43, "type": "block_connected", "block_hash": "...", "height": 850000}
    {"seq": 44, "type": "block_disconnected", "block_hash": "..."}
    {"type": "rawtx", "txid": "...", "raw": "0200..."}

"rawtx" messages come from a parallel raw-transaction stream. They carry no
sequence number and only fill the RawTxBuffer, from which Added events
without inline bytes are completed.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TextIO

from txradar.core.events import (
    BlockConnected,
    BlockDisconnected,
    LifecycleEvent,
    TxAdded,
    TxRemoved,
)
from txradar.core.models import RemovalReason
from txradar.core.tx_parser import MalformedTransactionError, parse_transaction

logger = logging.getLogger(__name__)

# Node removal reasons -> lifecycle reasons
REMOVAL_REASONS: dict[str, RemovalReason] = {
    "confirmed": RemovalReason.CONFIRMED,
    "block": RemovalReason.CONFIRMED,
    "replaced": RemovalReason.REPLACED,
    "evicted": RemovalReason.EVICTED,
    "expiry": RemovalReason.EVICTED,
    "sizelimit": RemovalReason.EVICTED,
    "reorg": RemovalReason.EVICTED,
    "conflict": RemovalReason.CONFLICT,
    "unknown": RemovalReason.UNKNOWN,
}


class MalformedEventError(ValueError):
    """Raised when a feed message cannot be decoded into an event."""
    pass


class RawTxBuffer:
    """
    Bounded LRU of raw transaction bytes keyed by txid.

    Holds bytes from the raw-transaction stream until the matching Added
    event consumes them.
    """

    def __init__(self, maxsize: int = 10_000) -> None:
        self._maxsize = maxsize
        self._items: OrderedDict[str, bytes] = OrderedDict()
        self.evicted = 0

    def put(self, txid: str, raw: bytes) -> None:
        if txid in self._items:
            self._items.move_to_end(txid)
        self._items[txid] = raw
        while len(self._items) > self._maxsize:
            self._items.popitem(last=False)
            self.evicted += 1

    def pop(self, txid: str) -> Optional[bytes]:
        return self._items.pop(txid, None)

    def __contains__(self, txid: str) -> bool:
        return txid in self._items

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class FeedStats:
    lines_read: int = 0
    events_decoded: int = 0
    raw_buffered: int = 0
    malformed: int = 0


class EventDecoder:
    """
    Turns feed messages into lifecycle events.

    Usage:
        decoder = EventDecoder(raw_buffer=RawTxBuffer())
        event = decoder.decode({"seq": 1, "type": "added", "raw": "02..."})
    """

    def __init__(self, raw_buffer: Optional[RawTxBuffer] = None) -> None:
        self.raw_buffer = raw_buffer

    def decode(self, message: Any) -> Optional[LifecycleEvent]:
        """
        Decode one message.

        Returns:
            The event, or None for messages that only feed the raw buffer.

        Raises:
            MalformedEventError: Unknown type or missing/invalid fields
        """
        if not isinstance(message, dict):
            raise MalformedEventError(f"Expected an object, got {type(message).__name__}")

        msg_type = message.get("type")

        if msg_type == "rawtx":
            self._buffer_raw(message)
            return None

        sequence = self._sequence(message)

        if msg_type == "added":
            raw = self._raw(message)
            txid = self._optional_str(message, "txid")
            if raw is None and txid is None:
                raise MalformedEventError("added event needs 'raw' or 'txid'")
            return TxAdded(sequence=sequence, txid=txid, raw=raw)

        if msg_type == "removed":
            reason_name = str(message.get("reason") or "unknown").lower()
            reason = REMOVAL_REASONS.get(reason_name)
            if reason is None:
                logger.debug(f"Unrecognised removal reason '{reason_name}', treating as unknown")
                reason = RemovalReason.UNKNOWN
            return TxRemoved(
                sequence=sequence,
                txid=self._required_str(message, "txid"),
                reason=reason,
                replaced_by=self._optional_str(message, "replaced_by"),
            )

        if msg_type in ("block_connected", "block_disconnected"):
            cls = BlockConnected if msg_type == "block_connected" else BlockDisconnected
            return cls(
                sequence=sequence,
                block_hash=self._required_str(message, "block_hash"),
                height=self._optional_int(message, "height"),
            )

        raise MalformedEventError(f"Unknown event type '{msg_type}'")

    def _buffer_raw(self, message: dict) -> None:
        raw = self._raw(message)
        if raw is None:
            raise MalformedEventError("rawtx message without 'raw'")
        txid = self._optional_str(message, "txid")
        if txid is None:
            try:
                txid = parse_transaction(raw).txid
            except MalformedTransactionError as e:
                raise MalformedEventError(f"Undecodable rawtx payload: {e}") from e
        if self.raw_buffer is not None:
            self.raw_buffer.put(txid, raw)

    @staticmethod
    def _sequence(message: dict) -> Optional[int]:
        value = message.get("seq")
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise MalformedEventError(f"Invalid sequence number {value!r}")
        return value

    @staticmethod
    def _raw(message: dict) -> Optional[bytes]:
        value = message.get("raw")
        if value is None:
            return None
        if not isinstance(value, str):
            raise MalformedEventError("'raw' must be a hex string")
        try:
            return bytes.fromhex(value)
        except ValueError as e:
            raise MalformedEventError(f"'raw' is not valid hex: {e}") from e

    @staticmethod
    def _required_str(message: dict, key: str) -> str:
        value = message.get(key)
        if not isinstance(value, str) or not value:
            raise MalformedEventError(f"Missing or invalid '{key}'")
        return value

    @staticmethod
    def _optional_str(message: dict, key: str) -> Optional[str]:
        value = message.get(key)
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            raise MalformedEventError(f"'{key}' must be a string")
        return value

    @staticmethod
    def _optional_int(message: dict, key: str) -> Optional[int]:
        value = message.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedEventError(f"'{key}' must be an integer")
        return value


class QueueFeed:
    """
    Async iterator over an asyncio.Queue of events, for embedding.

    Usage:
        feed = QueueFeed()
        task = asyncio.create_task(pipeline.run(feed))
        await feed.put(TxAdded(...))
        feed.close()
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def put(self, event: LifecycleEvent) -> None:
        await self._queue.put(event)

    def put_nowait(self, event: LifecycleEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> "QueueFeed":
        return self

    async def __anext__(self) -> LifecycleEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


class JsonLinesFeed:
    """
    Newline-delimited JSON feed read from a file or stdin.

    A piped stdin is read through an asyncio stream; regular files (and
    stdin redirected from one) are read on a worker thread. Blank lines are
    heartbeats; undecodable lines are logged and skipped.

    Usage:
        feed = JsonLinesFeed("-", decoder=EventDecoder(raw_buffer))
        await pipeline.run(feed)
    """

    def __init__(
        self,
        source: str = "-",
        decoder: Optional[EventDecoder] = None,
        line_limit: int = 2**22,
    ) -> None:
        self.source = source
        self.line_limit = line_limit
        self.decoder = decoder or EventDecoder()
        self.stats = FeedStats()
        self._closed = False

    def close(self) -> None:
        """Stop after the line currently being read."""
        self._closed = True

    def __aiter__(self) -> AsyncIterator[LifecycleEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[LifecycleEvent]:
        stream: Optional[TextIO] = None
        if self.source == "-":
            readline = await self._stdin_reader()
            logger.info("Reading lifecycle events from stdin")
        else:
            stream = open(self.source, encoding="utf-8", errors="replace")
            readline = partial(asyncio.to_thread, stream.readline)
            logger.info(f"Reading lifecycle events from {self.source}")

        try:
            while not self._closed:
                try:
                    line = await readline()
                except ValueError as e:
                    # Stream reader drops a line longer than line_limit
                    self.stats.malformed += 1
                    logger.warning(f"Skipping overlong feed line: {e}")
                    continue
                if not line:
                    logger.info("Event feed reached end of input")
                    break
                if isinstance(line, bytes):
                    line = line.decode("utf-8", errors="replace")
                self.stats.lines_read += 1
                for event in self._decode_line(line):
                    yield event
        finally:
            if stream is not None:
                stream.close()

    async def _stdin_reader(self) -> Callable[[], Awaitable[Any]]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.line_limit)
        try:
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
            )
        except (ValueError, OSError):
            # Redirected from a regular file, which never blocks for long
            return partial(asyncio.to_thread, sys.stdin.readline)
        return reader.readline

    def _decode_line(self, line: str) -> list[LifecycleEvent]:
        line = line.strip()
        if not line:
            return []

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            self.stats.malformed += 1
            logger.warning(f"Failed to parse feed line: {e}")
            return []

        messages = data if isinstance(data, list) else [data]
        events = []
        for message in messages:
            try:
                event = self.decoder.decode(message)
            except MalformedEventError as e:
                self.stats.malformed += 1
                logger.warning(f"Skipping malformed feed message: {e}")
                continue
            if event is None:
                self.stats.raw_buffered += 1
                continue
            self.stats.events_decoded += 1
            events.append(event)
        return events
