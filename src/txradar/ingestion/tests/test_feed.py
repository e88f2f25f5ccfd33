"""
Tests for lifecycle feed decoding and feed adapters.

These tests verify:
- Decoding of every message type and removal reason
- Rejection of malformed messages without stopping the feed
- The raw-transaction side stream filling RawTxBuffer
- QueueFeed and JsonLinesFeed iteration
"""
import asyncio
import json

import pytest

from txradar.core import (
    BlockConnected,
    BlockDisconnected,
    RemovalReason,
    TxAdded,
    TxRemoved,
    parse_transaction,
)
from txradar.ingestion import (
    EventDecoder,
    JsonLinesFeed,
    MalformedEventError,
    QueueFeed,
    RawTxBuffer,
)

TXID = "ab" * 32


@pytest.fixture
def raw_hex(raw_tx_builder):
    return raw_tx_builder([("11" * 32, 0)], [50_000]).hex()


@pytest.fixture
def decoder():
    return EventDecoder(raw_buffer=RawTxBuffer())


# =============================================================================
# Decoder
# =============================================================================


class TestEventDecoder:
    """Tests for message -> event decoding."""

    def test_added_with_raw(self, decoder, raw_hex):
        event = decoder.decode({"seq": 1, "type": "added", "raw": raw_hex})

        assert isinstance(event, TxAdded)
        assert event.sequence == 1
        assert event.raw == bytes.fromhex(raw_hex)
        assert event.txid is None

    def test_added_txid_only(self, decoder):
        event = decoder.decode({"seq": 2, "type": "added", "txid": TXID})
        assert event.txid == TXID
        assert event.raw is None

    def test_added_without_payload_rejected(self, decoder):
        with pytest.raises(MalformedEventError):
            decoder.decode({"seq": 2, "type": "added"})

    @pytest.mark.parametrize(
        "reason,expected",
        [
            ("confirmed", RemovalReason.CONFIRMED),
            ("block", RemovalReason.CONFIRMED),
            ("replaced", RemovalReason.REPLACED),
            ("expiry", RemovalReason.EVICTED),
            ("sizelimit", RemovalReason.EVICTED),
            ("conflict", RemovalReason.CONFLICT),
            ("SIZELIMIT", RemovalReason.EVICTED),
            ("something-new", RemovalReason.UNKNOWN),
            (None, RemovalReason.UNKNOWN),
        ],
    )
    def test_removal_reasons(self, decoder, reason, expected):
        event = decoder.decode({"seq": 3, "type": "removed", "txid": TXID, "reason": reason})

        assert isinstance(event, TxRemoved)
        assert event.reason is expected

    def test_replaced_by_carried(self, decoder):
        event = decoder.decode(
            {"seq": 4, "type": "removed", "txid": TXID, "reason": "replaced", "replaced_by": "cd" * 32}
        )
        assert event.replaced_by == "cd" * 32

    def test_block_events(self, decoder):
        connected = decoder.decode(
            {"seq": 5, "type": "block_connected", "block_hash": "00" * 32, "height": 850_000}
        )
        disconnected = decoder.decode(
            {"seq": 6, "type": "block_disconnected", "block_hash": "00" * 32}
        )

        assert isinstance(connected, BlockConnected)
        assert connected.height == 850_000
        assert isinstance(disconnected, BlockDisconnected)
        assert disconnected.height is None

    @pytest.mark.parametrize(
        "message",
        [
            ["not", "an", "object"],
            {"seq": 1, "type": "mystery"},
            {"seq": -1, "type": "added", "txid": TXID},
            {"seq": "7", "type": "added", "txid": TXID},
            {"seq": True, "type": "added", "txid": TXID},
            {"seq": 1, "type": "added", "raw": "zz"},
            {"seq": 1, "type": "removed"},
            {"seq": 1, "type": "block_connected", "block_hash": "00", "height": "tall"},
        ],
    )
    def test_malformed(self, decoder, message):
        with pytest.raises(MalformedEventError):
            decoder.decode(message)

    def test_rawtx_fills_buffer(self, decoder, raw_hex):
        txid = parse_transaction(bytes.fromhex(raw_hex)).txid

        assert decoder.decode({"type": "rawtx", "raw": raw_hex}) is None
        assert txid in decoder.raw_buffer

    def test_rawtx_with_explicit_txid(self, decoder, raw_hex):
        decoder.decode({"type": "rawtx", "txid": TXID, "raw": raw_hex})
        assert decoder.raw_buffer.pop(TXID) == bytes.fromhex(raw_hex)

    def test_rawtx_undecodable(self, decoder):
        with pytest.raises(MalformedEventError):
            decoder.decode({"type": "rawtx", "raw": "00"})


class TestRawTxBuffer:
    def test_lru_eviction(self):
        buffer = RawTxBuffer(maxsize=2)
        buffer.put("a", b"1")
        buffer.put("b", b"2")
        buffer.put("a", b"1")
        buffer.put("c", b"3")

        assert "b" not in buffer
        assert "a" in buffer
        assert buffer.evicted == 1
        assert len(buffer) == 2

    def test_pop_consumes(self):
        buffer = RawTxBuffer()
        buffer.put("a", b"1")

        assert buffer.pop("a") == b"1"
        assert buffer.pop("a") is None


# =============================================================================
# Feeds
# =============================================================================


class TestQueueFeed:
    @pytest.mark.asyncio
    async def test_yields_until_closed(self):
        feed = QueueFeed()
        events = [TxAdded(sequence=i, txid=TXID) for i in range(3)]
        for event in events:
            feed.put_nowait(event)
        feed.close()

        received = [event async for event in feed]

        assert received == events


class TestJsonLinesFeed:
    """File-backed feed; bad lines are counted and skipped."""

    @pytest.mark.asyncio
    async def test_reads_file(self, tmp_path, raw_hex):
        lines = [
            json.dumps({"seq": 1, "type": "added", "raw": raw_hex}),
            "",
            "{not json",
            json.dumps({"seq": 2, "type": "mystery"}),
            json.dumps([
                {"type": "rawtx", "txid": TXID, "raw": raw_hex},
                {"seq": 3, "type": "added", "txid": TXID},
            ]),
            json.dumps({"seq": 4, "type": "removed", "txid": TXID, "reason": "confirmed"}),
        ]
        path = tmp_path / "events.jsonl"
        path.write_text("\n".join(lines) + "\n")
        buffer = RawTxBuffer()
        feed = JsonLinesFeed(str(path), decoder=EventDecoder(raw_buffer=buffer))

        events = [event async for event in feed]

        assert [e.sequence for e in events] == [1, 3, 4]
        assert TXID in buffer
        assert feed.stats.lines_read == 6
        assert feed.stats.malformed == 2
        assert feed.stats.raw_buffered == 1
        assert feed.stats.events_decoded == 3

    @pytest.mark.asyncio
    async def test_close_stops_iteration(self, tmp_path):
        path = tmp_path / "events.jsonl"
        path.write_text(
            "\n".join(json.dumps({"seq": i, "type": "added", "txid": TXID}) for i in range(10))
        )
        feed = JsonLinesFeed(str(path))

        received = []
        async for event in feed:
            received.append(event)
            feed.close()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        feed = JsonLinesFeed(str(tmp_path / "absent.jsonl"))

        with pytest.raises(FileNotFoundError):
            await asyncio.wait_for(feed.events().__anext__(), timeout=1)

    @pytest.mark.asyncio
    async def test_overlong_stdin_line_skipped(self, monkeypatch):
        reader = asyncio.StreamReader(limit=256)
        oversized = {"seq": 1, "type": "added", "txid": TXID, "pad": "x" * 1000}
        removed = {"seq": 2, "type": "removed", "txid": TXID, "reason": "confirmed"}
        reader.feed_data(json.dumps(oversized).encode() + b"\n")
        reader.feed_data(json.dumps(removed).encode() + b"\n")
        reader.feed_eof()
        feed = JsonLinesFeed("-", line_limit=256)

        async def stdin_reader():
            return reader.readline

        monkeypatch.setattr(feed, "_stdin_reader", stdin_reader)

        events = [event async for event in feed]

        assert [e.sequence for e in events] == [2]
        assert feed.stats.malformed == 1
        assert feed.stats.lines_read == 1
