"""
Tests for the SQLite prevout cache.
"""
import sqlite3
from datetime import datetime, timezone

import pytest

from txradar.core import PrevoutRecord
from txradar.resolver import CacheError, PrevoutCache


def record(txid="aa" * 32, vout=0, value=50_000, height=800_000):
    return PrevoutRecord(
        txid=txid,
        vout=vout,
        value=value,
        script_type="p2wpkh",
        block_height=height,
        block_time=datetime(2023, 7, 1, tzinfo=timezone.utc) if height else None,
        resolved_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
    )


class TestPrevoutCache:
    """Point reads and write-once inserts."""

    def test_miss_then_hit(self, cache):
        assert cache.get("aa" * 32, 0) is None
        assert cache.misses == 1

        assert cache.put(record())

        found = cache.get("aa" * 32, 0)
        assert found == record()
        assert cache.hits == 1

    def test_write_once(self, cache):
        cache.put(record(value=50_000))

        assert not cache.put(record(value=99_999))
        assert cache.get("aa" * 32, 0).value == 50_000

    def test_put_many_counts_new_rows(self, cache):
        records = [record(vout=i) for i in range(3)]

        assert cache.put_many(records) == 3
        assert cache.put_many(records) == 0
        assert cache.count() == 3

    def test_put_many_empty(self, cache):
        assert cache.put_many([]) == 0

    def test_timestamps_roundtrip_as_utc(self, cache):
        cache.put(record())
        found = cache.get("aa" * 32, 0)

        assert found.block_time.tzinfo is not None
        assert found.block_time == datetime(2023, 7, 1, tzinfo=timezone.utc)

    def test_persists_across_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "cache.db")
        first = PrevoutCache(path)
        first.open()
        first.put(record())
        first.close()

        second = PrevoutCache(path)
        second.open()
        try:
            assert second.get("aa" * 32, 0) is not None
        finally:
            second.close()

    def test_ping(self, cache):
        assert cache.is_open
        assert cache.ping()

    @pytest.mark.asyncio
    async def test_async_wrappers(self, cache):
        assert await cache.aput_many([record(vout=5)]) == 1
        found = await cache.aget("aa" * 32, 5)
        assert found.vout == 5


class TestOpenFailure:
    def test_unopenable_path_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        cache = PrevoutCache(str(blocker / "cache.db"))

        with pytest.raises(CacheError):
            cache.open()


class TestIoFailures:
    """After open, I/O errors degrade to misses and skipped writes."""

    @pytest.fixture
    def broken(self, cache, monkeypatch):
        def fail():
            raise sqlite3.OperationalError("unable to open database file")

        monkeypatch.setattr(cache, "_connection", fail)
        return cache

    def test_read_failure_is_a_miss(self, broken):
        assert broken.get("aa" * 32, 0) is None
        assert broken.errors == 1
        assert broken.hits == 0

    def test_write_failure_writes_nothing(self, broken):
        assert broken.put_many([record(), record(vout=1)]) == 0
        assert not broken.put(record())
        assert broken.errors == 2

    def test_ping_and_count_report_failure(self, broken):
        assert not broken.ping()
        assert broken.count() == 0

    @pytest.mark.asyncio
    async def test_async_wrappers_do_not_raise(self, broken):
        assert await broken.aget("aa" * 32, 0) is None
        assert await broken.aput_many([record()]) == 0
