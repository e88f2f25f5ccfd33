"""
Prevout Cache - persisted funding-output metadata in SQLite.

The database runs in WAL mode so resolver workers keep reading while a
write is in flight. Each thread gets its own connection; async callers use
the a* wrappers, which run on the default executor.

Only opening the store is fatal (CacheError at startup). Any later I/O
failure is logged and reported as a miss / skipped write so resolution
falls through to the remote lookup.

Usage:
    cache = PrevoutCache("data/utxo_cache.db")
    cache.open()
    record = await cache.aget(txid, vout)
    await cache.aput_many([record])
    cache.close()
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from txradar.core.models import PrevoutRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS utxo_cache (
    txid         TEXT    NOT NULL,
    vout         INTEGER NOT NULL,
    value        INTEGER NOT NULL,
    script_type  TEXT    NOT NULL,
    block_height INTEGER,
    block_time   INTEGER,
    resolved_at  INTEGER NOT NULL,
    PRIMARY KEY (txid, vout)
)
"""


class CacheError(Exception):
    """The cache store could not be opened."""
    pass


def _to_epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value is not None else None


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


class PrevoutCache:
    """
    Keyed store of resolved prevouts, (txid, vout) -> PrevoutRecord.

    Thread-safe via per-thread connections. Rows are write-once:
    INSERT OR IGNORE keeps the first record for a key.
    """

    def __init__(self, path: str, timeout: float = 5.0) -> None:
        self._path = path
        self._timeout = timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._opened = False

        self.hits = 0
        self.misses = 0
        self.errors = 0

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        """
        Create the file and schema and switch to WAL mode.

        Raises:
            CacheError: If the store cannot be opened
        """
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            conn = self._connection()
            mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
            conn.execute(SCHEMA)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise CacheError(f"Cannot open prevout cache at {self._path}: {e}") from e

        self._opened = True
        logger.info(f"Prevout cache opened at {self._path} (journal_mode={mode})")

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing cache connection: {e}")
            self._connections.clear()
        self._local = threading.local()
        self._opened = False
        logger.info("Prevout cache closed")

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._path,
                timeout=self._timeout,
                check_same_thread=False,
            )
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    # =========================================================================
    # Point operations
    # =========================================================================

    def get(self, txid: str, vout: int) -> Optional[PrevoutRecord]:
        """Point lookup. Returns None on miss or on I/O failure."""
        try:
            row = self._connection().execute(
                """
                SELECT value, script_type, block_height, block_time, resolved_at
                FROM utxo_cache
                WHERE txid = ? AND vout = ?
                """,
                (txid, vout),
            ).fetchone()
        except sqlite3.Error as e:
            self.errors += 1
            logger.warning(f"Cache read failed for {txid}:{vout}: {e}")
            return None

        if row is None:
            self.misses += 1
            return None

        self.hits += 1
        value, script_type, block_height, block_time, resolved_at = row
        return PrevoutRecord(
            txid=txid,
            vout=vout,
            value=value,
            script_type=script_type,
            block_height=block_height,
            block_time=_from_epoch(block_time),
            resolved_at=_from_epoch(resolved_at),
        )

    def put(self, record: PrevoutRecord) -> bool:
        return self.put_many([record]) > 0

    def put_many(self, records: Iterable[PrevoutRecord]) -> int:
        """Write records in one transaction. Returns rows written (0 on failure)."""
        rows = [
            (
                r.txid,
                r.vout,
                r.value,
                r.script_type,
                r.block_height,
                _to_epoch(r.block_time),
                _to_epoch(r.resolved_at),
            )
            for r in records
        ]
        if not rows:
            return 0

        try:
            conn = self._connection()
            with conn:
                cursor = conn.executemany(
                    """
                    INSERT OR IGNORE INTO utxo_cache
                        (txid, vout, value, script_type, block_height, block_time, resolved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
            return cursor.rowcount
        except sqlite3.Error as e:
            self.errors += 1
            logger.warning(f"Cache write of {len(rows)} records failed: {e}")
            return 0

    def count(self) -> int:
        try:
            return self._connection().execute("SELECT COUNT(*) FROM utxo_cache").fetchone()[0]
        except sqlite3.Error as e:
            logger.warning(f"Cache count failed: {e}")
            return 0

    def ping(self) -> bool:
        try:
            self._connection().execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Cache ping failed: {e}")
            return False

    # =========================================================================
    # Async wrappers
    # =========================================================================

    async def aget(self, txid: str, vout: int) -> Optional[PrevoutRecord]:
        return await asyncio.to_thread(self.get, txid, vout)

    async def aput_many(self, records: Iterable[PrevoutRecord]) -> int:
        return await asyncio.to_thread(self.put_many, list(records))
