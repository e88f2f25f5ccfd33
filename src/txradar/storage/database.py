"""
Async PostgreSQL access for signal history.

History is best-effort: the radar keeps scoring while the database is
down. A broken connection discards the pool and the next query builds a
new one. Queries retry connection failures a few times with backoff and
then raise, leaving the caller (the history recorder) to keep its batch.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Sequence

import asyncpg
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Errors that mean the connection (not the query) is broken
CONNECTION_ERRORS = (
    asyncpg.InterfaceError,
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.ConnectionFailureError,
    OSError,
)


class DatabaseConfig(BaseModel):
    """PostgreSQL pool for the tx_signals table."""

    model_config = ConfigDict(frozen=True)

    url: str
    min_connections: int = 1
    max_connections: int = 4
    command_timeout: float = 30.0

    # Connection-failure retries per query
    retry_attempts: int = 3
    retry_initial_delay: float = 0.2
    retry_max_delay: float = 5.0


class Database:
    """
    Usage:
        db = Database(DatabaseConfig(url=config.history.database_url))
        await db.initialize()

        rows = await db.fetch("SELECT * FROM tx_signals WHERE score >= $1", 60.0)
        await db.executemany("INSERT INTO tx_signals ...", rows)

        await db.close()
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()
        self._closed = False
        self.reconnects = 0

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """Create the pool. Connection errors propagate: history was requested."""
        await self._get_pool()
        logger.info(
            f"Database pool initialized "
            f"(min={self.config.min_connections}, max={self.config.max_connections})"
        )

    async def close(self) -> None:
        self._closed = True
        await self._discard_pool()
        logger.info("Database pool closed")

    async def _get_pool(self) -> asyncpg.Pool:
        if self._closed:
            raise RuntimeError("Database is closed")
        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self.config.url,
                    min_size=self.config.min_connections,
                    max_size=self.config.max_connections,
                    command_timeout=self.config.command_timeout,
                )
            return self._pool

    async def _discard_pool(self) -> None:
        pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            await pool.close()
        except Exception as e:
            logger.debug(f"Ignoring error closing stale pool: {e}")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Pooled connection. A connection failure discards the pool."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except CONNECTION_ERRORS as e:
            logger.warning(f"Database connection lost: {e}")
            self.reconnects += 1
            await self._discard_pool()
            raise

    async def _run(self, operation: Callable[[asyncpg.Connection], Awaitable[Any]]) -> Any:
        delay = self.config.retry_initial_delay
        for attempt in range(1, self.config.retry_attempts + 1):
            try:
                async with self.connection() as conn:
                    return await operation(conn)
            except CONNECTION_ERRORS as e:
                if attempt == self.config.retry_attempts:
                    logger.error(f"Database unavailable after {attempt} attempts: {e}")
                    raise
                logger.warning(f"Database attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.retry_max_delay)

    async def execute(self, query: str, *args) -> str:
        return await self._run(lambda conn: conn.execute(query, *args))

    async def executemany(self, query: str, args: Iterable[Sequence]) -> None:
        """Run the statement for every row inside one transaction."""
        rows = list(args)

        async def write(conn: asyncpg.Connection) -> None:
            async with conn.transaction():
                await conn.executemany(query, rows)

        await self._run(write)

    async def fetch(self, query: str, *args) -> list[asyncpg.Record]:
        return await self._run(lambda conn: conn.fetch(query, *args))

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        return await self._run(lambda conn: conn.fetchrow(query, *args))

    async def fetchval(self, query: str, *args):
        return await self._run(lambda conn: conn.fetchval(query, *args))
