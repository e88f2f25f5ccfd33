"""
Signal history repository.

One row per transaction holding its latest score. A corrected score
overwrites the provisional one; an older revision never overwrites a newer
one.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, Optional

from txradar.storage.models import SignalRecord
from txradar.storage.repositories.base import BaseRepository

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tx_signals (
    txid TEXT PRIMARY KEY,
    score DOUBLE PRECISION NOT NULL,
    tier TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 0,
    rule_scores JSONB NOT NULL DEFAULT '{}'::jsonb,
    prevouts_resolved BOOLEAN NOT NULL DEFAULT FALSE,
    total_input_value BIGINT NOT NULL DEFAULT 0,
    fee BIGINT NOT NULL DEFAULT 0,
    fee_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
    coin_days_destroyed DOUBLE PRECISION NOT NULL DEFAULT 0,
    input_count INTEGER NOT NULL DEFAULT 0,
    output_count INTEGER NOT NULL DEFAULT 0,
    first_seen_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_tx_signals_score ON tx_signals (score DESC);
CREATE INDEX IF NOT EXISTS idx_tx_signals_first_seen ON tx_signals (first_seen_at DESC);
"""

UPSERT_SQL = """
    INSERT INTO tx_signals
    (txid, score, tier, revision, rule_scores, prevouts_resolved,
     total_input_value, fee, fee_rate, coin_days_destroyed,
     input_count, output_count, first_seen_at, updated_at)
    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12, $13, NOW())
    ON CONFLICT (txid) DO UPDATE SET
        score = EXCLUDED.score,
        tier = EXCLUDED.tier,
        revision = EXCLUDED.revision,
        rule_scores = EXCLUDED.rule_scores,
        prevouts_resolved = EXCLUDED.prevouts_resolved,
        total_input_value = EXCLUDED.total_input_value,
        fee = EXCLUDED.fee,
        fee_rate = EXCLUDED.fee_rate,
        coin_days_destroyed = EXCLUDED.coin_days_destroyed,
        updated_at = NOW()
    WHERE tx_signals.revision <= EXCLUDED.revision
"""


class SignalRepository(BaseRepository[SignalRecord]):
    """Repository for per-transaction scores."""

    table_name = "tx_signals"
    key_column = "txid"
    model_class = SignalRecord

    async def ensure_schema(self) -> None:
        """Create the table and indexes if missing."""
        await self.db.execute(SCHEMA_SQL)

    @staticmethod
    def _row(record: SignalRecord) -> tuple:
        return (
            record.txid,
            record.score,
            record.tier,
            record.revision,
            json.dumps(record.rule_scores, sort_keys=True),
            record.prevouts_resolved,
            record.total_input_value,
            record.fee,
            record.fee_rate,
            record.coin_days_destroyed,
            record.input_count,
            record.output_count,
            record.first_seen_at,
        )

    async def upsert(self, record: SignalRecord) -> None:
        await self.db.execute(UPSERT_SQL, *self._row(record))

    async def upsert_many(self, records: Iterable[SignalRecord]) -> int:
        """Write a batch in one transaction. Returns the batch size."""
        rows = [self._row(r) for r in records]
        if not rows:
            return 0
        await self.db.executemany(UPSERT_SQL, rows)
        return len(rows)

    async def get_recent(self, limit: int = 50) -> list[SignalRecord]:
        """Most recently first-seen transactions."""
        query = """
            SELECT * FROM tx_signals
            ORDER BY first_seen_at DESC
            LIMIT $1
        """
        return self._records_to_models(await self.db.fetch(query, limit))

    async def get_above_score(
        self,
        min_score: float,
        limit: int = 100,
    ) -> list[SignalRecord]:
        """Highest-scoring transactions at or above min_score."""
        query = """
            SELECT * FROM tx_signals
            WHERE score >= $1
            ORDER BY score DESC, first_seen_at DESC
            LIMIT $2
        """
        return self._records_to_models(await self.db.fetch(query, min_score, limit))

    async def get_by_timerange(
        self,
        start: datetime,
        end: datetime,
        min_score: Optional[float] = None,
    ) -> list[SignalRecord]:
        """Transactions first seen in [start, end), optionally above a score."""
        if min_score is None:
            query = """
                SELECT * FROM tx_signals
                WHERE first_seen_at >= $1 AND first_seen_at < $2
                ORDER BY first_seen_at
            """
            records = await self.db.fetch(query, start, end)
        else:
            query = """
                SELECT * FROM tx_signals
                WHERE first_seen_at >= $1 AND first_seen_at < $2 AND score >= $3
                ORDER BY first_seen_at
            """
            records = await self.db.fetch(query, start, end, min_score)
        return self._records_to_models(records)

