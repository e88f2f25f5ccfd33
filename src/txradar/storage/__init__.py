"""
Storage Layer - Optional PostgreSQL signal history.

Built on asyncpg for async database access. Only used when DATABASE_URL
is configured; the radar runs without it.

Public API:
    Database, DatabaseConfig - Connection pool management
    SignalRecord - Latest score of one transaction (tx_signals row)
    SignalRepository - Upserts and queries over tx_signals
    SignalHistoryRecorder - Batched persistence of published scores
"""
from txradar.storage.database import Database, DatabaseConfig
from txradar.storage.history import SignalHistoryRecorder
from txradar.storage.models import SignalRecord
from txradar.storage.repositories import BaseRepository, SignalRepository

__all__ = [
    "Database",
    "DatabaseConfig",
    "SignalHistoryRecorder",
    "SignalRecord",
    "BaseRepository",
    "SignalRepository",
]
