"""
Repository exports.
"""
from txradar.storage.repositories.base import BaseRepository
from txradar.storage.repositories.signal_repo import SCHEMA_SQL, SignalRepository

__all__ = [
    "BaseRepository",
    "SCHEMA_SQL",
    "SignalRepository",
]
