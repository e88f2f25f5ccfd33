"""
Base repository class for async PostgreSQL access.
"""
from __future__ import annotations

from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from txradar.storage.database import Database

T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """
    Base class for async repositories.

    Subclasses define table name, key column and model type.
    """

    table_name: str
    key_column: str = "id"
    model_class: Type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record_to_model(self, record) -> Optional[T]:
        """Convert asyncpg Record to Pydantic model."""
        if record is None:
            return None
        return self.model_class(**dict(record))

    def _records_to_models(self, records) -> list[T]:
        return [self._record_to_model(r) for r in records]

    async def get(self, key) -> Optional[T]:
        query = f"SELECT * FROM {self.table_name} WHERE {self.key_column} = $1"
        return self._record_to_model(await self.db.fetchrow(query, key))

    async def exists(self, key) -> bool:
        query = f"SELECT 1 FROM {self.table_name} WHERE {self.key_column} = $1"
        return await self.db.fetchval(query, key) is not None

    async def count(self) -> int:
        """Count all records in table."""
        return await self.db.fetchval(f"SELECT COUNT(*) FROM {self.table_name}")
