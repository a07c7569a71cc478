"""
PersistentStore - durable key/value text storage.

The cache, the offline queue and the credential mirror all read and write
through this interface. Two backends:
- MemoryStore: dict-backed, process lifetime only
- SQLStore: SQLAlchemy async engine (SQLite by default)
"""

from abc import ABC, abstractmethod

from carelink.datastore.engine import Database
from carelink.datastore.repositories import KeyValueRepository


class PersistentStore(ABC):
    """Async key/value store interface."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def remove(self, key: str) -> None: ...

    @abstractmethod
    async def keys(self) -> list[str]: ...

    async def remove_many(self, keys: list[str]) -> None:
        for key in keys:
            await self.remove(key)


class MemoryStore(PersistentStore):
    """In-memory store."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data.keys())

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class SQLStore(PersistentStore):
    """
    Store backed by the `kv_store` table.

    Usage:
        db = Database("sqlite+aiosqlite:///./carelink.db")
        await db.init()
        store = SQLStore(db)
    """

    def __init__(self, database: Database):
        self.database = database

    async def get(self, key: str) -> str | None:
        async with self.database.session() as session:
            return await KeyValueRepository(session).get(key)

    async def set(self, key: str, value: str) -> None:
        async with self.database.session() as session:
            await KeyValueRepository(session).set(key, value)

    async def remove(self, key: str) -> None:
        async with self.database.session() as session:
            await KeyValueRepository(session).remove(key)

    async def remove_many(self, keys: list[str]) -> None:
        async with self.database.session() as session:
            await KeyValueRepository(session).remove_many(keys)

    async def keys(self) -> list[str]:
        async with self.database.session() as session:
            return await KeyValueRepository(session).keys()
