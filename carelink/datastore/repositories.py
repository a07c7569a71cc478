"""
Repository layer - data access for the key/value table
"""

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from carelink.datastore.models import KeyValueDB


class KeyValueRepository:
    """Key/value repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(KeyValueDB.value).where(KeyValueDB.key == key)
        )
        return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        row = await self.session.get(KeyValueDB, key)
        if row is None:
            self.session.add(KeyValueDB(key=key, value=value))
        else:
            row.value = value

    async def remove(self, key: str) -> None:
        await self.session.execute(delete(KeyValueDB).where(KeyValueDB.key == key))

    async def remove_many(self, keys: list[str]) -> None:
        if not keys:
            return
        await self.session.execute(delete(KeyValueDB).where(KeyValueDB.key.in_(keys)))
        logger.debug(f"Removed {len(keys)} keys")

    async def keys(self) -> list[str]:
        result = await self.session.execute(select(KeyValueDB.key))
        return list(result.scalars().all())
