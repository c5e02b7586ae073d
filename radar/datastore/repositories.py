"""
数据库Repository层 - 封装键值存储的数据访问逻辑
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from radar.datastore.models import KeyValueDB
from radar.exceptions import StoreUnavailable

# 流水线使用的四个逻辑集合
SNAPSHOTS = "snapshots"
BASELINES = "baselines"
VELOCITY_HISTORY = "velocity_history"
CURRENT_EVENTS = "current_events"


class KeyValueRepository:
    """键值表Repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, collection: str, key: str) -> Any | None:
        """读取单个值"""
        result = await self.session.execute(
            select(KeyValueDB).where(
                KeyValueDB.collection == collection,
                KeyValueDB.key == key,
            )
        )
        row = result.scalar_one_or_none()
        return json.loads(row.value_json) if row else None

    async def put(self, collection: str, key: str, value: Any) -> None:
        """写入（存在则更新）"""
        result = await self.session.execute(
            select(KeyValueDB).where(
                KeyValueDB.collection == collection,
                KeyValueDB.key == key,
            )
        )
        row = result.scalar_one_or_none()
        value_json = json.dumps(value, ensure_ascii=False)

        if row:
            row.value_json = value_json
            row.updated_at = datetime.now()
        else:
            self.session.add(
                KeyValueDB(
                    collection=collection,
                    key=key,
                    value_json=value_json,
                    updated_at=datetime.now(),
                )
            )

    async def delete(self, collection: str, key: str) -> None:
        """删除单个键"""
        await self.session.execute(
            delete(KeyValueDB).where(
                KeyValueDB.collection == collection,
                KeyValueDB.key == key,
            )
        )

    async def keys(self, collection: str) -> list[str]:
        """列出集合内所有键"""
        result = await self.session.execute(
            select(KeyValueDB.key).where(KeyValueDB.collection == collection)
        )
        return sorted(result.scalars().all())

    async def load_all(self, collection: str) -> dict[str, Any]:
        """读取整个集合"""
        result = await self.session.execute(
            select(KeyValueDB).where(KeyValueDB.collection == collection)
        )
        loaded = {}
        for row in result.scalars().all():
            try:
                loaded[row.key] = json.loads(row.value_json)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping unreadable {collection}/{row.key}: {e}")
        return loaded


class KeyValueStore(ABC):
    """
    Read/write contract the pipeline persists through.

    Implementations raise StoreUnavailable on any backend failure.
    """

    @abstractmethod
    async def get(self, collection: str, key: str) -> Any | None: ...

    @abstractmethod
    async def put_many(self, collection: str, values: dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None: ...

    @abstractmethod
    async def load_all(self, collection: str) -> dict[str, Any]: ...

    async def put(self, collection: str, key: str, value: Any) -> None:
        await self.put_many(collection, {key: value})


class SqlKeyValueStore(KeyValueStore):
    """KeyValueStore backed by the SQLAlchemy async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, collection: str, key: str) -> Any | None:
        try:
            async with self._session_factory() as session:
                return await KeyValueRepository(session).get(collection, key)
        except SQLAlchemyError as e:
            raise StoreUnavailable(collection, str(e), key=key) from e

    async def put_many(self, collection: str, values: dict[str, Any]) -> None:
        try:
            async with self._session_factory() as session:
                repo = KeyValueRepository(session)
                for key, value in values.items():
                    await repo.put(collection, key, value)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(collection, str(e)) from e

    async def delete(self, collection: str, key: str) -> None:
        try:
            async with self._session_factory() as session:
                await KeyValueRepository(session).delete(collection, key)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(collection, str(e), key=key) from e

    async def load_all(self, collection: str) -> dict[str, Any]:
        try:
            async with self._session_factory() as session:
                return await KeyValueRepository(session).load_all(collection)
        except SQLAlchemyError as e:
            raise StoreUnavailable(collection, str(e)) from e


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store for tests and database-less runs."""

    def __init__(self):
        self.data: dict[str, dict[str, Any]] = {}

    async def get(self, collection: str, key: str) -> Any | None:
        return self.data.get(collection, {}).get(key)

    async def put_many(self, collection: str, values: dict[str, Any]) -> None:
        # Round-trip through JSON so callers see the same types as with SQL
        self.data.setdefault(collection, {}).update(
            {k: json.loads(json.dumps(v)) for k, v in values.items()}
        )

    async def delete(self, collection: str, key: str) -> None:
        self.data.get(collection, {}).pop(key, None)

    async def load_all(self, collection: str) -> dict[str, Any]:
        return dict(self.data.get(collection, {}))
