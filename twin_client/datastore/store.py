"""
SqlCacheStore - 基于SQLAlchemy的持久缓存层，实现CacheStore协议
"""

from datetime import datetime, timezone

from twin_client.datastore.engine import CacheDatabase
from twin_client.datastore.models import CacheRecordDB
from twin_client.datastore.repositories import CacheRecordRepository
from twin_client.services.cache import StoredRecord


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo; values are always written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: CacheRecordDB) -> StoredRecord:
    return StoredRecord(
        key=row.key,
        payload=row.payload,
        fetched_at=_as_utc(row.fetched_at),
        ttl_seconds=row.ttl_seconds,
        etag=row.etag,
    )


class SqlCacheStore:
    """
    Usage:
        database = CacheDatabase("sqlite+aiosqlite:///./twin_cache.db")
        await database.init()
        cache = CacheManager(store=SqlCacheStore(database))
    """

    def __init__(self, database: CacheDatabase):
        self._database = database

    async def get(self, key: str) -> StoredRecord | None:
        async with self._database.session() as session:
            row = await CacheRecordRepository(session).get(key)
            return _to_record(row) if row else None

    async def put(self, record: StoredRecord) -> None:
        async with self._database.session() as session:
            await CacheRecordRepository(session).upsert(
                key=record.key,
                payload=record.payload,
                fetched_at=_as_utc(record.fetched_at),
                ttl_seconds=record.ttl_seconds,
                etag=record.etag,
            )

    async def delete(self, key: str) -> bool:
        async with self._database.session() as session:
            return await CacheRecordRepository(session).delete(key)

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._database.session() as session:
            return await CacheRecordRepository(session).keys_with_prefix(prefix)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._database.session() as session:
            return await CacheRecordRepository(session).delete_prefix(prefix)

    async def clear(self) -> None:
        async with self._database.session() as session:
            await CacheRecordRepository(session).clear()
