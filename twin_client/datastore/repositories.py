"""
数据库Repository层 - 封装缓存记录的数据访问逻辑
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from twin_client.datastore.models import CacheRecordDB


class CacheRecordRepository:
    """API缓存记录Repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> CacheRecordDB | None:
        """按key获取缓存记录"""
        result = await self.session.execute(
            select(CacheRecordDB).where(CacheRecordDB.key == key)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        key: str,
        payload: str,
        fetched_at: datetime,
        ttl_seconds: float,
        etag: str | None = None,
    ) -> None:
        """写入或覆盖缓存记录"""
        record = await self.get(key)
        if record:
            record.payload = payload
            record.fetched_at = fetched_at
            record.ttl_seconds = ttl_seconds
            record.etag = etag
        else:
            self.session.add(
                CacheRecordDB(
                    key=key,
                    payload=payload,
                    fetched_at=fetched_at,
                    ttl_seconds=ttl_seconds,
                    etag=etag,
                )
            )
        await self.session.flush()

    async def delete(self, key: str) -> bool:
        """删除单条缓存记录"""
        result = await self.session.execute(
            delete(CacheRecordDB).where(CacheRecordDB.key == key)
        )
        return (result.rowcount or 0) > 0

    async def keys_with_prefix(self, prefix: str = "") -> list[str]:
        """列出以prefix开头的所有key"""
        stmt = select(CacheRecordDB.key).order_by(CacheRecordDB.key)
        if prefix:
            stmt = stmt.where(CacheRecordDB.key.startswith(prefix, autoescape=True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_prefix(self, prefix: str) -> int:
        """批量删除以prefix开头的缓存记录"""
        result = await self.session.execute(
            delete(CacheRecordDB)
            .where(CacheRecordDB.key.startswith(prefix, autoescape=True))
            # 会话中没有已加载的记录，无需同步
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.debug(f"Deleted {deleted} cache records with prefix '{prefix}'")
        return deleted

    async def clear(self) -> int:
        """清空所有缓存记录"""
        result = await self.session.execute(delete(CacheRecordDB))
        return result.rowcount or 0
