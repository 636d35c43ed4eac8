"""
数据库模型定义
使用SQLAlchemy 2.0+的声明式映射
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """所有模型的基类"""

    pass


class CacheRecordDB(Base):
    """API响应缓存表 (持久层，仅作缓存，不是数据源)"""

    __tablename__ = "api_cache_records"

    key: Mapped[str] = mapped_column(String(1000), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    ttl_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    __table_args__ = (Index("idx_cache_fetched", "fetched_at"),)

    def __repr__(self) -> str:
        return f"<CacheRecord(key={self.key[:50]}, fetched_at={self.fetched_at})>"
