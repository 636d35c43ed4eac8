"""
twin-client 入口
显式构建各组件 (settings, cache, credentials, transport, facade) 并执行一次健康检查
"""

import asyncio
import sys

from loguru import logger

from twin_client.api import TwinApiClient
from twin_client.datastore.engine import CacheDatabase
from twin_client.datastore.store import SqlCacheStore
from twin_client.services import (
    CacheManager,
    CredentialManager,
    StaticCredentialProvider,
    TransportClient,
)
from twin_client.settings import load_settings


async def main() -> None:
    """主函数"""
    settings = load_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())
    logger.info(f"Starting twin-client against {settings.api_base_url}...")

    database: CacheDatabase | None = None
    store = None
    if settings.cache_database_url:
        logger.info("Initializing cache database...")
        database = CacheDatabase(
            settings.cache_database_url, echo=settings.cache_database_echo
        )
        await database.init()
        store = SqlCacheStore(database)

    cache = CacheManager(
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_ttl,
        store=store,
        debug=settings.debug,
    )
    credentials = CredentialManager(
        StaticCredentialProvider(settings.api_token), debug=settings.debug
    )
    transport = TransportClient(
        base_url=settings.api_base_url,
        credentials=credentials,
        policy=settings.retry_policy(),
        timeout=settings.api_timeout,
    )
    api = TwinApiClient(
        transport,
        cache,
        stale_while_revalidate=settings.cache_stale_while_revalidate,
        debug=settings.debug,
    )

    try:
        health = await api.health_check()
        logger.info(
            health.fold(
                on_success=lambda status: f"Backend status: {status.status}",
                on_failure=lambda failure: (
                    f"Health check failed [{failure.kind.value}]: {failure.message}"
                ),
                on_loading=lambda: "Health check pending",
            )
        )

        conversations = await api.get_conversations()
        logger.info(
            conversations.fold(
                on_success=lambda items: f"{len(items)} conversations",
                on_failure=lambda failure: (
                    f"Listing conversations failed [{failure.kind.value}] "
                    f"-> {failure.kind.treatment.value}"
                ),
                on_loading=lambda: "Listing conversations pending",
            )
        )
        logger.info(f"Cache stats: {cache.get_stats().to_dict()}")

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        await api.aclose()
        if database is not None:
            logger.info("Closing database connections...")
            await database.close()
        logger.info("twin-client stopped")


if __name__ == "__main__":
    asyncio.run(main())
