"""Process-wide asyncpg pool, opened and closed by aiohttp lifecycle hooks."""
from __future__ import annotations

from typing import Any

import asyncpg  # type: ignore[import-untyped]
import structlog

from telemetry_aggregator.settings import settings

logger = structlog.get_logger(__name__)

pool: asyncpg.Pool | None = None


async def init_pool(_app: Any = None) -> None:
    global pool
    if pool is not None:
        return
    pool = await asyncpg.create_pool(
        dsn=str(settings.database_url),
        min_size=min(2, settings.db_pool_size),
        max_size=settings.db_pool_size,
        command_timeout=settings.commit_timeout_seconds,
        server_settings={"application_name": settings.app_name},
    )
    logger.info("database pool opened", max_size=settings.db_pool_size)


async def close_pool(_app: Any = None) -> None:
    global pool
    if pool is not None:
        await pool.close()
        pool = None
        logger.info("database pool closed")


async def get_pool() -> asyncpg.Pool:
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return pool
