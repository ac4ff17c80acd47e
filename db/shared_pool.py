from __future__ import annotations

import asyncio
import logging
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)


class SharedPostgresPool:
    """One asyncpg pool per process, shared by every Postgres-backed store."""

    _pool: Optional[asyncpg.Pool] = None
    _lock: Optional[asyncio.Lock] = None
    min_size: int = 2
    max_size: int = 20

    @classmethod
    def configure(cls, *, min_size: int, max_size: int) -> None:
        cls.min_size = min_size
        cls.max_size = max_size

    @classmethod
    async def get_pool(cls, dsn: str) -> asyncpg.Pool:
        if cls._pool is not None:
            return cls._pool
        if cls._lock is None:
            cls._lock = asyncio.Lock()
        # Workers and request handlers race here on startup
        async with cls._lock:
            if cls._pool is None:
                cls._pool = await asyncpg.create_pool(
                    dsn=dsn,
                    min_size=cls.min_size,
                    max_size=cls.max_size,
                )
                logger.info(
                    "shared_pool:created",
                    extra={"min_size": cls.min_size, "max_size": cls.max_size},
                )
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        if cls._pool is not None:
            await cls._pool.close()
            cls._pool = None
            logger.info("shared_pool:closed")
