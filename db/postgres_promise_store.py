from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

import asyncpg

if TYPE_CHECKING:
    from orchestrator.promise_detector import DetectedPromise

logger = logging.getLogger(__name__)


class PostgresPromiseStore:

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def _require_pool(self) -> asyncpg.Pool:
        from db.shared_pool import SharedPostgresPool
        return await SharedPostgresPool.get_pool(self._dsn)

    async def store_promises(
        self,
        *,
        request_id: str,
        user_id: str,
        promises: Sequence["DetectedPromise"],
        from_self: bool,
    ) -> int:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO promises
                    (message_id, user_id, type, content, deadline,
                     priority, confidence, from_self)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                [
                    (
                        request_id,
                        user_id,
                        p.type,
                        p.content,
                        p.deadline,
                        p.priority,
                        p.confidence,
                        from_self,
                    )
                    for p in promises
                ],
            )
        logger.info(
            "promise_store:stored",
            extra={"request_id": request_id, "count": len(promises)},
        )
        return len(promises)
