from __future__ import annotations

import logging
from typing import Any, Dict, List

from db.postgres_job_store import QUEUES, PostgresJobStore
from orchestrator.messages import QueueStats

logger = logging.getLogger(__name__)


class QueueAdminService:
    """Operator view over the background queues."""

    def __init__(self, job_store: PostgresJobStore):
        self._jobs = job_store

    async def all_stats(self) -> List[QueueStats]:
        return [await self._jobs.stats(q) for q in QUEUES]

    async def stats(self, queue: str) -> QueueStats:
        return await self._jobs.stats(queue)

    async def pause(self, queue: str) -> QueueStats:
        await self._jobs.set_paused(queue, True)
        return await self._jobs.stats(queue)

    async def resume(self, queue: str) -> QueueStats:
        await self._jobs.set_paused(queue, False)
        return await self._jobs.stats(queue)

    async def clear(self, queue: str) -> int:
        return await self._jobs.clear(queue)

    async def failed_jobs(self, queue: str, limit: int = 50) -> List[Dict[str, Any]]:
        jobs = await self._jobs.list_failed(queue, limit=limit)
        return [
            {
                "id": j.id,
                "payload": j.payload,
                "attempts": j.attempts,
                "last_error": j.last_error,
                "finished_at": j.finished_at.isoformat() if j.finished_at else None,
            }
            for j in jobs
        ]
