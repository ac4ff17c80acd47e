from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import asyncpg

from orchestrator.exceptions import UnknownQueueError
from orchestrator.messages import QueueStats

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    RESPONSE = "response"
    PROMISE_DETECTION = "promise-detection"
    CONTACT_INFERENCE = "contact-inference"
    MEDIA = "media"


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


QUEUES = tuple(t.value for t in JobType)


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay_seconds: float = 2.0
    exponential: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the ``attempt``-th failed attempt (1-based)."""
        if not self.exponential:
            return self.base_delay_seconds
        return self.base_delay_seconds * (2 ** max(attempt - 1, 0))


@dataclass
class Job:
    id: int
    type: str
    payload: Dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy
    status: JobStatus
    run_at: datetime
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


def validate_queue(queue: str) -> str:
    if queue not in QUEUES:
        raise UnknownQueueError(queue)
    return queue


def _row_to_job(row: asyncpg.Record) -> Job:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=row["id"],
        type=row["queue"],
        payload=payload or {},
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        backoff=BackoffPolicy(
            base_delay_seconds=row["backoff_base_seconds"],
            exponential=row["backoff_exponential"],
        ),
        status=JobStatus(row["status"]),
        run_at=row["run_at"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        finished_at=row["finished_at"],
    )


class PostgresJobStore:

    def __init__(
        self,
        dsn: str,
        *,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        keep_completed: int = 100,
        keep_failed: int = 50,
    ) -> None:
        self._dsn = dsn
        self._max_attempts = max_attempts
        self._backoff = backoff or BackoffPolicy()
        self._keep = {
            JobStatus.COMPLETED: keep_completed,
            JobStatus.FAILED: keep_failed,
        }

    async def _require_pool(self) -> asyncpg.Pool:
        from db.shared_pool import SharedPostgresPool
        return await SharedPostgresPool.get_pool(self._dsn)

    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        *,
        priority: int = 1,
        delay_seconds: float = 0.0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> Job:
        validate_queue(queue)
        policy = backoff or self._backoff
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_queue
                    (queue, payload, priority, max_attempts,
                     backoff_base_seconds, backoff_exponential, run_at)
                VALUES ($1, $2::jsonb, $3, $4, $5, $6,
                        NOW() + make_interval(secs => $7))
                RETURNING *
                """,
                queue,
                json.dumps(payload, ensure_ascii=False, default=str),
                priority,
                max_attempts or self._max_attempts,
                policy.base_delay_seconds,
                policy.exponential,
                float(delay_seconds),
            )
        job = _row_to_job(row)
        logger.info(
            "job_store:enqueued",
            extra={
                "queue": queue,
                "job_id": job.id,
                "priority": priority,
                "delay_seconds": delay_seconds,
            },
        )
        return job

    async def lease(self, queue: str) -> Optional[Job]:
        """Claim the next runnable job; concurrent workers never receive the same row."""
        validate_queue(queue)
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE job_queue
                SET status = 'active',
                    attempts = attempts + 1,
                    leased_at = NOW(),
                    updated_at = NOW()
                WHERE id = (
                    SELECT id FROM job_queue
                    WHERE queue = $1
                      AND status = 'pending'
                      AND run_at <= NOW()
                      AND NOT EXISTS (
                          SELECT 1 FROM job_queue_state s
                          WHERE s.queue = $1 AND s.paused
                      )
                    ORDER BY priority ASC, run_at ASC, id ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING *
                """,
                queue,
            )
        return _row_to_job(row) if row else None

    async def complete(self, job: Job) -> None:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE job_queue
                    SET status = 'completed', finished_at = NOW(), updated_at = NOW(),
                        last_error = NULL
                    WHERE id = $1
                    """,
                    job.id,
                )
                await self._trim_history(conn, job.type, JobStatus.COMPLETED)

    async def fail(self, job: Job, error: str) -> JobStatus:
        """Reschedule with backoff, or move to failed once attempts are exhausted."""
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if job.exhausted:
                    await conn.execute(
                        """
                        UPDATE job_queue
                        SET status = 'failed', last_error = $2,
                            finished_at = NOW(), updated_at = NOW()
                        WHERE id = $1
                        """,
                        job.id,
                        error[:500],
                    )
                    await self._trim_history(conn, job.type, JobStatus.FAILED)
                    logger.warning(
                        "job_store:moved_to_failed",
                        extra={"queue": job.type, "job_id": job.id, "attempts": job.attempts},
                    )
                    return JobStatus.FAILED

                delay = job.backoff.delay_for(job.attempts)
                await conn.execute(
                    """
                    UPDATE job_queue
                    SET status = 'pending', last_error = $2,
                        run_at = NOW() + make_interval(secs => $3),
                        leased_at = NULL, updated_at = NOW()
                    WHERE id = $1
                    """,
                    job.id,
                    error[:500],
                    float(delay),
                )
        logger.info(
            "job_store:scheduled_retry",
            extra={
                "queue": job.type,
                "job_id": job.id,
                "attempt": job.attempts,
                "delay_seconds": delay,
            },
        )
        return JobStatus.PENDING

    async def reclaim_stalled(self, queue: str, lease_seconds: int) -> int:
        validate_queue(queue)
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE job_queue
                SET status = CASE WHEN attempts >= max_attempts THEN 'failed' ELSE 'pending' END,
                    finished_at = CASE WHEN attempts >= max_attempts THEN NOW() ELSE NULL END,
                    last_error = COALESCE(last_error, 'lease expired'),
                    leased_at = NULL,
                    updated_at = NOW()
                WHERE queue = $1
                  AND status = 'active'
                  AND leased_at < NOW() - make_interval(secs => $2)
                """,
                queue,
                float(lease_seconds),
            )
        reclaimed = int(status.split()[-1])
        if reclaimed:
            logger.warning(
                "job_store:stalled_reclaimed",
                extra={"queue": queue, "count": reclaimed},
            )
        return reclaimed

    async def _trim_history(self, conn: asyncpg.Connection, queue: str, status: JobStatus) -> None:
        await conn.execute(
            """
            DELETE FROM job_queue
            WHERE id IN (
                SELECT id FROM job_queue
                WHERE queue = $1 AND status = $2
                ORDER BY finished_at DESC, id DESC
                OFFSET $3
            )
            """,
            queue,
            status.value,
            self._keep[status],
        )

    async def stats(self, queue: str) -> QueueStats:
        validate_queue(queue)
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (WHERE status = 'pending' AND run_at <= NOW()) AS waiting,
                    COUNT(*) FILTER (WHERE status = 'pending' AND run_at > NOW()) AS delayed,
                    COUNT(*) FILTER (WHERE status = 'active') AS active,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed
                FROM job_queue
                WHERE queue = $1
                """,
                queue,
            )
            paused = await conn.fetchval(
                "SELECT paused FROM job_queue_state WHERE queue = $1",
                queue,
            )
        return QueueStats(queue=queue, paused=bool(paused), **dict(row))

    async def set_paused(self, queue: str, paused: bool) -> None:
        validate_queue(queue)
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO job_queue_state (queue, paused, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (queue) DO UPDATE SET paused = EXCLUDED.paused, updated_at = NOW()
                """,
                queue,
                paused,
            )
        logger.info("job_store:paused" if paused else "job_store:resumed", extra={"queue": queue})

    async def clear(self, queue: str) -> int:
        """Remove every job of the queue that is not currently leased."""
        validate_queue(queue)
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM job_queue WHERE queue = $1 AND status <> 'active'",
                queue,
            )
        removed = int(status.split()[-1])
        logger.info("job_store:cleared", extra={"queue": queue, "removed": removed})
        return removed

    async def list_failed(self, queue: str, limit: int = 50) -> List[Job]:
        validate_queue(queue)
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM job_queue
                WHERE queue = $1 AND status = 'failed'
                ORDER BY finished_at DESC
                LIMIT $2
                """,
                queue,
                limit,
            )
        return [_row_to_job(r) for r in rows]
