from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from db.postgres_job_store import JobStatus, PostgresJobStore, validate_queue
from observability.metrics import record_job
from observability.phoenix_setup import trace_span
from orchestrator.job_handlers import JobHandler

logger = logging.getLogger(__name__)


class JobWorker:
    """Drains one queue: lease, run the handler, then complete or fail the job."""

    DEFAULT_POLL_INTERVAL = 1.0
    DEFAULT_LEASE_SECONDS = 120

    def __init__(
        self,
        *,
        queue: str,
        job_store: PostgresJobStore,
        handler: JobHandler,
        settings: Any = None,
    ) -> None:
        self._queue = validate_queue(queue)
        self._jobs = job_store
        self._handler = handler
        self._poll_interval = getattr(settings, "WORKER_POLL_INTERVAL_SECONDS", self.DEFAULT_POLL_INTERVAL)
        self._lease_seconds = getattr(settings, "JOB_LEASE_SECONDS", self.DEFAULT_LEASE_SECONDS)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_reclaim: Optional[float] = None

    @property
    def queue(self) -> str:
        return self._queue

    async def start(self) -> None:
        if self._running:
            logger.warning("job_worker:already_running", extra={"queue": self._queue})
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "job_worker:started",
            extra={"queue": self._queue, "poll_interval": self._poll_interval},
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("job_worker:stopped", extra={"queue": self._queue})

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self._maybe_reclaim()
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                logger.info("job_worker:cancelled", extra={"queue": self._queue})
                break
            except Exception as e:
                logger.error(
                    f"job_worker:loop_error:{e}",
                    extra={"queue": self._queue},
                    exc_info=True,
                )
                await asyncio.sleep(self._poll_interval)

    async def _maybe_reclaim(self) -> None:
        now = time.monotonic()
        if self._last_reclaim is not None and now - self._last_reclaim < self._lease_seconds:
            return
        self._last_reclaim = now
        await self._jobs.reclaim_stalled(self._queue, self._lease_seconds)

    async def run_once(self) -> bool:
        """Process at most one job. Returns False when nothing was runnable."""
        job = await self._jobs.lease(self._queue)
        if job is None:
            return False

        started = time.perf_counter()
        logger.info(
            "job_worker:processing",
            extra={"queue": self._queue, "job_id": job.id, "attempt": job.attempts},
        )
        try:
            with trace_span(
                "job_worker.run",
                {"queue": self._queue, "job.id": job.id, "job.attempt": job.attempts},
            ):
                result: Dict[str, Any] = await self._handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status = await self._jobs.fail(job, f"{type(e).__name__}: {e}")
            outcome = "failed" if status == JobStatus.FAILED else "retried"
            record_job(self._queue, outcome, time.perf_counter() - started)
            logger.error(
                "job_worker:job_failed",
                extra={
                    "queue": self._queue,
                    "job_id": job.id,
                    "attempt": job.attempts,
                    "outcome": outcome,
                    "error": str(e),
                },
                exc_info=True,
            )
            return True

        await self._jobs.complete(job)
        record_job(self._queue, "completed", time.perf_counter() - started)
        logger.info(
            "job_worker:job_completed",
            extra={"queue": self._queue, "job_id": job.id, "result": result},
        )
        return True
