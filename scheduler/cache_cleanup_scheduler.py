from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from db.response_cache import ResponseCache
from observability.metrics import record_scheduler_run

logger = logging.getLogger(__name__)


class CacheCleanupScheduler:

    DEFAULT_INTERVAL_SECONDS = 60 * 60

    def __init__(self, cache: ResponseCache, settings: Any = None) -> None:
        self._cache = cache
        self._interval = getattr(
            settings,
            "CACHE_CLEANUP_INTERVAL_SECONDS",
            self.DEFAULT_INTERVAL_SECONDS,
        )
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("cache_cleanup_scheduler:already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"cache_cleanup_scheduler:started:interval={self._interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("cache_cleanup_scheduler:stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("cache_cleanup_scheduler:scheduled_run:cancelled")
                break
            except Exception as e:
                record_scheduler_run("cache_cleanup", "error", 0)
                logger.error(
                    f"cache_cleanup_scheduler:scheduled_run:error:{e}",
                    exc_info=True,
                )

    async def run_once(self) -> int:
        removed = await self._cache.cleanup()
        record_scheduler_run("cache_cleanup", "success", removed)
        logger.info(f"cache_cleanup_scheduler:scheduled_run:complete:removed={removed}")
        return removed
