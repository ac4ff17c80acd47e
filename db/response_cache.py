from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable, Iterable, Optional, Tuple

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from observability.metrics import record_cache_event
from orchestrator.messages import CacheEntry, CacheStats, GeneratedResponse

logger = logging.getLogger(__name__)


# Confidence floor -> multiplier of the base TTL, highest floor first
TTL_TIERS: Tuple[Tuple[float, float], ...] = (
    (0.9, 4.0),
    (0.7, 2.0),
    (0.5, 1.0),
)
LOW_CONFIDENCE_MULTIPLIER = 0.5
WARM_TTL_MULTIPLIER = 24


def fingerprint(content: str, user_id: str) -> str:
    return hashlib.sha256(f"{content}:{user_id}".encode("utf-8")).hexdigest()[:16]


class ResponseCache:

    def __init__(
        self,
        redis: Redis,
        *,
        base_ttl_seconds: int = 3600,
        key_prefix: str = "ai_response:",
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._base_ttl = base_ttl_seconds
        self._prefix = key_prefix
        self._index_prefix = key_prefix.rstrip(":") + "_index:"
        self._now = time_fn

    def key_for(self, content: str, user_id: str) -> str:
        return f"{self._prefix}{fingerprint(content, user_id)}"

    def _index_key(self, user_id: str) -> str:
        return f"{self._index_prefix}{user_id}"

    def calculate_ttl(self, confidence: float) -> int:
        for floor, multiplier in TTL_TIERS:
            if confidence >= floor:
                return int(self._base_ttl * multiplier)
        return int(self._base_ttl * LOW_CONFIDENCE_MULTIPLIER)

    async def get(self, content: str, user_id: str) -> Optional[CacheEntry]:
        key = self.key_for(content, user_id)
        try:
            raw = await self._redis.get(key)
            if raw is None:
                record_cache_event("miss")
                return None

            try:
                entry = CacheEntry.model_validate_json(raw)
            except ValidationError:
                logger.warning("response_cache:get:corrupt_entry", extra={"key": key})
                await self._redis.delete(key)
                record_cache_event("miss")
                return None

            age = self._now() - entry.created_at
            if age > entry.ttl_seconds:
                await self._redis.delete(key)
                logger.debug(
                    "response_cache:get:expired",
                    extra={"key": key, "age_seconds": round(age, 1), "ttl": entry.ttl_seconds},
                )
                record_cache_event("expired")
                return None

            record_cache_event("hit")
            return entry

        except (RedisError, OSError) as e:
            logger.error(
                "response_cache:get:failed",
                extra={"key": key, "error": str(e)},
            )
            record_cache_event("error")
            return None

    async def set(
        self,
        content: str,
        user_id: str,
        value: GeneratedResponse,
        ttl: Optional[int] = None,
    ) -> bool:
        key = self.key_for(content, user_id)
        effective_ttl = ttl if ttl is not None else self.calculate_ttl(value.confidence)
        entry = CacheEntry(
            suggestions=value.suggestions,
            confidence=value.confidence,
            reasoning=value.reasoning,
            message_type=value.message_type,
            created_at=self._now(),
            ttl_seconds=effective_ttl,
        )
        index_key = self._index_key(user_id)
        try:
            await self._redis.set(key, entry.model_dump_json(), ex=effective_ttl)
            await self._redis.sadd(index_key, key)
            await self._redis.expire(index_key, self._base_ttl * WARM_TTL_MULTIPLIER)
            record_cache_event("write")
            logger.debug(
                "response_cache:set",
                extra={"key": key, "ttl": effective_ttl, "confidence": value.confidence},
            )
            return True
        except (RedisError, OSError) as e:
            logger.error(
                "response_cache:set:failed",
                extra={"key": key, "error": str(e)},
            )
            record_cache_event("error")
            return False

    async def clear_for_user(self, user_id: str) -> int:
        index_key = self._index_key(user_id)
        try:
            keys = await self._redis.smembers(index_key)
            deleted = 0
            if keys:
                deleted = await self._redis.delete(*keys)
            await self._redis.delete(index_key)
            logger.info(
                "response_cache:clear_for_user",
                extra={"user_id": user_id, "deleted": deleted},
            )
            return int(deleted)
        except (RedisError, OSError) as e:
            logger.error(
                "response_cache:clear_for_user:failed",
                extra={"user_id": user_id, "error": str(e)},
            )
            return 0

    async def stats(self) -> CacheStats:
        try:
            total = 0
            async for _ in self._redis.scan_iter(match=f"{self._prefix}*", count=500):
                total += 1
            info = await self._redis.info("memory")
            return CacheStats(
                total_keys=total,
                memory_usage=str(info.get("used_memory_human", "unknown")),
            )
        except (RedisError, OSError) as e:
            logger.error("response_cache:stats:failed", extra={"error": str(e)})
            return CacheStats(total_keys=0, memory_usage="unknown")

    async def warm_cache(
        self,
        entries: Iterable[Tuple[str, str, GeneratedResponse]],
    ) -> int:
        ttl = self._base_ttl * WARM_TTL_MULTIPLIER
        warmed = 0
        for content, user_id, value in entries:
            if await self.set(content, user_id, value, ttl=ttl):
                warmed += 1
        logger.info("response_cache:warm_cache:done", extra={"warmed": warmed})
        return warmed

    async def cleanup(self) -> int:
        """Delete expired or undecodable entries that Redis has not evicted yet."""
        removed = 0
        now = self._now()
        try:
            async for key in self._redis.scan_iter(match=f"{self._prefix}*", count=500):
                raw = await self._redis.get(key)
                if raw is None:
                    continue
                try:
                    entry = CacheEntry.model_validate_json(raw)
                except ValidationError:
                    await self._redis.delete(key)
                    removed += 1
                    continue
                if now - entry.created_at > entry.ttl_seconds:
                    await self._redis.delete(key)
                    removed += 1
        except (RedisError, OSError) as e:
            logger.error(
                "response_cache:cleanup:failed",
                extra={"removed": removed, "error": str(e)},
            )
            return removed

        logger.info("response_cache:cleanup:done", extra={"removed": removed})
        return removed
