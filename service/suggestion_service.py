from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from db.response_cache import ResponseCache
from orchestrator.messages import (
    AnalyticsSummary,
    CacheStats,
    FeedbackRequest,
    FeedbackResponse,
    GeneratedResponse,
    GenerateRequest,
)
from orchestrator.response_generator import ResponseGenerator, StreamingSink

logger = logging.getLogger(__name__)


class SuggestionService:

    def __init__(self, generator: ResponseGenerator, cache: ResponseCache):
        self._generator = generator
        self._cache = cache

    async def generate(
        self,
        req: GenerateRequest,
        sink: Optional[StreamingSink] = None,
    ) -> GeneratedResponse:
        logger.info(
            "suggestion_service:generate:start",
            extra={
                "request_id": req.request_id,
                "chat_type": req.chat_type,
                "streaming": sink is not None,
            },
        )
        result = await self._generator.generate_response(
            req.request_id,
            req.content,
            req.user_id,
            req.chat_type,
            sink,
        )
        logger.info(
            "suggestion_service:generate:done",
            extra={
                "request_id": req.request_id,
                "cached": result.cached,
                "confidence": result.confidence,
            },
        )
        return result

    async def submit_feedback(self, req: FeedbackRequest) -> FeedbackResponse:
        updated = await self._generator.update_feedback(
            req.request_id,
            req.user_id,
            selected_index=req.selected_index,
            feedback=req.feedback,
            custom_response=req.custom_response,
        )
        if not updated:
            logger.info(
                "suggestion_service:feedback:no_matching_record",
                extra={"request_id": req.request_id},
            )
        return FeedbackResponse(success=True, updated=updated)

    async def analytics(
        self,
        user_id: str,
        date_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> AnalyticsSummary:
        return await self._generator.get_analytics(user_id, date_range)

    async def cache_stats(self) -> CacheStats:
        return await self._cache.stats()

    async def clear_user_cache(self, user_id: str) -> int:
        removed = await self._cache.clear_for_user(user_id)
        logger.info(
            "suggestion_service:cache_cleared",
            extra={"user_id": user_id, "removed": removed},
        )
        return removed
