from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Optional, Set

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from config.container import Container
from observability.metrics import track_sse_stream
from orchestrator.messages import (
    AnalyticsSummary,
    CacheStats,
    FeedbackRequest,
    FeedbackResponse,
    GeneratedResponse,
    GenerateRequest,
)
from orchestrator.response_generator import QueueStreamingSink
from service.suggestion_service import SuggestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/responses", tags=["Suggestions"])

# Strong references to in-flight streaming generations
_background: Set[asyncio.Task] = set()


class CacheClearResponse(BaseModel):
    user_id: str
    removed: int


@inject
async def get_suggestion_service(
    service: SuggestionService = Depends(Provide[Container.suggestion_service]),
) -> SuggestionService:
    return service


async def _sse_events(sink: QueueStreamingSink) -> AsyncIterator[str]:
    track_sse_stream(True)
    try:
        while True:
            event = await sink.queue.get()
            if event is None:
                break
            yield f"data: {event.model_dump_json()}\n\n"
    finally:
        # Client went away; generation continues so the result is still cached
        sink.cancel()
        track_sse_stream(False)


@router.post("/generate", response_model=GeneratedResponse)
async def generate_endpoint(
    payload: GenerateRequest,
    service: SuggestionService = Depends(get_suggestion_service),
):
    if not payload.streaming:
        return await service.generate(payload)

    sink = QueueStreamingSink()
    task = asyncio.create_task(service.generate(payload, sink))
    _background.add(task)
    task.add_done_callback(_background.discard)

    return StreamingResponse(
        _sse_events(sink),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/feedback", response_model=FeedbackResponse)
async def feedback_endpoint(
    payload: FeedbackRequest,
    service: SuggestionService = Depends(get_suggestion_service),
) -> FeedbackResponse:
    return await service.submit_feedback(payload)


@router.get("/analytics/{user_id}", response_model=AnalyticsSummary)
async def analytics_endpoint(
    user_id: str,
    start: Optional[datetime] = Query(None, description="Range start (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Range end (ISO 8601)"),
    service: SuggestionService = Depends(get_suggestion_service),
) -> AnalyticsSummary:
    if (start is None) != (end is None):
        raise HTTPException(status_code=400, detail="start and end must be given together")
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    date_range = (start, end) if start is not None and end is not None else None
    return await service.analytics(user_id, date_range)


@router.get("/cache/stats", response_model=CacheStats)
async def cache_stats_endpoint(
    service: SuggestionService = Depends(get_suggestion_service),
) -> CacheStats:
    return await service.cache_stats()


@router.delete("/cache/{user_id}", response_model=CacheClearResponse)
async def clear_cache_endpoint(
    user_id: str,
    service: SuggestionService = Depends(get_suggestion_service),
) -> CacheClearResponse:
    removed = await service.clear_user_cache(user_id)
    return CacheClearResponse(user_id=user_id, removed=removed)
