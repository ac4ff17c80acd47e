from __future__ import annotations

import logging
from typing import Any, Dict, List

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from config.container import Container
from orchestrator.exceptions import UnknownQueueError
from orchestrator.messages import QueueStats
from service.queue_admin_service import QueueAdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/queues", tags=["Queues"])


class QueueClearResponse(BaseModel):
    queue: str
    removed: int


class FailedJobsResponse(BaseModel):
    queue: str
    jobs: List[Dict[str, Any]]


@inject
async def get_queue_admin(
    service: QueueAdminService = Depends(Provide[Container.queue_admin_service]),
) -> QueueAdminService:
    return service


@router.get("", response_model=List[QueueStats])
async def list_queues(
    service: QueueAdminService = Depends(get_queue_admin),
) -> List[QueueStats]:
    return await service.all_stats()


@router.get("/{queue}/failed", response_model=FailedJobsResponse)
async def failed_jobs(
    queue: str,
    limit: int = Query(50, ge=1, le=500),
    service: QueueAdminService = Depends(get_queue_admin),
) -> FailedJobsResponse:
    try:
        jobs = await service.failed_jobs(queue, limit=limit)
    except UnknownQueueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return FailedJobsResponse(queue=queue, jobs=jobs)


@router.post("/{queue}/pause", response_model=QueueStats)
async def pause_queue(
    queue: str,
    service: QueueAdminService = Depends(get_queue_admin),
) -> QueueStats:
    try:
        return await service.pause(queue)
    except UnknownQueueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{queue}/resume", response_model=QueueStats)
async def resume_queue(
    queue: str,
    service: QueueAdminService = Depends(get_queue_admin),
) -> QueueStats:
    try:
        return await service.resume(queue)
    except UnknownQueueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{queue}", response_model=QueueClearResponse)
async def clear_queue(
    queue: str,
    service: QueueAdminService = Depends(get_queue_admin),
) -> QueueClearResponse:
    try:
        removed = await service.clear(queue)
    except UnknownQueueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.warning("queues:cleared", extra={"queue": queue, "removed": removed})
    return QueueClearResponse(queue=queue, removed=removed)
