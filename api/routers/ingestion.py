from __future__ import annotations

import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, status

from config.container import Container
from orchestrator.dispatcher import IngestionDispatcher
from orchestrator.messages import IncomingMessageEvent, IngestResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/messages", tags=["Ingestion"])


@inject
async def get_dispatcher(
    dispatcher: IngestionDispatcher = Depends(Provide[Container.dispatcher]),
) -> IngestionDispatcher:
    return dispatcher


@router.post("/ingest", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_endpoint(
    payload: IncomingMessageEvent,
    dispatcher: IngestionDispatcher = Depends(get_dispatcher),
) -> IngestResponse:
    return await dispatcher.dispatch(payload)
