from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from db.postgres_job_store import Job, JobType
from orchestrator.contact_inference import ContactInference
from orchestrator.exceptions import UnknownQueueError
from orchestrator.promise_detector import PromiseDetector
from orchestrator.response_generator import ResponseGenerator

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Dict[str, Any]]]


class JobHandlers:
    """Per-queue job bodies. Raising marks the attempt failed so the queue retries it."""

    def __init__(
        self,
        *,
        response_generator: ResponseGenerator,
        promise_detector: PromiseDetector,
        contact_inference: ContactInference,
        message_store: Any,
    ) -> None:
        self._generator = response_generator
        self._promises = promise_detector
        self._contacts = contact_inference
        self._messages = message_store

    def for_queue(self, queue: str) -> JobHandler:
        handlers: Dict[str, JobHandler] = {
            JobType.RESPONSE.value: self.handle_response,
            JobType.PROMISE_DETECTION.value: self.handle_promise_detection,
            JobType.CONTACT_INFERENCE.value: self.handle_contact_inference,
            JobType.MEDIA.value: self.handle_media,
        }
        try:
            return handlers[queue]
        except KeyError:
            raise UnknownQueueError(queue) from None

    async def handle_response(self, job: Job) -> Dict[str, Any]:
        p = job.payload
        result = await self._generator.generate_response(
            p["request_id"],
            p["content"],
            p["user_id"],
            p.get("chat_type", "individual"),
            raise_on_failure=True,
        )
        return {
            "suggestions": len(result.suggestions),
            "confidence": result.confidence,
            "cached": result.cached,
        }

    async def handle_promise_detection(self, job: Job) -> Dict[str, Any]:
        p = job.payload
        promises = await self._promises.detect_promises(
            p["request_id"],
            p["content"],
            p["user_id"],
            bool(p.get("from_self", False)),
        )
        return {"promises": len(promises)}

    async def handle_contact_inference(self, job: Job) -> Dict[str, Any]:
        p = job.payload
        contact_id = p.get("contact_id")
        if not contact_id and p.get("sender_external_id"):
            contact_id = await self._messages.find_contact_by_external_id(
                p["sender_external_id"], p["user_id"]
            )
        if not contact_id:
            logger.info(
                "job_handlers:contact_inference:no_contact",
                extra={"job_id": job.id, "request_id": p.get("request_id")},
            )
            return {"skipped": True}

        result = await self._contacts.infer_identity(contact_id, p.get("content", ""), p["user_id"])
        return {"confidence": result.confidence, "signals": result.signals}

    async def handle_media(self, job: Job) -> Dict[str, Any]:
        # Media jobs are only acknowledged; no transcription or vision pass runs here
        p = job.payload
        logger.info(
            "job_handlers:media:received",
            extra={
                "job_id": job.id,
                "request_id": p.get("request_id"),
                "message_type": p.get("message_type"),
                "has_url": bool(p.get("media_url")),
            },
        )
        return {"acknowledged": True}
