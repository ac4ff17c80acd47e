from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Tuple

from db.postgres_job_store import JobType
from orchestrator.messages import EnqueuedJob, IncomingMessageEvent, IngestResponse

logger = logging.getLogger(__name__)

SELF_PRIORITY = 2
INBOUND_PRIORITY = 1


@dataclass(frozen=True)
class FanOutRule:
    queue: JobType
    applies: Callable[[IncomingMessageEvent], bool]
    delay_setting: str | None = None
    default_delay: float = 0.0


FAN_OUT_RULES: Tuple[FanOutRule, ...] = (
    FanOutRule(JobType.PROMISE_DETECTION, lambda e: True),
    FanOutRule(
        JobType.RESPONSE,
        lambda e: not e.from_self,
        delay_setting="RESPONSE_JOB_DELAY_SECONDS",
        default_delay=1.0,
    ),
    FanOutRule(
        JobType.CONTACT_INFERENCE,
        lambda e: not e.from_self and bool(e.sender_external_id),
        delay_setting="CONTACT_INFERENCE_DELAY_SECONDS",
        default_delay=5.0,
    ),
    FanOutRule(JobType.MEDIA, lambda e: e.has_media),
)


@dataclass(frozen=True)
class PlannedJob:
    queue: str
    priority: int
    delay_seconds: float


class IngestionDispatcher:
    """Fans one stored message out to the background queues."""

    def __init__(self, job_store: Any, settings: Any = None) -> None:
        self._jobs = job_store
        self._settings = settings

    def _delay(self, rule: FanOutRule) -> float:
        if rule.delay_setting is None:
            return rule.default_delay
        return float(getattr(self._settings, rule.delay_setting, rule.default_delay))

    def plan(self, event: IncomingMessageEvent) -> List[PlannedJob]:
        priority = SELF_PRIORITY if event.from_self else INBOUND_PRIORITY
        return [
            PlannedJob(queue=rule.queue.value, priority=priority, delay_seconds=self._delay(rule))
            for rule in FAN_OUT_RULES
            if rule.applies(event)
        ]

    async def dispatch(self, event: IncomingMessageEvent) -> IngestResponse:
        payload = event.model_dump(mode="json")
        jobs: List[EnqueuedJob] = []
        for planned in self.plan(event):
            job = await self._jobs.enqueue(
                planned.queue,
                payload,
                priority=planned.priority,
                delay_seconds=planned.delay_seconds,
            )
            jobs.append(
                EnqueuedJob(
                    queue=planned.queue,
                    job_id=job.id,
                    priority=planned.priority,
                    delay_seconds=planned.delay_seconds,
                )
            )
        logger.info(
            "dispatcher:fanned_out",
            extra={
                "request_id": event.request_id,
                "from_self": event.from_self,
                "queues": [j.queue for j in jobs],
            },
        )
        return IngestResponse(request_id=event.request_id, jobs=jobs)
