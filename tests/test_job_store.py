"""Unit tests for db/postgres_job_store.py (pure parts; SQL paths run against Postgres)."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from db.postgres_job_store import (
    QUEUES,
    BackoffPolicy,
    Job,
    JobStatus,
    _row_to_job,
    validate_queue,
)
from orchestrator.exceptions import UnknownQueueError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestBackoffPolicy:
    @pytest.mark.parametrize("attempt,expected", [(1, 2.0), (2, 4.0), (3, 8.0)])
    def test_exponential(self, attempt, expected):
        assert BackoffPolicy().delay_for(attempt) == expected

    def test_fixed(self):
        policy = BackoffPolicy(base_delay_seconds=5.0, exponential=False)
        assert policy.delay_for(1) == policy.delay_for(4) == 5.0

    def test_attempt_zero_uses_base(self):
        assert BackoffPolicy(base_delay_seconds=3.0).delay_for(0) == 3.0


class TestQueues:
    def test_known_queues(self):
        assert QUEUES == ("response", "promise-detection", "contact-inference", "media")

    def test_validate_known(self):
        assert validate_queue("media") == "media"

    def test_validate_unknown(self):
        with pytest.raises(UnknownQueueError) as exc:
            validate_queue("email")
        assert exc.value.queue == "email"


class TestJob:
    def _job(self, attempts, max_attempts=3):
        return Job(
            id=1,
            type="response",
            payload={},
            priority=1,
            attempts=attempts,
            max_attempts=max_attempts,
            backoff=BackoffPolicy(),
            status=JobStatus.ACTIVE,
            run_at=NOW,
        )

    def test_exhausted(self):
        assert self._job(2).exhausted is False
        assert self._job(3).exhausted is True

    def test_row_to_job_decodes_text_payload(self):
        row = {
            "id": 7,
            "queue": "promise-detection",
            "payload": '{"request_id": "m1"}',
            "priority": 2,
            "attempts": 1,
            "max_attempts": 3,
            "backoff_base_seconds": 2.0,
            "backoff_exponential": True,
            "status": "pending",
            "run_at": NOW,
            "last_error": None,
            "created_at": NOW,
            "finished_at": None,
        }

        job = _row_to_job(row)

        assert job.id == 7
        assert job.type == "promise-detection"
        assert job.payload == {"request_id": "m1"}
        assert job.status is JobStatus.PENDING
        assert job.backoff == BackoffPolicy(2.0, True)
