"""Shared test fixtures for reply-suggestion-agent unit tests."""

from __future__ import annotations

import fnmatch
import json

import pytest
from unittest.mock import AsyncMock, MagicMock


class FakeRedis:
    """Dict-backed stand-in for the subset of redis.asyncio.Redis the cache uses."""

    def __init__(self):
        self.data = {}
        self.sets = {}
        self.expiries = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            elif self.sets.pop(key, None) is not None:
                removed += 1
            self.expiries.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True

    async def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def info(self, section=None):
        return {"used_memory_human": "1.00M"}


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def mock_settings():
    """Return a mock Settings object with sensible defaults."""
    s = MagicMock()
    s.POSTGRES_HOST = "localhost"
    s.POSTGRES_PORT = 5432
    s.POSTGRES_DB = "replies"
    s.POSTGRES_USER = "replies"
    s.POSTGRES_PASSWORD = "replies"
    s.REDIS_URL = "redis://localhost:6379/0"
    s.APP_ENV = "test"
    s.LOG_LEVEL = "DEBUG"

    # LLM
    s.RESPONSE_MODEL = "gpt-4-turbo-preview"
    s.RESPONSE_TEMPERATURE = 0.7
    s.RESPONSE_MAX_TOKENS = 500
    s.RESPONSE_TIMEOUT_SECONDS = 30.0
    s.RESPONSE_SUGGESTION_COUNT = 3
    s.CONTEXT_MAX_MESSAGES = 20
    s.PROMISE_AI_DETECTION_ENABLED = False
    s.PROMISE_MODEL = "gpt-4o-mini"

    # Cache
    s.CACHE_BASE_TTL_SECONDS = 3600
    s.CACHE_KEY_PREFIX = "ai_response:"
    s.CACHE_CLEANUP_INTERVAL_SECONDS = 3600
    s.SINGLE_FLIGHT_ENABLED = True

    # Queues
    s.WORKERS_ENABLED = False
    s.WORKER_POLL_INTERVAL_SECONDS = 0.01
    s.JOB_MAX_ATTEMPTS = 3
    s.JOB_BACKOFF_BASE_SECONDS = 2.0
    s.JOB_LEASE_SECONDS = 120
    s.JOB_KEEP_COMPLETED = 100
    s.JOB_KEEP_FAILED = 50
    s.RESPONSE_JOB_DELAY_SECONDS = 1.0
    s.CONTACT_INFERENCE_DELAY_SECONDS = 5.0
    s.ANALYTICS_DEFAULT_DAYS = 7

    return s


@pytest.fixture
def mock_openai_client():
    """Return a mock AsyncOpenAI client."""
    client = AsyncMock()
    return client


def make_completion(payload, prompt_tokens=40, completion_tokens=25):
    """Build a chat.completions.create return value carrying ``payload`` as content."""
    content = payload if isinstance(payload, str) else json.dumps(payload)
    resp = MagicMock()
    resp.choices = [MagicMock()]
    resp.choices[0].message.content = content
    resp.usage = MagicMock()
    resp.usage.prompt_tokens = prompt_tokens
    resp.usage.completion_tokens = completion_tokens
    return resp


@pytest.fixture
def completion():
    return make_completion


@pytest.fixture
def mock_message_store():
    """Return a mock PostgresMessageStore with an empty conversation."""
    store = AsyncMock()
    store.resolve_message = AsyncMock(return_value=None)
    store.fetch_recent_messages = AsyncMock(return_value=[])
    store.fetch_recent_text = AsyncMock(return_value=[])
    store.fetch_contact = AsyncMock(return_value=None)
    store.fetch_preferences = AsyncMock(return_value=None)
    store.fetch_chat = AsyncMock(return_value=None)
    store.count_messages = AsyncMock(return_value=0)
    store.fetch_contact_history = AsyncMock(return_value=[])
    store.find_contact_by_external_id = AsyncMock(return_value=None)
    store.store_contact_inference = AsyncMock(return_value=None)
    return store


@pytest.fixture
def mock_suggestion_store():
    store = AsyncMock()
    store.record_suggestion = AsyncMock(return_value=None)
    store.update_feedback = AsyncMock(return_value=True)
    store.fetch_records = AsyncMock(return_value=[])
    return store


@pytest.fixture
def mock_job_store():
    store = AsyncMock()
    counter = {"next": 0}

    async def _enqueue(queue, payload, *, priority=1, delay_seconds=0.0, **kwargs):
        counter["next"] += 1
        job = MagicMock()
        job.id = counter["next"]
        job.type = queue
        job.payload = payload
        job.priority = priority
        return job

    store.enqueue = AsyncMock(side_effect=_enqueue)
    return store
