"""Unit tests for the asyncpg-backed stores (pool and connection mocked)."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager

import pytest
from unittest.mock import AsyncMock, MagicMock

from db.postgres_promise_store import PostgresPromiseStore
from db.postgres_suggestion_store import PostgresSuggestionStore, SuggestionRecord
from orchestrator.promise_detector import DetectedPromise


@pytest.fixture
def conn():
    c = MagicMock()
    c.execute = AsyncMock(return_value="UPDATE 1")
    c.executemany = AsyncMock(return_value=None)
    c.fetch = AsyncMock(return_value=[])
    return c


@pytest.fixture
def pool(conn):
    p = MagicMock()

    @asynccontextmanager
    async def _acquire():
        yield conn

    p.acquire = _acquire
    return p


def _with_pool(store, pool):
    store._require_pool = AsyncMock(return_value=pool)
    return store


class TestSuggestionStore:
    @pytest.mark.asyncio
    async def test_record_is_an_upsert(self, pool, conn):
        store = _with_pool(PostgresSuggestionStore("postgresql://x"), pool)

        await store.record_suggestion(
            SuggestionRecord(
                request_id="m1",
                user_id="u1",
                message_type="question",
                confidence=0.8,
                suggestion_count=2,
                suggestions=["Sure!", "Let me check."],
            )
        )

        sql, *args = conn.execute.await_args.args
        assert "ON CONFLICT (request_id, user_id) DO UPDATE" in sql
        assert args[:2] == ["m1", "u1"]
        assert json.loads(args[8]) == ["Sure!", "Let me check."]

    @pytest.mark.asyncio
    async def test_feedback_keeps_unspecified_fields(self, pool, conn):
        store = _with_pool(PostgresSuggestionStore("postgresql://x"), pool)

        updated = await store.update_feedback(request_id="m1", user_id="u1", feedback="positive")

        sql, *args = conn.execute.await_args.args
        assert updated is True
        assert "COALESCE($3, selected_index)" in sql
        assert args == ["m1", "u1", None, "positive", None]

    @pytest.mark.asyncio
    async def test_repeated_feedback_sends_identical_update(self, pool, conn):
        store = _with_pool(PostgresSuggestionStore("postgresql://x"), pool)
        kwargs = dict(request_id="m1", user_id="u1", selected_index=1, feedback="positive", custom_response="ok!")

        await store.update_feedback(**kwargs)
        await store.update_feedback(**kwargs)

        first, second = conn.execute.await_args_list
        assert first.args == second.args
        assert "request_id = $1 AND user_id = $2" in first.args[0]

    @pytest.mark.asyncio
    async def test_feedback_for_unknown_request(self, pool, conn):
        conn.execute.return_value = "UPDATE 0"
        store = _with_pool(PostgresSuggestionStore("postgresql://x"), pool)

        assert await store.update_feedback(request_id="nope", user_id="u1", selected_index=1) is False


class TestPromiseStore:
    @pytest.mark.asyncio
    async def test_store_promises_batches_rows(self, pool, conn):
        store = _with_pool(PostgresPromiseStore("postgresql://x"), pool)
        promises = [
            DetectedPromise("commitment", "I'll call", None, "medium", 0.7),
            DetectedPromise("task", "Need to pay rent", None, "high", 0.7),
        ]

        stored = await store.store_promises(request_id="m1", user_id="u1", promises=promises, from_self=True)

        assert stored == 2
        rows = conn.executemany.await_args.args[1]
        assert rows[0] == ("m1", "u1", "commitment", "I'll call", None, "medium", 0.7, True)
        assert rows[1][2] == "task"
