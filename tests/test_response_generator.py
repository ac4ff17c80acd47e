"""Unit tests for orchestrator/response_generator.py (LLM and Postgres mocked)."""

from __future__ import annotations

import asyncio
import json
import random
from types import SimpleNamespace

import httpx
import pytest
from unittest.mock import AsyncMock
from openai import OpenAIError

from db.response_cache import ResponseCache
from guardrail.response_safety import ResponseSafety
from orchestrator.context_builder import ContextBuilder
from orchestrator.exceptions import ModelInvocationError, ModelTimeoutError
from orchestrator.messages import GeneratedResponse
from orchestrator.prompt_templates import PromptTemplates
from orchestrator.response_generator import (
    PARSE_FALLBACK_SUGGESTIONS,
    QueueStreamingSink,
    ResponseGenerator,
    parse_model_output,
)


@pytest.fixture
def cache(fake_redis):
    return ResponseCache(fake_redis, base_ttl_seconds=3600)


@pytest.fixture
def generator(mock_settings, mock_openai_client, cache, mock_message_store, mock_suggestion_store):
    return ResponseGenerator(
        openai_client=mock_openai_client,
        cache=cache,
        context_builder=ContextBuilder(mock_message_store),
        templates=PromptTemplates(),
        safety=ResponseSafety(rng=random.Random(1)),
        suggestion_store=mock_suggestion_store,
        settings=mock_settings,
    )


def _model_returns(client, completion, payload):
    client.chat.completions.create = AsyncMock(return_value=completion(payload))


async def _aiter(items):
    for item in items:
        yield item


def _chunk(token=None, usage=None):
    choices = [] if token is None else [SimpleNamespace(delta=SimpleNamespace(content=token))]
    return SimpleNamespace(choices=choices, usage=usage)


# ──────────── parse_model_output ───────────────────────────────


class TestParseModelOutput:
    def test_valid_payload(self):
        parsed = parse_model_output(
            json.dumps({"suggestions": ["a!", "b!", "c!", "d!"], "confidence": 0.8, "reasoning": "r"})
        )
        assert parsed.suggestions == ["a!", "b!", "c!"]
        assert parsed.confidence == 0.8
        assert parsed.reasoning == "r"
        assert parsed.is_fallback is False

    def test_invalid_json_uses_fallback(self):
        parsed = parse_model_output("definitely not json")
        assert parsed.suggestions == PARSE_FALLBACK_SUGGESTIONS
        assert parsed.confidence == 0.5
        assert parsed.is_fallback is True

    def test_non_object_uses_fallback(self):
        assert parse_model_output("[1, 2]").is_fallback is True

    def test_missing_suggestions_and_confidence_get_defaults(self):
        parsed = parse_model_output("{}")
        assert parsed.suggestions == ["I understand.", "Thanks for letting me know."]
        assert parsed.confidence == 0.7

    def test_confidence_is_clamped(self):
        assert parse_model_output('{"suggestions": ["x y"], "confidence": 3}').confidence == 1.0
        assert parse_model_output('{"suggestions": ["x y"], "confidence": -1}').confidence == 0.0

    def test_non_string_suggestions_are_dropped(self):
        parsed = parse_model_output('{"suggestions": ["ok then", 5, null]}')
        assert parsed.suggestions == ["ok then"]

    def test_empty_list_stays_empty(self):
        assert parse_model_output('{"suggestions": []}').suggestions == []


# ──────────── generate_response ───────────────────────────────


class TestGenerateResponse:
    @pytest.mark.asyncio
    async def test_model_path_caches_and_records(
        self, generator, mock_openai_client, mock_suggestion_store, completion, cache
    ):
        _model_returns(
            mock_openai_client,
            completion,
            {"suggestions": ["Sure, sounds good!", "Let me check."], "confidence": 0.85, "reasoning": "ok"},
        )

        result = await generator.generate_response("req-1", "Lunch tomorrow?", "u1")

        assert result.suggestions == ["Sure, sounds good!", "Let me check."]
        assert result.confidence == 0.85
        assert result.message_type == "question"
        assert result.cached is False
        assert (await cache.get("Lunch tomorrow?", "u1")) is not None
        record = mock_suggestion_store.record_suggestion.await_args.args[0]
        assert record.request_id == "req-1"
        assert record.cached is False
        kwargs = mock_openai_client.chat.completions.create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert 'Question received: "Lunch tomorrow?"' in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_model(
        self, generator, mock_openai_client, mock_suggestion_store, cache
    ):
        await cache.set(
            "hello",
            "u1",
            GeneratedResponse(request_id="old", suggestions=["Hi!"], confidence=0.9),
        )
        mock_openai_client.chat.completions.create = AsyncMock()

        result = await generator.generate_response("req-2", "hello", "u1")

        assert result.cached is True
        assert result.request_id == "req-2"
        assert result.suggestions == ["Hi!"]
        mock_openai_client.chat.completions.create.assert_not_awaited()
        assert mock_suggestion_store.record_suggestion.await_args.args[0].cached is True

    @pytest.mark.asyncio
    async def test_malformed_output_still_returns_suggestions(
        self, generator, mock_openai_client, completion
    ):
        _model_returns(mock_openai_client, completion, "oops, not json")

        result = await generator.generate_response("req-3", "hey", "u1")

        assert result.suggestions == PARSE_FALLBACK_SUGGESTIONS
        assert result.confidence == 0.5

    @pytest.mark.asyncio
    async def test_empty_model_suggestions_fall_back(self, generator, mock_openai_client, completion):
        _model_returns(mock_openai_client, completion, {"suggestions": [], "confidence": 0.9})

        result = await generator.generate_response("req-4", "hey", "u1")

        assert len(result.suggestions) == 1
        assert result.confidence <= 0.3

    @pytest.mark.asyncio
    async def test_model_error_returns_degraded_and_skips_cache(
        self, generator, mock_openai_client, fake_redis
    ):
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=OpenAIError("boom"))

        result = await generator.generate_response("req-5", "hey", "u1")

        assert len(result.suggestions) == 1
        assert result.confidence == 0.3
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_model_error_raises_when_requested(self, generator, mock_openai_client):
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=OpenAIError("boom"))

        with pytest.raises(ModelInvocationError):
            await generator.generate_response("req-6", "hey", "u1", raise_on_failure=True)

    @pytest.mark.asyncio
    async def test_timeout_is_reported_as_model_timeout(self, generator, mock_openai_client):
        async def _slow(**kwargs):
            await asyncio.sleep(1)

        generator._timeout = 0.01
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=_slow)

        with pytest.raises(ModelTimeoutError):
            await generator.generate_response("req-7", "hey", "u1", raise_on_failure=True)

    @pytest.mark.asyncio
    async def test_completion_without_choices_is_degraded(self, generator, mock_openai_client, fake_redis):
        mock_openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[], usage=None)
        )

        result = await generator.generate_response("req-7b", "hey", "u1")

        assert result.confidence == 0.3
        assert result.reasoning == "Fallback response: model unavailable"
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_group_chat_uses_group_template(self, generator, mock_openai_client, completion):
        _model_returns(mock_openai_client, completion, {"suggestions": ["Count me in!"], "confidence": 0.8})

        await generator.generate_response("req-8", "Who's coming tonight?", "u1", chat_type="group")

        user_prompt = mock_openai_client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert "Group message received" in user_prompt

    @pytest.mark.asyncio
    async def test_analytics_failure_does_not_fail_generation(
        self, generator, mock_openai_client, mock_suggestion_store, completion
    ):
        _model_returns(mock_openai_client, completion, {"suggestions": ["Okay!"], "confidence": 0.8})
        mock_suggestion_store.record_suggestion = AsyncMock(side_effect=RuntimeError("db down"))

        result = await generator.generate_response("req-9", "hey", "u1")

        assert result.suggestions == ["Okay!"]


# ──────────── single-flight ───────────────────────────────


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_model_call(
        self, generator, mock_openai_client, completion
    ):
        async def _slow(**kwargs):
            await asyncio.sleep(0.05)
            return completion({"suggestions": ["On my way!"], "confidence": 0.8})

        mock_openai_client.chat.completions.create = AsyncMock(side_effect=_slow)

        first, second = await asyncio.gather(
            generator.generate_response("req-a", "where are you", "u1"),
            generator.generate_response("req-b", "where are you", "u1"),
        )

        assert mock_openai_client.chat.completions.create.await_count == 1
        assert first.request_id == "req-a"
        assert first.cached is False
        assert second.request_id == "req-b"
        assert second.cached is True
        assert second.suggestions == first.suggestions

    @pytest.mark.asyncio
    async def test_different_users_are_not_coalesced(
        self, generator, mock_openai_client, completion
    ):
        async def _slow(**kwargs):
            await asyncio.sleep(0.01)
            return completion({"suggestions": ["On my way!"], "confidence": 0.8})

        mock_openai_client.chat.completions.create = AsyncMock(side_effect=_slow)

        await asyncio.gather(
            generator.generate_response("req-a", "where are you", "u1"),
            generator.generate_response("req-b", "where are you", "u2"),
        )

        assert mock_openai_client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_of_same_request_keeps_leader_analytics_row(
        self, generator, mock_openai_client, mock_suggestion_store, completion
    ):
        async def _slow(**kwargs):
            await asyncio.sleep(0.05)
            return completion({"suggestions": ["On my way!"], "confidence": 0.8})

        mock_openai_client.chat.completions.create = AsyncMock(side_effect=_slow)

        first, second = await asyncio.gather(
            generator.generate_response("req-a", "where are you", "u1"),
            generator.generate_response("req-a", "where are you", "u1"),
        )

        assert second.cached is True
        mock_suggestion_store.record_suggestion.assert_awaited_once()
        assert mock_suggestion_store.record_suggestion.await_args.args[0].cached is False


# ──────────── streaming ───────────────────────────────


def _drain(sink):
    events = []
    while not sink.queue.empty():
        events.append(sink.queue.get_nowait())
    return events


class TestStreaming:
    @pytest.mark.asyncio
    async def test_tokens_then_complete(self, generator, mock_openai_client):
        chunks = [
            _chunk('{"suggestions": ["Sounds '),
            _chunk('great!"], "confidence": 0.8}'),
            _chunk(usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5)),
        ]
        mock_openai_client.chat.completions.create = AsyncMock(return_value=_aiter(chunks))
        sink = QueueStreamingSink()

        result = await generator.generate_response("req-s", "hey", "u1", sink=sink)

        events = _drain(sink)
        assert [e.type for e in events[:-1]] == ["token", "token", "complete"]
        assert events[-1] is None
        assert events[2].data["suggestions"] == ["Sounds great!"]
        assert result.suggestions == ["Sounds great!"]
        assert mock_openai_client.chat.completions.create.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_cancelled_sink_gets_no_tokens_but_result_is_cached(
        self, generator, mock_openai_client, cache
    ):
        chunks = [_chunk('{"suggestions": ["Fine by me."], '), _chunk('"confidence": 0.8}')]
        mock_openai_client.chat.completions.create = AsyncMock(return_value=_aiter(chunks))
        sink = QueueStreamingSink()
        sink.cancel()

        await generator.generate_response("req-c", "hey", "u1", sink=sink)

        assert all(e is None or e.type != "token" for e in _drain(sink))
        assert (await cache.get("hey", "u1")).suggestions == ["Fine by me."]

    @pytest.mark.asyncio
    async def test_model_error_emits_error_event(self, generator, mock_openai_client):
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=OpenAIError("boom"))
        sink = QueueStreamingSink()

        await generator.generate_response("req-e", "hey", "u1", sink=sink)

        events = _drain(sink)
        assert events[0].type == "error"
        assert events[-1] is None

    @pytest.mark.asyncio
    async def test_connection_drop_mid_stream_ends_with_error(
        self, generator, mock_openai_client, fake_redis
    ):
        async def _broken_stream():
            yield _chunk('{"suggestions": ["On ')
            raise httpx.RemoteProtocolError("peer closed connection")

        mock_openai_client.chat.completions.create = AsyncMock(return_value=_broken_stream())
        sink = QueueStreamingSink()

        result = await generator.generate_response("req-d", "hey", "u1", sink=sink)

        events = _drain(sink)
        assert [e.type for e in events[:-1]] == ["token", "error"]
        assert "peer closed connection" in events[1].data
        assert events[-1] is None
        assert result.confidence == 0.3
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_connection_drop_raises_model_error_when_requested(self, generator, mock_openai_client):
        async def _broken_stream():
            raise httpx.ReadError("reset")
            yield  # pragma: no cover

        mock_openai_client.chat.completions.create = AsyncMock(return_value=_broken_stream())

        with pytest.raises(ModelInvocationError):
            await generator.generate_response(
                "req-d2", "hey", "u1", sink=QueueStreamingSink(), raise_on_failure=True
            )


# ──────────── analytics & feedback ───────────────────────────────


class TestAnalyticsAndFeedback:
    @pytest.mark.asyncio
    async def test_get_analytics_default_window(self, generator, mock_suggestion_store):
        mock_suggestion_store.fetch_records = AsyncMock(
            return_value=[
                {"message_type": "question", "confidence": 0.8, "selected_index": 0, "feedback": "positive"},
                {"message_type": "social", "confidence": 0.6, "selected_index": None, "feedback": None},
            ]
        )

        summary = await generator.get_analytics("u1")

        kwargs = mock_suggestion_store.fetch_records.await_args.kwargs
        assert kwargs["user_id"] == "u1"
        assert (kwargs["end"] - kwargs["start"]).days == 7
        assert summary.total_suggestions == 2
        assert summary.average_confidence == pytest.approx(0.7)
        assert summary.selection_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_update_feedback_delegates(self, generator, mock_suggestion_store):
        updated = await generator.update_feedback("req-1", "u1", selected_index=1, feedback="positive")

        assert updated is True
        mock_suggestion_store.update_feedback.assert_awaited_once_with(
            request_id="req-1",
            user_id="u1",
            selected_index=1,
            feedback="positive",
            custom_response=None,
        )

    @pytest.mark.asyncio
    async def test_repeated_feedback_leaves_record_unchanged(self, generator):
        class _Rows:
            """Applies updates with the same keep-unless-given rule as the SQL upsert."""

            def __init__(self):
                self.rows = {("req-1", "u1"): {"selected_index": None, "feedback": None, "custom_response": None}}

            async def update_feedback(self, request_id, user_id, selected_index, feedback, custom_response):
                row = self.rows.get((request_id, user_id))
                if row is None:
                    return False
                for key, value in (
                    ("selected_index", selected_index),
                    ("feedback", feedback),
                    ("custom_response", custom_response),
                ):
                    if value is not None:
                        row[key] = value
                return True

        rows = _Rows()
        generator._store = rows
        args = ("req-1", "u1", 2, "negative", "Can't today, sorry!")

        assert await generator.update_feedback(*args) is True
        after_once = dict(rows.rows[("req-1", "u1")])
        assert await generator.update_feedback(*args) is True

        assert rows.rows[("req-1", "u1")] == after_once
        assert after_once == {"selected_index": 2, "feedback": "negative", "custom_response": "Can't today, sorry!"}
