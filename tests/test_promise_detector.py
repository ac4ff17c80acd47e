"""Unit tests for orchestrator/promise_detector.py."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock
from openai import OpenAIError

from orchestrator.promise_detector import (
    DetectedPromise,
    PromiseDetector,
    _parse_deadline,
    _sentence_around,
    deduplicate,
    determine_priority,
    extract_deadline,
)

# A Wednesday
NOW = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def promise_store():
    store = AsyncMock()
    store.store_promises = AsyncMock(return_value=0)
    return store


@pytest.fixture
def detector(promise_store, mock_settings):
    return PromiseDetector(promise_store=promise_store, settings=mock_settings, now_fn=lambda: NOW)


@pytest.fixture
def ai_detector(promise_store, mock_settings, mock_openai_client):
    mock_settings.PROMISE_AI_DETECTION_ENABLED = True
    return PromiseDetector(
        promise_store=promise_store,
        openai_client=mock_openai_client,
        settings=mock_settings,
        now_fn=lambda: NOW,
    )


def _promise(type_="commitment", content="I'll call you tonight"):
    return DetectedPromise(type=type_, content=content, deadline=None, priority="medium", confidence=0.7)


# ──────────── deadline extraction ───────────────────────────────


class TestExtractDeadline:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("I'll do it tomorrow", datetime(2024, 5, 2, 10, 0, tzinfo=timezone.utc)),
            ("done by tonight", NOW),
            ("next week works", datetime(2024, 5, 8, 10, 0, tzinfo=timezone.utc)),
            ("next month then", datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)),
            ("see you Friday", datetime(2024, 5, 3, 10, 0, tzinfo=timezone.utc)),
            ("see you wednesday", datetime(2024, 5, 8, 10, 0, tzinfo=timezone.utc)),
            ("call at 3:15 pm", datetime(2024, 5, 1, 15, 15, tzinfo=timezone.utc)),
            ("call at 9:30 am", datetime(2024, 5, 2, 9, 30, tzinfo=timezone.utc)),
            ("call at 12:00 am", datetime(2024, 5, 2, 0, 0, tzinfo=timezone.utc)),
        ],
    )
    def test_relative_phrases(self, text, expected):
        assert extract_deadline(text, NOW) == expected

    def test_next_month_clamps_day(self):
        jan_31 = datetime(2024, 1, 31, 8, 0, tzinfo=timezone.utc)
        assert extract_deadline("next month", jan_31) == datetime(2024, 2, 29, 8, 0, tzinfo=timezone.utc)

    def test_next_month_wraps_year(self):
        dec = datetime(2024, 12, 15, tzinfo=timezone.utc)
        assert extract_deadline("next month", dec).year == 2025

    def test_tomorrow_beats_weekday(self):
        assert extract_deadline("tomorrow or friday", NOW).day == 2

    def test_invalid_time(self):
        assert extract_deadline("at 27:90", NOW) is None

    def test_nothing(self):
        assert extract_deadline("sounds good", NOW) is None


# ──────────── helpers ───────────────────────────────


class TestHelpers:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("This is URGENT, please", "high"),
            ("no rush on this one", "low"),
            ("I'll send it", "medium"),
        ],
    )
    def test_priority(self, text, expected):
        assert determine_priority(text) == expected

    def test_sentence_around(self):
        text = "Hi there. I'll call you later! Bye"
        assert _sentence_around(text, text.index("I'll")) == "I'll call you later"

    def test_sentence_around_last_sentence(self):
        text = "Ok. Need to buy milk"
        assert _sentence_around(text, text.index("Need")) == "Need to buy milk"

    def test_deduplicate_same_type(self):
        unique = deduplicate([_promise(), _promise(content="I'll call you tonight!")])
        assert len(unique) == 1

    def test_deduplicate_keeps_other_types(self):
        unique = deduplicate([_promise(), _promise(type_="task")])
        assert len(unique) == 2

    def test_deduplicate_keeps_different_text(self):
        unique = deduplicate([_promise(), _promise(content="Need to pick up the kids")])
        assert len(unique) == 2

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-05-03T19:00:00Z", datetime(2024, 5, 3, 19, 0, tzinfo=timezone.utc)),
            ("2024-05-03T19:00:00", datetime(2024, 5, 3, 19, 0, tzinfo=timezone.utc)),
            ("friday", None),
            (None, None),
        ],
    )
    def test_parse_deadline(self, value, expected):
        assert _parse_deadline(value) == expected


# ──────────── pattern detection ───────────────────────────────


class TestPatterns:
    def test_commitment_with_deadline(self, detector):
        found = detector.detect_with_patterns("I'll send the report by Friday.")

        assert [p.type for p in found] == ["commitment", "deadline"]
        assert found[0].content == "I'll send the report by Friday"
        assert found[0].deadline == datetime(2024, 5, 3, 10, 0, tzinfo=timezone.utc)
        assert found[0].confidence == 0.7
        assert found[0].priority == "medium"

    def test_appointment(self, detector):
        found = detector.detect_with_patterns("let's meet tomorrow")
        assert [p.type for p in found] == ["appointment"]

    def test_task_with_urgency(self, detector):
        found = detector.detect_with_patterns("Remind me to pay rent, it's urgent")
        assert found[0].type == "task"
        assert found[0].priority == "high"

    def test_one_match_per_type(self, detector):
        found = detector.detect_with_patterns("I'll call and I will write and I promise to visit")
        assert [p.type for p in found] == ["commitment"]

    def test_plain_chatter(self, detector):
        assert detector.detect_with_patterns("haha that was fun") == []


# ──────────── model detection ───────────────────────────────


class TestModel:
    @pytest.mark.asyncio
    async def test_disabled_without_flag(self, detector):
        assert await detector.detect_with_model("Dinner with Sam on Friday at 7") == []

    @pytest.mark.asyncio
    async def test_validates_items(self, ai_detector, mock_openai_client, completion):
        mock_openai_client.chat.completions.create = AsyncMock(
            return_value=completion(
                {
                    "promises": [
                        {
                            "type": "appointment",
                            "content": " Dinner with Sam ",
                            "deadline": "2024-05-03T19:00:00Z",
                            "priority": "high",
                            "confidence": 0.9,
                        },
                        {"type": "bogus", "content": "x"},
                        {"type": "task", "content": "   "},
                        {"type": "task", "content": "Book table", "priority": "??", "confidence": "hi"},
                        "nope",
                    ]
                }
            )
        )

        found = await ai_detector.detect_with_model("Dinner with Sam on Friday at 7, book a table")

        assert [p.content for p in found] == ["Dinner with Sam", "Book table"]
        assert found[0].deadline == datetime(2024, 5, 3, 19, 0, tzinfo=timezone.utc)
        assert found[0].priority == "high"
        assert found[1].priority == "medium"
        assert found[1].confidence == 0.7
        kwargs = mock_openai_client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_model_error_yields_nothing(self, ai_detector, mock_openai_client):
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=OpenAIError("down"))
        assert await ai_detector.detect_with_model("I will bring the documents tomorrow") == []

    @pytest.mark.asyncio
    async def test_bad_json_yields_nothing(self, ai_detector, mock_openai_client, completion):
        mock_openai_client.chat.completions.create = AsyncMock(return_value=completion("not json"))
        assert await ai_detector.detect_with_model("I will bring the documents tomorrow") == []


# ──────────── detect_promises ───────────────────────────────


class TestDetectPromises:
    @pytest.mark.asyncio
    async def test_empty_content(self, detector, promise_store):
        assert await detector.detect_promises("m1", "   ", "u1", True) == []
        promise_store.store_promises.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stores_pattern_results(self, detector, promise_store):
        found = await detector.detect_promises("m1", "I'll send the report by Friday.", "u1", True)

        promise_store.store_promises.assert_awaited_once_with(
            request_id="m1", user_id="u1", promises=found, from_self=True
        )

    @pytest.mark.asyncio
    async def test_nothing_found_stores_nothing(self, detector, promise_store):
        assert await detector.detect_promises("m1", "haha that was fun", "u1", False) == []
        promise_store.store_promises.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_short_content_skips_model(self, ai_detector, mock_openai_client):
        mock_openai_client.chat.completions.create = AsyncMock()

        await ai_detector.detect_promises("m1", "I'll call", "u1", True)

        mock_openai_client.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_model_duplicates_are_merged(self, ai_detector, mock_openai_client, completion):
        mock_openai_client.chat.completions.create = AsyncMock(
            return_value=completion(
                {"promises": [{"type": "commitment", "content": "I'll send the report by Friday"}]}
            )
        )

        found = await ai_detector.detect_promises("m1", "I'll send the report by Friday.", "u1", True)

        assert [p.type for p in found] == ["commitment", "deadline"]
