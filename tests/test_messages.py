"""Unit tests for orchestrator/messages.py (Pydantic models & validators)."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from orchestrator.messages import (
    FeedbackRequest,
    GenerateRequest,
    GeneratedResponse,
    IncomingMessageEvent,
    StreamEvent,
    validate_iso8601,
)


# ──────────────────────────── validate_iso8601 ────────────────────────────


class TestValidateISO8601:
    def test_valid_without_microseconds(self):
        assert validate_iso8601("2025-01-15T10:30:00") == "2025-01-15T10:30:00"

    def test_valid_with_microseconds(self):
        ts = "2025-01-15T10:30:00.123456"
        assert validate_iso8601(ts) == ts

    def test_valid_with_zulu(self):
        assert validate_iso8601("2025-01-15T10:30:00Z") == "2025-01-15T10:30:00Z"

    def test_valid_with_offset(self):
        assert validate_iso8601("2025-01-15T10:30:00+02:00") == "2025-01-15T10:30:00+02:00"

    def test_invalid_format_raises(self):
        with pytest.raises(ValueError, match="ISO8601"):
            validate_iso8601("not-a-timestamp")

    def test_date_only_raises(self):
        with pytest.raises(ValueError, match="ISO8601"):
            validate_iso8601("2025-01-15")


# ──────────────────────────── IncomingMessageEvent ────────────────────────────


class TestIncomingMessageEvent:
    def _event(self, **kw):
        base = {"request_id": "m1", "chat_id": "c1", "user_id": "u1", "content": "hi"}
        base.update(kw)
        return IncomingMessageEvent(**base)

    def test_defaults(self):
        event = self._event()
        assert event.from_self is False
        assert event.chat_type == "individual"
        assert event.message_type == "text"
        assert event.has_media is False

    def test_empty_request_id_rejected(self):
        with pytest.raises(ValidationError):
            self._event(request_id="")

    def test_bad_timestamp_rejected(self):
        with pytest.raises(ValidationError):
            self._event(timestamp="yesterday")

    def test_bad_chat_type_rejected(self):
        with pytest.raises(ValidationError):
            self._event(chat_type="channel")

    @pytest.mark.parametrize("message_type", ["image", "video", "audio", "document"])
    def test_media_types(self, message_type):
        assert self._event(message_type=message_type).has_media is True

    def test_media_url_counts_as_media(self):
        assert self._event(media_url="https://cdn.example.com/x.png").has_media is True


# ──────────────────────────── request / response ────────────────────────────


class TestRequestModels:
    def test_generate_request_defaults(self):
        req = GenerateRequest(request_id="m1", content="hi", user_id="u1")
        assert req.streaming is False
        assert req.chat_type == "individual"

    def test_generated_response_needs_a_suggestion(self):
        with pytest.raises(ValidationError):
            GeneratedResponse(request_id="m1", suggestions=[], confidence=0.5)

    @pytest.mark.parametrize("confidence", [-0.1, 1.1])
    def test_generated_response_confidence_bounds(self, confidence):
        with pytest.raises(ValidationError):
            GeneratedResponse(request_id="m1", suggestions=["ok"], confidence=confidence)

    def test_feedback_values(self):
        assert FeedbackRequest(request_id="m1", user_id="u1", feedback="positive").feedback == "positive"
        with pytest.raises(ValidationError):
            FeedbackRequest(request_id="m1", user_id="u1", feedback="great")

    def test_feedback_negative_index_rejected(self):
        with pytest.raises(ValidationError):
            FeedbackRequest(request_id="m1", user_id="u1", selected_index=-1)

    def test_stream_event_json(self):
        assert StreamEvent(type="token", data="Hi").model_dump_json() == '{"type":"token","data":"Hi"}'
