
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def validate_iso8601(value: str) -> str:
    formats = (
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%dT%H:%M:%S.%f%z",
    )
    candidate = value[:-1] + "+0000" if value.endswith("Z") else value
    for fmt in formats:
        try:
            datetime.strptime(candidate, fmt)
            return value
        except ValueError:
            continue
    raise ValueError("timestamp must be ISO8601 format")


ChatType = Literal["individual", "group"]


class IncomingMessageEvent(BaseModel):

    request_id: str = Field(..., min_length=1, description="Stored message identifier")
    chat_id: str = Field(..., min_length=1, description="Conversation identifier")
    user_id: str = Field(..., min_length=1, description="Owner of the connected account")
    content: str = Field("", description="Message text (may be empty for media)")
    from_self: bool = Field(False, description="Sent by the account owner")
    message_type: str = Field("text", description="text, image, video, audio, document")
    chat_type: ChatType = "individual"
    contact_id: Optional[str] = Field(None, description="Sender contact identifier")
    sender_external_id: Optional[str] = Field(None, description="Transport-level sender id")
    media_url: Optional[str] = None
    timestamp: Optional[str] = Field(None, description="Message timestamp (ISO 8601)")

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return validate_iso8601(v)

    @property
    def has_media(self) -> bool:
        return bool(self.media_url) or self.message_type in ("image", "video", "audio", "document")


class GenerateRequest(BaseModel):

    request_id: str = Field(..., min_length=1, description="Message to reply to")
    content: str = Field(..., description="Message text")
    user_id: str = Field(..., min_length=1)
    chat_type: ChatType = "individual"
    streaming: bool = False


class GeneratedResponse(BaseModel):

    request_id: str
    suggestions: List[str] = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    message_type: str = "social"
    cached: bool = False
    safety_issues: List[str] = Field(default_factory=list)


class CacheEntry(BaseModel):

    suggestions: List[str]
    confidence: float
    reasoning: Optional[str] = None
    message_type: str = "social"
    created_at: float = Field(..., description="Epoch seconds")
    ttl_seconds: int


class FeedbackRequest(BaseModel):

    request_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    selected_index: Optional[int] = Field(None, ge=0)
    feedback: Optional[Literal["positive", "negative", "neutral"]] = None
    custom_response: Optional[str] = None


class FeedbackResponse(BaseModel):

    success: bool
    updated: bool


class AnalyticsSummary(BaseModel):

    total_suggestions: int = 0
    average_confidence: float = 0.0
    selection_rate: float = 0.0
    message_type_breakdown: Dict[str, int] = Field(default_factory=dict)
    quality_score: float = 0.0


class CacheStats(BaseModel):

    total_keys: int
    memory_usage: str


class EnqueuedJob(BaseModel):

    queue: str
    job_id: int
    priority: int
    delay_seconds: float = 0.0


class IngestResponse(BaseModel):

    request_id: str
    jobs: List[EnqueuedJob] = Field(default_factory=list)


class QueueStats(BaseModel):

    queue: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False


class StreamEvent(BaseModel):
    """One server-sent event frame on the streaming generate endpoint."""

    type: Literal["token", "complete", "error"]
    data: Any = None
