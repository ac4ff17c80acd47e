from orchestrator.messages import (
    AnalyticsSummary,
    FeedbackRequest,
    FeedbackResponse,
    GeneratedResponse,
    GenerateRequest,
    IncomingMessageEvent,
    IngestResponse,
    StreamEvent,
)

__all__ = [
    "IncomingMessageEvent",
    "IngestResponse",
    "GenerateRequest",
    "GeneratedResponse",
    "FeedbackRequest",
    "FeedbackResponse",
    "AnalyticsSummary",
    "StreamEvent",
]
