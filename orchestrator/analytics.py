from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Iterable

from orchestrator.messages import AnalyticsSummary

CONFIDENCE_WEIGHT = 0.4
SELECTION_WEIGHT = 0.4
POSITIVE_FEEDBACK_WEIGHT = 0.2


def summarize_analytics(records: Iterable[Dict[str, Any]]) -> AnalyticsSummary:
    rows = list(records)
    total = len(rows)
    if total == 0:
        return AnalyticsSummary()

    average_confidence = sum(float(r.get("confidence") or 0.0) for r in rows) / total
    selected = sum(1 for r in rows if r.get("selected_index") is not None)
    positive = sum(1 for r in rows if r.get("feedback") == "positive")
    breakdown = Counter(r.get("message_type") or "unknown" for r in rows)

    selection_rate = selected / total
    positive_rate = positive / total
    quality = (
        average_confidence * CONFIDENCE_WEIGHT
        + selection_rate * SELECTION_WEIGHT
        + positive_rate * POSITIVE_FEEDBACK_WEIGHT
    )

    return AnalyticsSummary(
        total_suggestions=total,
        average_confidence=round(average_confidence, 4),
        selection_rate=round(selection_rate, 4),
        message_type_breakdown=dict(breakdown),
        quality_score=round(quality, 4),
    )
