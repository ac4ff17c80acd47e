from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Pattern, Tuple

from openai import AsyncOpenAI, OpenAIError
from rapidfuzz.distance import Levenshtein

from observability.metrics import record_llm_usage

logger = logging.getLogger(__name__)


PATTERN_CONFIDENCE = 0.7
DUPLICATE_SIMILARITY = 0.8
AI_MIN_LENGTH = 20
PROMISE_TYPES = ("commitment", "deadline", "appointment", "task")
PRIORITIES = ("low", "medium", "high")


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# One detection per type at most; the first matching pattern wins
PROMISE_RULES: Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...] = (
    ("commitment", (
        _rx(r"\b(i will|i'll|i shall|i promise|i commit|i guarantee)\b"),
        _rx(r"\b(will do|will send|will call|will meet|will be there)\b"),
        _rx(r"\b(going to|gonna)\s+\w+"),
        _rx(r"\b(promise to|commit to|guarantee to)\b"),
    )),
    ("deadline", (
        _rx(r"\b(by|before|until|till)\s+(monday|tuesday|wednesday|thursday|friday|saturday|sunday"
            r"|tomorrow|today|tonight|next week|next month|end of)"),
        _rx(r"\b(deadline|due date|due by|submit by)\b"),
        _rx(r"\b(\d{1,2}[:/]\d{2}\s*(am|pm)?)\b"),
        _rx(r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\b"),
    )),
    ("appointment", (
        _rx(r"\b(meeting|appointment|call|interview|session)\s+(at|on|scheduled)"),
        _rx(r"\b(see you|meet you|call you)\s+(at|on|tomorrow|today)"),
        _rx(r"\b(let's meet|let's call|let's discuss)\b"),
    )),
    ("task", (
        _rx(r"\b(need to|have to|must|should|supposed to)\s+\w+"),
        _rx(r"\b(todo|to do|task|action item)\b"),
        _rx(r"\b(remind me|don't forget|remember to)\b"),
    )),
)

HIGH_PRIORITY = _rx(r"\b(urgent|asap|immediately|critical|important|priority|emergency)\b")
LOW_PRIORITY = _rx(r"\b(whenever|when you can|no rush|if possible|maybe)\b")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_TIME = _rx(r"\b(\d{1,2}):(\d{2})\s*(am|pm)?\b")

PROMISE_SYSTEM_PROMPT = """You find promises, commitments, deadlines, appointments and tasks in chat messages.

Return ONLY this JSON object:
{
  "promises": [
    {
      "type": "commitment|deadline|appointment|task",
      "content": "the promise text",
      "deadline": "ISO 8601 datetime or null",
      "priority": "low|medium|high",
      "confidence": 0.0-1.0
    }
  ]
}
Return {"promises": []} when there is nothing to track."""


@dataclass
class DetectedPromise:
    type: str
    content: str
    deadline: Optional[datetime]
    priority: str
    confidence: float


def determine_priority(text: str) -> str:
    if HIGH_PRIORITY.search(text):
        return "high"
    if LOW_PRIORITY.search(text):
        return "low"
    return "medium"


def extract_deadline(text: str, now: datetime) -> Optional[datetime]:
    lowered = text.lower()
    if re.search(r"\btomorrow\b", lowered):
        return now + timedelta(days=1)
    if re.search(r"\b(today|tonight)\b", lowered):
        return now
    if re.search(r"\bnext week\b", lowered):
        return now + timedelta(days=7)
    if re.search(r"\bnext month\b", lowered):
        # Clamp to the last day of the following month
        year = now.year + (1 if now.month == 12 else 0)
        month = 1 if now.month == 12 else now.month + 1
        day = now.day
        while True:
            try:
                return now.replace(year=year, month=month, day=day)
            except ValueError:
                day -= 1

    for index, day_name in enumerate(WEEKDAYS):
        if re.search(rf"\b{day_name}\b", lowered):
            days_ahead = (index - now.weekday()) % 7 or 7
            return now + timedelta(days=days_ahead)

    match = _TIME.search(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2))
        meridiem = (match.group(3) or "").lower()
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
        if hour > 23 or minute > 59:
            return None
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate < now:
            candidate += timedelta(days=1)
        return candidate

    return None


def _sentence_around(text: str, index: int) -> str:
    start = 0
    for match in re.finditer(r"[.!?]+", text):
        if match.start() >= index:
            return text[start:match.start()].strip()
        start = match.end()
    return text[start:].strip() or text[index:index + 100].strip()


def deduplicate(promises: List[DetectedPromise]) -> List[DetectedPromise]:
    unique: List[DetectedPromise] = []
    for promise in promises:
        duplicate = any(
            p.type == promise.type
            and Levenshtein.normalized_similarity(p.content, promise.content) > DUPLICATE_SIMILARITY
            for p in unique
        )
        if not duplicate:
            unique.append(promise)
    return unique


class PromiseDetector:

    def __init__(
        self,
        *,
        promise_store: Any,
        openai_client: Optional[AsyncOpenAI] = None,
        settings: Any = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = promise_store
        self._client = openai_client
        self._model = getattr(settings, "PROMISE_MODEL", "gpt-4o-mini")
        self._ai_enabled = bool(getattr(settings, "PROMISE_AI_DETECTION_ENABLED", True)) and openai_client is not None
        self._now = now_fn

    def detect_with_patterns(self, content: str) -> List[DetectedPromise]:
        now = self._now()
        detected: List[DetectedPromise] = []
        for promise_type, patterns in PROMISE_RULES:
            for pattern in patterns:
                match = pattern.search(content)
                if match is None:
                    continue
                detected.append(
                    DetectedPromise(
                        type=promise_type,
                        content=_sentence_around(content, match.start()),
                        deadline=extract_deadline(content, now),
                        priority=determine_priority(content),
                        confidence=PATTERN_CONFIDENCE,
                    )
                )
                break
        return detected

    async def detect_with_model(self, content: str) -> List[DetectedPromise]:
        if not self._ai_enabled:
            return []
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": PROMISE_SYSTEM_PROMPT},
                    {"role": "user", "content": f'Message:\n"{content}"'},
                ],
                temperature=0,
                max_tokens=300,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.error("promise_detector:model_failed", extra={"error": str(e)})
            return []

        usage = getattr(response, "usage", None)
        if usage is not None:
            record_llm_usage(
                "promise_detector",
                self._model,
                int(getattr(usage, "prompt_tokens", 0) or 0),
                int(getattr(usage, "completion_tokens", 0) or 0),
            )

        raw = response.choices[0].message.content or "{}"
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("promise_detector:json_parse_error", extra={"preview": raw[:100]})
            return []

        items = data.get("promises") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []

        promises: List[DetectedPromise] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            promise_type = item.get("type")
            text = item.get("content")
            if promise_type not in PROMISE_TYPES or not isinstance(text, str) or not text.strip():
                continue
            priority = item.get("priority") if item.get("priority") in PRIORITIES else "medium"
            confidence = item.get("confidence")
            if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
                confidence = PATTERN_CONFIDENCE
            promises.append(
                DetectedPromise(
                    type=promise_type,
                    content=text.strip(),
                    deadline=_parse_deadline(item.get("deadline")),
                    priority=priority,
                    confidence=max(0.0, min(1.0, float(confidence))),
                )
            )
        return promises

    async def detect_promises(
        self,
        request_id: str,
        content: str,
        user_id: str,
        from_self: bool,
    ) -> List[DetectedPromise]:
        if not content or not content.strip():
            return []

        promises = self.detect_with_patterns(content)
        if len(content) > AI_MIN_LENGTH:
            promises.extend(await self.detect_with_model(content))

        unique = deduplicate(promises)
        if unique:
            await self._store.store_promises(
                request_id=request_id,
                user_id=user_id,
                promises=unique,
                from_self=from_self,
            )
        logger.info(
            "promise_detector:done",
            extra={
                "request_id": request_id,
                "detected": len(unique),
                "types": [p.type for p in unique],
            },
        )
        return unique


def _parse_deadline(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
