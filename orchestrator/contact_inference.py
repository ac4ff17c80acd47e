from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)


HISTORY_LIMIT = 50
MAX_NAME_LENGTH = 30
BASE_CONFIDENCE = 0.3
PATTERN_SCORE = 10
KEYWORD_SCORE = 5

COMMON_CAPITALIZED = frozenset(
    {"The", "This", "That", "These", "Those", "What", "When", "Where", "Why", "How"}
)

INTRO_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(?:[Ii] am|[Ii]'m|[Tt]his is|[Ii]t's|[Ii]ts)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\b"),
    re.compile(r"\b(?:[Cc]all me|[Nn]ame is)\s+([A-Z][a-z]+)\b"),
    re.compile(r"^([A-Z][a-z]+)(?:\s+here|\s+speaking)\b", re.MULTILINE),
)

SIGN_OFF_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(?:[Rr]egards|[Bb]est|[Tt]hanks|[Ss]incerely|[Cc]heers),?\s*([A-Z][a-z]+)"),
    re.compile(r"^-\s*([A-Z][a-z]+)$", re.MULTILINE),
)

_CAPITALIZED = re.compile(r"\b([A-Z][a-z]+)\b")


@dataclass(frozen=True)
class RelationshipRule:
    relationship: str
    patterns: Tuple[Pattern[str], ...]
    keywords: Tuple[str, ...]


RELATIONSHIP_RULES: Tuple[RelationshipRule, ...] = (
    RelationshipRule(
        "family",
        (re.compile(r"\b(mom|mother|dad|father|brother|sister|son|daughter|husband|wife|grandma|grandpa)\b", re.I),),
        ("family", "relative", "cousin", "aunt", "uncle", "nephew", "niece"),
    ),
    RelationshipRule(
        "friend",
        (re.compile(r"\b(friend|buddy|pal|mate|bro|dude|girl|bestie)\b", re.I),),
        ("hang out", "party", "weekend", "fun", "chill"),
    ),
    RelationshipRule(
        "colleague",
        (re.compile(r"\b(boss|manager|colleague|coworker|team|client|meeting|project|deadline|work)\b", re.I),),
        ("office", "meeting", "project", "deadline", "report", "presentation"),
    ),
    RelationshipRule(
        "professional",
        (re.compile(r"\b(doctor|dr\.|lawyer|accountant|contractor|consultant|therapist)\b", re.I),),
        ("appointment", "consultation", "service", "invoice", "payment"),
    ),
)


@dataclass
class ContactInferenceResult:
    contact_id: str
    inferred_name: Optional[str] = None
    inferred_relationship: Optional[str] = None
    confidence: float = 0.0
    signals: List[str] = field(default_factory=list)


def _plausible_name(candidate: str) -> bool:
    return len(candidate) < MAX_NAME_LENGTH and not any(ch.isdigit() for ch in candidate)


def infer_name(content: str) -> Optional[str]:
    for pattern in INTRO_PATTERNS + SIGN_OFF_PATTERNS:
        match = pattern.search(content)
        if match and _plausible_name(match.group(1)):
            return match.group(1)

    counts = Counter(
        word
        for word in _CAPITALIZED.findall(content)
        if word not in COMMON_CAPITALIZED and len(word) > 2
    )
    # Counter keeps first-seen order on ties
    for word, count in counts.most_common():
        if count >= 2:
            return word
        break
    return None


def infer_relationship(content: str) -> Optional[str]:
    best: Optional[str] = None
    best_score = 0
    for rule in RELATIONSHIP_RULES:
        score = sum(PATTERN_SCORE for p in rule.patterns if p.search(content))
        score += sum(
            KEYWORD_SCORE
            for keyword in rule.keywords
            if re.search(rf"\b{re.escape(keyword)}\b", content, re.IGNORECASE)
        )
        if score > best_score:
            best, best_score = rule.relationship, score
    return best


def calculate_confidence(signals: List[str], message_count: int) -> float:
    confidence = BASE_CONFIDENCE
    if "name_found" in signals:
        confidence += 0.3
    if "relationship_detected" in signals:
        confidence += 0.2
    if "sufficient_history" in signals:
        confidence += 0.2
    if message_count > 50:
        confidence += 0.1
    elif message_count > 20:
        confidence += 0.05
    return round(min(confidence, 1.0), 4)


class ContactInference:
    """Infers a contact's name and relationship from the conversation history."""

    def __init__(self, message_store: Any, history_limit: int = HISTORY_LIMIT) -> None:
        self._store = message_store
        self._history_limit = history_limit

    async def infer_identity(
        self,
        contact_id: str,
        message_content: str,
        user_id: str,
    ) -> ContactInferenceResult:
        history = await self._store.fetch_contact_history(
            contact_id, user_id, limit=self._history_limit
        )
        corpus = "\n".join([m.get("content") or "" for m in history] + [message_content or ""])

        name = infer_name(corpus)
        relationship = infer_relationship(corpus)

        signals: List[str] = []
        if name:
            signals.append("name_found")
        if relationship:
            signals.append("relationship_detected")
        if len(history) > 10:
            signals.append("sufficient_history")

        result = ContactInferenceResult(
            contact_id=contact_id,
            inferred_name=name,
            inferred_relationship=relationship,
            confidence=calculate_confidence(signals, len(history)),
            signals=signals,
        )

        await self._store.store_contact_inference(
            contact_id=contact_id,
            user_id=user_id,
            inferred_name=name,
            inferred_relationship=relationship,
            confidence=result.confidence,
            message_count=len(history),
            signals=signals,
        )
        logger.info(
            "contact_inference:done",
            extra={
                "contact_id": contact_id,
                "inferred_relationship": relationship,
                "has_name": name is not None,
                "confidence": result.confidence,
            },
        )
        return result
