from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from observability.metrics import record_safety_issue
from orchestrator.context_builder import ConversationContext

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class SafetyIssue(str, Enum):
    INAPPROPRIATE = "inappropriate_content"
    SPAM = "spam"
    UNPROFESSIONAL = "unprofessional"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    PERSONAL_INFO = "personal_info"


@dataclass(frozen=True)
class SafetyRule:
    issue: SafetyIssue
    severity: Severity
    patterns: Tuple[Pattern[str], ...]
    professional_only: bool = False


def _compile(*patterns: str, flags: int = re.IGNORECASE) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


ROMANTIC_EMOJI = "[\U0001F60D\U0001F618\U0001F48B❤\U0001F495]️?"

SAFETY_RULES: Tuple[SafetyRule, ...] = (
    SafetyRule(
        SafetyIssue.INAPPROPRIATE,
        Severity.HIGH,
        _compile(
            r"\b(hate|violence|racist|sexist|discriminat)\w*\b",
            r"\b(kill|murder|suicide|self-harm)\b",
            r"\b(illegal|drugs|weapon)\w*\b",
            r"\b(personal\s+information|ssn|credit\s+card|password)\b",
        ),
    ),
    SafetyRule(
        SafetyIssue.SPAM,
        Severity.MEDIUM,
        _compile(
            r"\b(click here|act now|limited time|urgent)\b",
            r"\$\d+|\b\d+%\s+off\b",
            r"\b(lottery|winner|prize|congratulations)\b",
        ),
    ),
    SafetyRule(
        SafetyIssue.UNPROFESSIONAL,
        Severity.MEDIUM,
        _compile(
            r"\b(love you|babe|honey|sweetheart)\b",
            r"\b(drunk|wasted|party hard)\b",
            ROMANTIC_EMOJI,
        ),
        professional_only=True,
    ),
    SafetyRule(
        SafetyIssue.PERSONAL_INFO,
        Severity.HIGH,
        _compile(
            r"\b\d{3}-\d{2}-\d{4}\b",
            r"\b\d{4}\s?\d{4}\s?\d{4}\s?\d{4}\b",
            r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
            r"\b\d{3}-\d{3}-\d{4}\b",
        ),
    ),
)

LENGTH_SEVERITY = Severity.LOW

PROFESSIONAL_RELATIONSHIPS = (
    "colleague", "boss", "client", "coworker", "manager", "employee",
    "business", "professional", "work", "corporate",
)

# Applied in order by make_professional
PROFESSIONAL_SUBSTITUTIONS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"\blove you\b", re.IGNORECASE), "appreciate you"),
    (re.compile(r"\b(babe|honey|sweetheart)\b", re.IGNORECASE), ""),
    (re.compile(ROMANTIC_EMOJI), ""),
    (re.compile(r"\b(drunk|wasted)\b", re.IGNORECASE), "busy"),
    (re.compile(r"\bparty hard\b", re.IGNORECASE), "celebrate"),
)

EXPANSIONS: Dict[str, str] = {
    "ok": "Okay, sounds good!",
    "k": "Okay, sounds good!",
    "yes": "Yes, that works for me.",
    "y": "Yes, that works for me.",
    "no": "No, I don't think so.",
    "n": "No, I don't think so.",
    "thanks": "Thank you for letting me know.",
    "sure": "Sure, that sounds fine.",
}
CONTINUATION_PHRASE = "Thanks for sharing that with me."

PROFESSIONAL_FALLBACKS = (
    "Thank you for your message.",
    "I understand. Let me get back to you on this.",
    "Thanks for the information.",
)
CASUAL_FALLBACKS = (
    "Thanks for letting me know!",
    "I understand.",
    "Got it, thanks for sharing.",
)

ISSUE_CONFIDENCE_FACTOR = 0.7
CONFIDENCE_FLOOR = 0.3
FALLBACK_CONFIDENCE_CAP = 0.3

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_STRAY_SYMBOLS = re.compile(r"[^\w\s.,!?'\-]")
_WHITESPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([.,!?])")


@dataclass
class SafetyCheck:
    issues: List[SafetyIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    @property
    def severity(self) -> Optional[Severity]:
        if not self.issues:
            return None
        return max((issue_severity(i) for i in self.issues), key=lambda s: s.rank)


@dataclass
class FilteredResult:
    suggestions: List[str]
    confidence: float
    safety_issues: List[str] = field(default_factory=list)
    used_fallback: bool = False


def issue_severity(issue: SafetyIssue) -> Severity:
    if issue in (SafetyIssue.TOO_SHORT, SafetyIssue.TOO_LONG):
        return LENGTH_SEVERITY
    for rule in SAFETY_RULES:
        if rule.issue is issue:
            return rule.severity
    return Severity.LOW


def is_professional_context(context: Optional[ConversationContext]) -> bool:
    if context is None or context.contact is None:
        return False
    relationship = (context.contact.effective_relationship or "").lower()
    if not relationship:
        return False
    return any(prof in relationship for prof in PROFESSIONAL_RELATIONSHIPS)


class ResponseSafety:

    def __init__(
        self,
        *,
        min_length: int = 2,
        max_length: int = 500,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._min_length = min_length
        self._max_length = max_length
        self._rng = rng or random.Random()

    def check(self, suggestion: str, context: Optional[ConversationContext]) -> SafetyCheck:
        professional = is_professional_context(context)
        check = SafetyCheck()
        for rule in SAFETY_RULES:
            if rule.professional_only and not professional:
                continue
            if any(p.search(suggestion) for p in rule.patterns):
                check.issues.append(rule.issue)

        length = len(suggestion.strip())
        if length < self._min_length:
            check.issues.append(SafetyIssue.TOO_SHORT)
        elif length > self._max_length:
            check.issues.append(SafetyIssue.TOO_LONG)
        return check

    def validate_and_filter(
        self,
        suggestions: Sequence[str],
        confidence: float,
        context: Optional[ConversationContext],
        *,
        user_id: Optional[str] = None,
    ) -> FilteredResult:
        kept: List[str] = []
        detected: List[str] = []

        for suggestion in suggestions:
            check = self.check(suggestion, context)
            if check.is_valid:
                kept.append(suggestion)
                continue

            detected.extend(i.value for i in check.issues if i.value not in detected)
            self._report(suggestion, check, user_id)

            if check.severity is Severity.HIGH:
                continue
            remediated = self.remediate(suggestion, check)
            if remediated:
                kept.append(remediated)

        adjusted = confidence
        if detected:
            adjusted = max(confidence * ISSUE_CONFIDENCE_FACTOR, CONFIDENCE_FLOOR)

        used_fallback = False
        if not kept:
            kept = [self.fallback_response(context)]
            adjusted = min(adjusted, FALLBACK_CONFIDENCE_CAP)
            used_fallback = True
            logger.info(
                "response_safety:fallback_substituted",
                extra={"user_id": user_id, "issues": detected},
            )

        return FilteredResult(
            suggestions=kept,
            confidence=adjusted,
            safety_issues=detected,
            used_fallback=used_fallback,
        )

    def remediate(self, suggestion: str, check: SafetyCheck) -> Optional[str]:
        text = suggestion
        if SafetyIssue.UNPROFESSIONAL in check.issues:
            text = self.make_professional(text)
        if len(text.strip()) > self._max_length:
            text = self.shorten(text)
        if len(text.strip()) < self._min_length:
            text = self.expand(text)
        cleaned = self.cleanup(text)
        return cleaned or None

    @staticmethod
    def make_professional(text: str) -> str:
        for pattern, replacement in PROFESSIONAL_SUBSTITUTIONS:
            text = pattern.sub(replacement, text)
        return text

    def shorten(self, text: str) -> str:
        first = next((s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()), "")
        if len(first) >= self._max_length:
            first = first[: self._max_length - 1].rsplit(" ", 1)[0].rstrip()
        return first + "."

    @staticmethod
    def expand(text: str) -> str:
        stripped = text.strip()
        if not stripped:
            return CONTINUATION_PHRASE
        return EXPANSIONS.get(stripped.lower(), f"{stripped}. {CONTINUATION_PHRASE}")

    @staticmethod
    def cleanup(text: str) -> str:
        text = _STRAY_SYMBOLS.sub("", text)
        text = _WHITESPACE.sub(" ", text)
        text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
        return text.strip()

    def fallback_response(self, context: Optional[ConversationContext]) -> str:
        pool = PROFESSIONAL_FALLBACKS if is_professional_context(context) else CASUAL_FALLBACKS
        return self._rng.choice(pool)

    @staticmethod
    def _report(suggestion: str, check: SafetyCheck, user_id: Optional[str]) -> None:
        severity = check.severity.value if check.severity else "none"
        logger.warning(
            "response_safety:issue_detected",
            extra={
                "user_id": user_id,
                "issues": [i.value for i in check.issues],
                "severity": severity,
                "preview": suggestion[:50],
            },
        )
        for issue in check.issues:
            record_safety_issue(issue.value, issue_severity(issue).value)
