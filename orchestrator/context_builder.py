from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


DEFAULT_TONE = "friendly"
DEFAULT_STYLE = "concise"
DEFAULT_LANGUAGE = "en"

LATENCY_WINDOW = 20
MAX_GAP_MS = 24 * 60 * 60 * 1000
MIN_VALID_GAPS = 2
TOPIC_WINDOW = 5
TOPIC_MIN_HITS = 2

# Evaluated in order; first cluster reaching TOPIC_MIN_HITS wins
TOPIC_CLUSTERS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("work", ("work", "job", "meeting", "project", "deadline", "office")),
    ("family", ("family", "mom", "dad", "sister", "brother", "parents")),
    ("travel", ("vacation", "travel", "trip", "flight", "hotel")),
    ("health", ("health", "doctor", "sick", "appointment", "medicine")),
    ("food", ("food", "dinner", "lunch", "restaurant", "cooking")),
    ("social", ("plans", "weekend", "party", "event", "celebration")),
)


@dataclass
class ContextMessage:
    id: str
    content: str
    from_self: bool
    timestamp: Optional[datetime]
    type: str = "text"


@dataclass
class ContactContext:
    display_name: Optional[str] = None
    relationship: Optional[str] = None
    notes: Optional[str] = None
    inferred_name: Optional[str] = None
    inferred_relationship: Optional[str] = None
    inference_confidence: Optional[float] = None

    @property
    def effective_relationship(self) -> Optional[str]:
        return self.relationship or self.inferred_relationship


@dataclass
class UserPreferences:
    tone: str = DEFAULT_TONE
    response_style: str = DEFAULT_STYLE
    language: str = DEFAULT_LANGUAGE
    personality_traits: List[str] = field(default_factory=list)


@dataclass
class ContextMetadata:
    chat_type: str = "individual"
    message_count: int = 0
    average_response_time_ms: Optional[float] = None
    last_interaction_time: Optional[datetime] = None
    topic: Optional[str] = None


@dataclass
class ConversationContext:
    messages: List[ContextMessage] = field(default_factory=list)
    contact: Optional[ContactContext] = None
    preferences: Optional[UserPreferences] = None
    metadata: ContextMetadata = field(default_factory=ContextMetadata)

    @property
    def resolved_preferences(self) -> UserPreferences:
        if self.preferences is None:
            return UserPreferences()
        return UserPreferences(
            tone=self.preferences.tone or DEFAULT_TONE,
            response_style=self.preferences.response_style or DEFAULT_STYLE,
            language=self.preferences.language or DEFAULT_LANGUAGE,
            personality_traits=list(self.preferences.personality_traits or []),
        )

    @property
    def has_contact_info(self) -> bool:
        return self.contact is not None


def default_context(chat_type: str = "individual") -> ConversationContext:
    return ConversationContext(metadata=ContextMetadata(chat_type=chat_type))


def calculate_average_response_time(messages: Sequence[ContextMessage]) -> Optional[float]:
    """Mean gap in ms between an incoming message and the owner's next reply.

    ``messages`` must be chronological. Gaps that are non-positive or a day or
    longer are ignored. Returns None with fewer than two usable gaps.
    """
    window = list(messages)[-LATENCY_WINDOW:]
    gaps: List[float] = []
    for prev, curr in zip(window, window[1:]):
        if prev.from_self or not curr.from_self:
            continue
        if prev.timestamp is None or curr.timestamp is None:
            continue
        gap_ms = (curr.timestamp - prev.timestamp).total_seconds() * 1000
        if 0 < gap_ms < MAX_GAP_MS:
            gaps.append(gap_ms)

    if len(gaps) < MIN_VALID_GAPS:
        return None
    return sum(gaps) / len(gaps)


def infer_topic(texts: Sequence[str]) -> Optional[str]:
    joined = " ".join(texts[:TOPIC_WINDOW]).lower()
    if not joined.strip():
        return None
    for topic, keywords in TOPIC_CLUSTERS:
        hits = sum(1 for kw in keywords if kw in joined)
        if hits >= TOPIC_MIN_HITS:
            return topic
    return None


class ContextBuilder:

    def __init__(self, message_store: Any, max_messages: int = 20) -> None:
        self._store = message_store
        self._max_messages = max_messages

    async def build_context(
        self,
        request_id: str,
        user_id: str,
        max_messages: Optional[int] = None,
        chat_type: str = "individual",
    ) -> ConversationContext:
        limit = max_messages or self._max_messages
        try:
            resolved = await self._store.resolve_message(request_id, user_id)
            if resolved is None:
                logger.warning(
                    "context_builder:message_not_found",
                    extra={"request_id": request_id, "user_id": user_id},
                )
                return default_context()

            chat_id = resolved["chat_id"]
            contact_id = resolved.get("contact_id")

            messages, contact, preferences = await asyncio.gather(
                self._load_messages(chat_id, limit),
                self._load_contact(contact_id, user_id),
                self._load_preferences(user_id),
            )
            metadata = await self._load_metadata(chat_id, chat_type, messages, limit)

            context = ConversationContext(
                messages=messages,
                contact=contact,
                preferences=preferences,
                metadata=metadata,
            )
            logger.debug(
                "context_builder:built",
                extra={
                    "request_id": request_id,
                    "message_count": len(messages),
                    "has_contact": contact is not None,
                    "topic": metadata.topic,
                },
            )
            return context

        except Exception as e:
            logger.error(
                "context_builder:failed:using_default",
                extra={"request_id": request_id, "user_id": user_id, "error": str(e)},
                exc_info=True,
            )
            return default_context()

    async def _load_messages(self, chat_id: str, limit: int) -> List[ContextMessage]:
        rows = await self._store.fetch_recent_messages(chat_id, limit)
        return [
            ContextMessage(
                id=str(r["id"]),
                content=r.get("content") or "",
                from_self=bool(r.get("from_self")),
                timestamp=r.get("timestamp"),
                type=r.get("type") or "text",
            )
            for r in reversed(rows)
        ]

    async def _load_contact(self, contact_id: Optional[str], user_id: str) -> Optional[ContactContext]:
        if not contact_id:
            return None
        row = await self._store.fetch_contact(contact_id, user_id)
        if row is None:
            return None
        return ContactContext(
            display_name=row.get("display_name"),
            relationship=row.get("relationship"),
            notes=row.get("notes"),
            inferred_name=row.get("inferred_name"),
            inferred_relationship=row.get("inferred_relationship"),
            inference_confidence=row.get("inference_confidence"),
        )

    async def _load_preferences(self, user_id: str) -> Optional[UserPreferences]:
        row = await self._store.fetch_preferences(user_id)
        if row is None:
            return None
        return UserPreferences(
            tone=row.get("tone") or DEFAULT_TONE,
            response_style=row.get("response_style") or DEFAULT_STYLE,
            language=row.get("language") or DEFAULT_LANGUAGE,
            personality_traits=list(row.get("personality_traits") or []),
        )

    async def _load_metadata(
        self,
        chat_id: str,
        chat_type: str,
        messages: List[ContextMessage],
        limit: int,
    ) -> ContextMetadata:
        chat, count, texts = await asyncio.gather(
            self._store.fetch_chat(chat_id),
            self._store.count_messages(chat_id),
            self._store.fetch_recent_text(chat_id, TOPIC_WINDOW),
        )
        # The history window already covers the latency window when it is at least as long
        if limit >= LATENCY_WINDOW:
            latency_window = messages[-LATENCY_WINDOW:]
        else:
            latency_window = await self._load_messages(chat_id, LATENCY_WINDOW)

        resolved_type = chat_type
        last_interaction: Optional[datetime] = None
        if chat:
            if chat.get("is_group"):
                resolved_type = "group"
            last_interaction = chat.get("last_message_at")

        return ContextMetadata(
            chat_type=resolved_type,
            message_count=count,
            average_response_time_ms=calculate_average_response_time(latency_window),
            last_interaction_time=last_interaction,
            topic=infer_topic(texts),
        )

    @staticmethod
    def format_for_prompt(context: ConversationContext) -> str:
        blocks: List[str] = []

        if context.messages:
            lines = ["Recent conversation:"]
            for msg in context.messages:
                speaker = "You" if msg.from_self else "Them"
                lines.append(f"{speaker}: {msg.content}")
            blocks.append("\n".join(lines))

        contact = context.contact
        if contact is not None:
            lines = ["Contact information:"]
            if contact.display_name:
                lines.append(f"- Name: {contact.display_name}")
            if contact.inferred_name and contact.inferred_name != contact.display_name:
                lines.append(f"- Inferred name: {contact.inferred_name}")
            relationship = contact.effective_relationship
            if relationship:
                lines.append(f"- Relationship: {relationship}")
            if contact.notes:
                lines.append(f"- Notes: {contact.notes}")
            if len(lines) > 1:
                blocks.append("\n".join(lines))

        if context.preferences is not None:
            prefs = context.resolved_preferences
            lines = [
                "Response preferences:",
                f"- Tone: {prefs.tone}",
                f"- Style: {prefs.response_style}",
                f"- Language: {prefs.language}",
            ]
            if prefs.personality_traits:
                lines.append(f"- Personality: {', '.join(prefs.personality_traits)}")
            blocks.append("\n".join(lines))

        meta = context.metadata
        lines = [
            "Context:",
            f"- Chat type: {meta.chat_type}",
            f"- Message count: {meta.message_count}",
        ]
        if meta.topic:
            lines.append(f"- Topic: {meta.topic}")
        if meta.average_response_time_ms is not None:
            minutes = round(meta.average_response_time_ms / 60000)
            lines.append(f"- Typical response time: {minutes} minutes")
        blocks.append("\n".join(lines))

        return "\n\n".join(blocks)
