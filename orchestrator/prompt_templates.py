from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Tuple

from orchestrator.context_builder import ConversationContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptTemplate:
    system: str
    user: str


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# Ordered: first matching rule decides the message type
MESSAGE_TYPE_RULES: Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...] = (
    ("question", (
        _rx(r"\?"),
        _rx(r"^\s*(how|what|when|where|why|who)\b"),
        _rx(r"\b(can|could|would) you\b"),
    )),
    ("invitation", (
        _rx(r"\b(invite|join us|come to|event|party|dinner|meeting|available)"),
    )),
    ("appreciation", (
        _rx(r"\b(thank|appreciate|grateful|awesome|amazing|great job|well done)"),
    )),
    ("concern", (
        _rx(r"\b(sorry|sad|worried|problem|difficult|help|support|stressed)"),
    )),
    ("business", (
        _rx(r"\b(project|deadline|meeting|budget|contract|proposal|client|business)"),
    )),
)
DEFAULT_MESSAGE_TYPE = "social"

# Intent label -> template name
TEMPLATE_MAP: Dict[str, str] = {
    "question": "question",
    "invitation": "invitation",
    "event": "invitation",
    "appreciation": "appreciation",
    "thanks": "appreciation",
    "compliment": "appreciation",
    "concern": "concern",
    "support": "concern",
    "sadness": "concern",
    "business": "business",
    "work": "business",
    "professional": "business",
    "social": "social",
    "casual": "social",
    "friendly": "social",
}
FALLBACK_TEMPLATE = "general"
GROUP_TEMPLATE = "group"

OUTPUT_CONTRACT = """
Return ONLY this JSON object:
{
  "suggestions": ["reply 1", "reply 2", "reply 3"],
  "confidence": 0.0-1.0,
  "reasoning": "one sentence on why these replies fit"
}"""

REQUEST_TAIL = """

Provide {count} reply suggestions that are:
- appropriate for a {chatType} conversation
- written in a {tone} tone
- {style} in style
- in {language}{relationshipContext}"""


def _template(system: str, lead: str) -> PromptTemplate:
    return PromptTemplate(
        system=system.strip() + "\n" + OUTPUT_CONTRACT,
        user=lead + "\n\n{context}" + REQUEST_TAIL,
    )


DEFAULT_TEMPLATES: Dict[str, PromptTemplate] = {
    "general": _template(
        """
You suggest replies to chat messages on behalf of the account owner.
- Vary the suggestions in tone and approach
- Keep them natural and conversational, never robotic
- Respect the owner's communication style and the relationship
""",
        'Message received: "{message}"',
    ),
    "question": _template(
        """
You suggest replies to questions received in a chat.
- Answer directly when the owner plausibly knows the answer
- Offer options with different levels of detail
- When unsure, suggest a reply that asks for time or points to where to find out
""",
        'Question received: "{message}"',
    ),
    "invitation": _template(
        """
You suggest replies to invitations and event messages.
- Cover accepting, politely declining and asking for details
- Match formality to the relationship
""",
        'Invitation received: "{message}"',
    ),
    "appreciation": _template(
        """
You suggest replies to thanks and compliments.
- Acknowledge gracefully without false modesty
- Match the energy of the original message
""",
        'Appreciation received: "{message}"',
    ),
    "concern": _template(
        """
You suggest replies to messages expressing worry, sadness or a need for support.
- Show empathy and never minimise their feelings
- Offer concrete help where the relationship allows it
- Keep the focus on them
""",
        'Message asking for support: "{message}"',
    ),
    "business": _template(
        """
You suggest replies to professional and business messages.
- Be clear, courteous and actionable
- Ask clarifying questions when details are missing
""",
        'Business message received: "{message}"',
    ),
    "social": _template(
        """
You suggest replies for casual conversation.
- Keep the conversation flowing and show interest in the other person
- Light humour is fine when it suits the relationship
""",
        'Casual message received: "{message}"',
    ),
    "group": _template(
        """
You suggest replies for a group chat.
- Contribute without dominating the conversation
- Stay inclusive of all members
""",
        'Group message received: "{message}"',
    ),
}


def detect_message_type(text: str) -> str:
    for message_type, patterns in MESSAGE_TYPE_RULES:
        if any(p.search(text) for p in patterns):
            return message_type
    return DEFAULT_MESSAGE_TYPE


class PromptTemplates:

    def __init__(self, templates: Optional[Dict[str, PromptTemplate]] = None) -> None:
        self._templates: Dict[str, PromptTemplate] = dict(templates or DEFAULT_TEMPLATES)

    detect_message_type = staticmethod(detect_message_type)

    def template_name_for(self, message_type: str, chat_type: str) -> str:
        if chat_type == "group":
            return GROUP_TEMPLATE
        name = TEMPLATE_MAP.get(message_type, FALLBACK_TEMPLATE)
        return name if name in self._templates else FALLBACK_TEMPLATE

    def get_template(self, message_type: str, context: ConversationContext) -> PromptTemplate:
        return self._templates[self.template_name_for(message_type, context.metadata.chat_type)]

    def build_prompt(
        self,
        message: str,
        message_type: str,
        context: ConversationContext,
        formatted_history: str,
        suggestion_count: int = 3,
    ) -> Tuple[str, str]:
        template = self.get_template(message_type, context)
        prefs = context.resolved_preferences
        relationship = context.contact.effective_relationship if context.contact else None

        values = {
            "message": message,
            "context": formatted_history,
            "count": str(suggestion_count),
            "chatType": context.metadata.chat_type,
            "tone": prefs.tone,
            "style": prefs.response_style,
            "language": prefs.language,
            "relationshipContext": (
                f"\n- Consider that this person is your {relationship}" if relationship else ""
            ),
        }
        return _fill(template.system, values), _fill(template.user, values)

    def add_template(self, name: str, template: PromptTemplate) -> None:
        self._templates[name] = template
        logger.info("prompt_templates:template_added", extra={"template": name})

    def available_types(self) -> List[str]:
        return sorted(self._templates)


_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def _fill(text: str, values: Dict[str, str]) -> str:
    # Unknown placeholders and the literal JSON braces stay untouched
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), text)
