from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)


@dataclass
class SuggestionRecord:
    request_id: str
    user_id: str
    message_type: str
    confidence: float
    suggestion_count: int
    context_message_count: int = 0
    has_contact_info: bool = False
    cached: bool = False
    suggestions: List[str] = field(default_factory=list)
    reasoning: Optional[str] = None


class PostgresSuggestionStore:

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def _require_pool(self) -> asyncpg.Pool:
        from db.shared_pool import SharedPostgresPool
        return await SharedPostgresPool.get_pool(self._dsn)

    async def record_suggestion(self, record: SuggestionRecord) -> None:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ai_suggestions
                    (request_id, user_id, message_type, confidence, suggestion_count,
                     context_message_count, has_contact_info, cached, suggestions, reasoning)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
                ON CONFLICT (request_id, user_id) DO UPDATE SET
                    message_type = EXCLUDED.message_type,
                    confidence = EXCLUDED.confidence,
                    suggestion_count = EXCLUDED.suggestion_count,
                    context_message_count = EXCLUDED.context_message_count,
                    has_contact_info = EXCLUDED.has_contact_info,
                    cached = EXCLUDED.cached,
                    suggestions = EXCLUDED.suggestions,
                    reasoning = EXCLUDED.reasoning,
                    updated_at = NOW()
                """,
                record.request_id,
                record.user_id,
                record.message_type,
                record.confidence,
                record.suggestion_count,
                record.context_message_count,
                record.has_contact_info,
                record.cached,
                json.dumps(record.suggestions, ensure_ascii=False),
                record.reasoning,
            )

    async def update_feedback(
        self,
        *,
        request_id: str,
        user_id: str,
        selected_index: Optional[int] = None,
        feedback: Optional[str] = None,
        custom_response: Optional[str] = None,
    ) -> bool:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE ai_suggestions
                SET selected_index = COALESCE($3, selected_index),
                    feedback = COALESCE($4, feedback),
                    custom_response = COALESCE($5, custom_response),
                    updated_at = NOW()
                WHERE request_id = $1 AND user_id = $2
                """,
                request_id,
                user_id,
                selected_index,
                feedback,
                custom_response,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        updated = status.split()[-1] != "0"
        logger.info(
            "suggestion_store:feedback_updated",
            extra={"request_id": request_id, "updated": updated},
        )
        return updated

    async def fetch_records(
        self,
        *,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT message_type, confidence, selected_index, feedback, cached
                FROM ai_suggestions
                WHERE user_id = $1
                  AND created_at >= $2
                  AND created_at <= $3
                ORDER BY created_at DESC
                """,
                user_id,
                start,
                end,
            )
        return [dict(r) for r in rows]
