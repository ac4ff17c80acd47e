from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)


class PostgresMessageStore:
    """Read side of the chat data written by the transport integration."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def _require_pool(self) -> asyncpg.Pool:
        from db.shared_pool import SharedPostgresPool
        return await SharedPostgresPool.get_pool(self._dsn)

    async def resolve_message(self, request_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, chat_id, contact_id
                FROM messages
                WHERE id = $1 AND user_id = $2
                """,
                request_id,
                user_id,
            )
        if row is None:
            return None
        return {"id": row["id"], "chat_id": row["chat_id"], "contact_id": row["contact_id"]}

    async def fetch_recent_messages(self, chat_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest first; callers reverse for chronological order."""
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, content, from_self, ts, message_type
                FROM messages
                WHERE chat_id = $1 AND is_deleted = false
                ORDER BY ts DESC
                LIMIT $2
                """,
                chat_id,
                limit,
            )
        return [
            {
                "id": r["id"],
                "content": r["content"] or "",
                "from_self": r["from_self"],
                "timestamp": r["ts"],
                "type": r["message_type"],
            }
            for r in rows
        ]

    async def fetch_recent_text(self, chat_id: str, limit: int = 5) -> List[str]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT content
                FROM messages
                WHERE chat_id = $1
                  AND is_deleted = false
                  AND message_type = 'text'
                ORDER BY ts DESC
                LIMIT $2
                """,
                chat_id,
                limit,
            )
        return [r["content"] or "" for r in rows]

    async def fetch_contact(self, contact_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT display_name, relationship, notes,
                       inferred_name, inferred_relationship, inference_confidence
                FROM contacts
                WHERE id = $1 AND user_id = $2
                """,
                contact_id,
                user_id,
            )
        return dict(row) if row else None

    async def fetch_preferences(self, user_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT tone, response_style, language, personality_traits
                FROM user_preferences
                WHERE user_id = $1
                """,
                user_id,
            )
        if row is None:
            return None
        prefs = dict(row)
        prefs["personality_traits"] = list(prefs.get("personality_traits") or [])
        return prefs

    async def fetch_chat(self, chat_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, is_group, last_message_at FROM chats WHERE id = $1",
                chat_id,
            )
        return dict(row) if row else None

    async def count_messages(self, chat_id: str) -> int:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            val = await conn.fetchval(
                "SELECT COUNT(*) FROM messages WHERE chat_id = $1 AND is_deleted = false",
                chat_id,
            )
        return int(val or 0)

    async def fetch_contact_history(
        self,
        contact_id: str,
        user_id: str,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Oldest first."""
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT content, from_self, ts
                FROM messages
                WHERE contact_id = $1
                  AND user_id = $2
                  AND is_deleted = false
                  AND message_type = 'text'
                ORDER BY ts DESC
                LIMIT $3
                """,
                contact_id,
                user_id,
                limit,
            )
        return [
            {"content": r["content"] or "", "from_self": r["from_self"], "timestamp": r["ts"]}
            for r in reversed(rows)
        ]

    async def find_contact_by_external_id(self, external_id: str, user_id: str) -> Optional[str]:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            val = await conn.fetchval(
                "SELECT id FROM contacts WHERE external_id = $1 AND user_id = $2",
                external_id,
                user_id,
            )
        return val

    async def store_contact_inference(
        self,
        *,
        contact_id: str,
        user_id: str,
        inferred_name: Optional[str],
        inferred_relationship: Optional[str],
        confidence: float,
        message_count: int,
        signals: Optional[List[str]] = None,
    ) -> None:
        pool = await self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE contacts
                    SET inferred_name = COALESCE($3, inferred_name),
                        inferred_relationship = COALESCE($4, inferred_relationship),
                        inference_confidence = $5,
                        updated_at = NOW()
                    WHERE id = $1 AND user_id = $2
                    """,
                    contact_id,
                    user_id,
                    inferred_name,
                    inferred_relationship,
                    confidence,
                )
                await conn.execute(
                    """
                    INSERT INTO contact_inferences
                        (contact_id, user_id, inferred_name, inferred_relationship,
                         confidence, message_count, signals)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    contact_id,
                    user_id,
                    inferred_name,
                    inferred_relationship,
                    confidence,
                    message_count,
                    signals or [],
                )
        logger.info(
            "message_store:contact_inference_stored",
            extra={
                "contact_id": contact_id,
                "inferred_relationship": inferred_relationship,
                "confidence": confidence,
            },
        )
