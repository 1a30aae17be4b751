from __future__ import annotations

from typing import Dict, List

from ..rows import _message_row


class StoreMessagesMixin:
    async def save_message(
        self,
        conversation_id: int,
        external_message_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
        persona_name: str | None = None,
    ) -> Dict[str, object]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (
                    conversation_id, external_message_id, sender_id, sender_type, persona_name, content
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    int(conversation_id),
                    str(external_message_id),
                    str(sender_id),
                    sender_type,
                    persona_name,
                    content,
                ),
            )
            await db.commit()
            async with db.execute(
                """
                SELECT message_id, conversation_id, external_message_id, sender_id, sender_type,
                       persona_name, content, created_at
                FROM messages
                WHERE message_id = ?
                """,
                (int(cursor.lastrowid),),
            ) as select_cursor:
                row = await select_cursor.fetchone()
        return _message_row(row)

    async def has_message(self, conversation_id: int, external_message_id: str) -> bool:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT 1
                FROM messages
                WHERE conversation_id = ? AND external_message_id = ?
                LIMIT 1
                """,
                (int(conversation_id), str(external_message_id)),
            ) as cursor:
                row = await cursor.fetchone()
        return row is not None

    async def get_recent_messages(self, conversation_id: int, limit: int) -> List[Dict[str, object]]:
        if int(limit) <= 0:
            return []
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT message_id, conversation_id, external_message_id, sender_id, sender_type,
                       persona_name, content, created_at
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at DESC, message_id DESC
                LIMIT ?
                """,
                (int(conversation_id), int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()

        return [_message_row(row) for row in reversed(rows)]
