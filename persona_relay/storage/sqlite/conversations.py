from __future__ import annotations

from typing import Dict

from ..rows import _conversation_row
from .utils import SQLITE_NOW


class StoreConversationsMixin:
    async def get_or_create_conversation(
        self,
        channel_id: str,
        channel_type: str,
        guild_id: str | None,
        channel_name: str | None,
        persona_name: str,
    ) -> Dict[str, object]:
        async with self._connect() as db:
            await db.execute(
                f"""
                INSERT INTO conversations (channel_id, persona_name, channel_type, guild_id, channel_name)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(channel_id, persona_name) DO UPDATE SET
                    last_activity = {SQLITE_NOW}
                """,
                (str(channel_id), persona_name, channel_type, guild_id, channel_name),
            )
            await db.commit()
            async with db.execute(
                """
                SELECT conversation_id, channel_id, persona_name, channel_type, guild_id, channel_name,
                       created_at, last_activity
                FROM conversations
                WHERE channel_id = ? AND persona_name = ?
                """,
                (str(channel_id), persona_name),
            ) as cursor:
                row = await cursor.fetchone()
        return _conversation_row(row)
