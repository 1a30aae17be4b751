from __future__ import annotations

from pathlib import Path
from typing import Mapping

import aiosqlite

from ...persona.schemas import PERSONA_SCHEMAS, PersonaSchema
from ...errors import StorageError
from .utils import SQLITE_NOW, _sqlite_connection


class StoreSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path,
        *,
        schemas: Mapping[str, PersonaSchema] | None = None,
        busy_timeout_ms: int = 5000,
        reset_on_schema_mismatch: bool = False,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.schemas: Mapping[str, PersonaSchema] = PERSONA_SCHEMAS if schemas is None else schemas
        self.busy_timeout_ms = busy_timeout_ms
        self.reset_on_schema_mismatch = reset_on_schema_mismatch

    def _connect(self):
        return _sqlite_connection(self.db_path, self.busy_timeout_ms)

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self.reset_on_schema_mismatch:
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise StorageError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set STORAGE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def close(self) -> None:
        # Connections are opened per operation.
        return None

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("deployments", "persona_profiles", "shared_profiles", "messages", "conversations"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                channel_type TEXT NOT NULL CHECK (channel_type IN ('dm', 'text', 'thread')),
                guild_id TEXT,
                channel_name TEXT,
                created_at TEXT NOT NULL DEFAULT ({SQLITE_NOW}),
                last_activity TEXT NOT NULL DEFAULT ({SQLITE_NOW}),
                UNIQUE(channel_id, persona_name)
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                external_message_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                sender_type TEXT NOT NULL CHECK (sender_type IN ('user', 'agent')),
                persona_name TEXT,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT ({SQLITE_NOW}),
                FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS shared_profiles (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL DEFAULT '',
                display_name TEXT,
                name TEXT,
                cohort TEXT,
                timezone TEXT,
                current_project TEXT,
                notes TEXT,
                deadline_mvp TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                first_seen_at TEXT NOT NULL DEFAULT ({SQLITE_NOW}),
                last_seen_at TEXT NOT NULL DEFAULT ({SQLITE_NOW})
            );

            CREATE TABLE IF NOT EXISTS persona_profiles (
                user_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                fields_json TEXT NOT NULL DEFAULT '{{}}',
                message_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT ({SQLITE_NOW}),
                updated_at TEXT NOT NULL DEFAULT ({SQLITE_NOW}),
                PRIMARY KEY (user_id, persona_name)
            );

            CREATE TABLE IF NOT EXISTS deployments (
                deployment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                artifact_url TEXT NOT NULL,
                artifact_id TEXT,
                status TEXT NOT NULL DEFAULT 'deployed',
                created_at TEXT NOT NULL DEFAULT ({SQLITE_NOW})
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages(conversation_id, created_at DESC, message_id DESC);

            CREATE INDEX IF NOT EXISTS idx_messages_external
            ON messages(conversation_id, external_message_id);

            CREATE INDEX IF NOT EXISTS idx_conversations_activity
            ON conversations(persona_name, last_activity DESC);

            CREATE INDEX IF NOT EXISTS idx_deployments_lookup
            ON deployments(user_id, persona_name, created_at DESC);
            """
        )
