from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Mapping, Optional

import asyncpg

from ..errors import StorageError
from ..persona.schemas import PERSONA_SCHEMAS, PersonaSchema
from .routing import ProfileRoutingMixin
from .rows import (
    _conversation_row,
    _deployment_row,
    _dump_fields,
    _load_fields,
    _message_row,
    _persona_profile_row,
    _shared_profile_row,
)

logger = logging.getLogger("persona_relay")

_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgresConversationStore(ProfileRoutingMixin):
    """Postgres-backed conversation store implementing the same API as ConversationStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        schemas: Mapping[str, PersonaSchema] | None = None,
        pool_max_size: int = 10,
        query_timeout: float = 20.0,
    ) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("DATABASE_URL cannot be empty")
        self.schemas: Mapping[str, PersonaSchema] = PERSONA_SCHEMAS if schemas is None else schemas
        self.pool_max_size = max(1, int(pool_max_size))
        self.query_timeout = float(query_timeout)
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=self.pool_max_size,
                command_timeout=self.query_timeout,
            )
        return self._pool

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator["asyncpg.Connection"]:
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                yield conn
        except _STORAGE_ERRORS as exc:
            raise StorageError(f"Postgres storage failed: {exc}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        async with self._acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self._acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise StorageError(
                            f"Postgres relay schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the relay before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS relay_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM relay_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO relay_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id BIGSERIAL PRIMARY KEY,
                channel_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                channel_type TEXT NOT NULL CHECK (channel_type IN ('dm', 'text', 'thread')),
                guild_id TEXT,
                channel_name TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                last_activity TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                UNIQUE(channel_id, persona_name)
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id BIGSERIAL PRIMARY KEY,
                conversation_id BIGINT NOT NULL REFERENCES conversations(conversation_id) ON DELETE CASCADE,
                external_message_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                sender_type TEXT NOT NULL CHECK (sender_type IN ('user', 'agent')),
                persona_name TEXT,
                content TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
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
                first_seen_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                last_seen_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
            );

            CREATE TABLE IF NOT EXISTS persona_profiles (
                user_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                fields_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                message_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                PRIMARY KEY (user_id, persona_name)
            );

            CREATE TABLE IF NOT EXISTS deployments (
                deployment_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                artifact_url TEXT NOT NULL,
                artifact_id TEXT,
                status TEXT NOT NULL DEFAULT 'deployed',
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
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

    async def get_or_create_conversation(
        self,
        channel_id: str,
        channel_type: str,
        guild_id: str | None,
        channel_name: str | None,
        persona_name: str,
    ) -> Dict[str, object]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO conversations (channel_id, persona_name, channel_type, guild_id, channel_name)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT(channel_id, persona_name) DO UPDATE SET
                    last_activity = clock_timestamp()
                RETURNING conversation_id, channel_id, persona_name, channel_type, guild_id, channel_name,
                          created_at, last_activity
                """,
                str(channel_id),
                persona_name,
                channel_type,
                guild_id,
                channel_name,
            )
        return _conversation_row(row)

    async def save_message(
        self,
        conversation_id: int,
        external_message_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
        persona_name: str | None = None,
    ) -> Dict[str, object]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messages (
                    conversation_id, external_message_id, sender_id, sender_type, persona_name, content
                )
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING message_id, conversation_id, external_message_id, sender_id, sender_type,
                          persona_name, content, created_at
                """,
                int(conversation_id),
                str(external_message_id),
                str(sender_id),
                sender_type,
                persona_name,
                content,
            )
        return _message_row(row)

    async def has_message(self, conversation_id: int, external_message_id: str) -> bool:
        async with self._acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT 1
                FROM messages
                WHERE conversation_id = $1 AND external_message_id = $2
                LIMIT 1
                """,
                int(conversation_id),
                str(external_message_id),
            )
        return value is not None

    async def get_recent_messages(self, conversation_id: int, limit: int) -> List[Dict[str, object]]:
        if int(limit) <= 0:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT message_id, conversation_id, external_message_id, sender_id, sender_type,
                       persona_name, content, created_at
                FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at DESC, message_id DESC
                LIMIT $2
                """,
                int(conversation_id),
                int(limit),
            )
        return [_message_row(row) for row in reversed(rows)]

    async def get_or_create_shared_profile(
        self,
        user_id: str,
        username: str,
        display_name: str | None,
    ) -> Dict[str, object]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO shared_profiles (user_id, username, display_name, message_count)
                VALUES ($1, $2, $3, 1)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = EXCLUDED.username,
                    display_name = EXCLUDED.display_name,
                    message_count = shared_profiles.message_count + 1,
                    last_seen_at = clock_timestamp()
                RETURNING *
                """,
                str(user_id),
                username,
                display_name,
            )
        return _shared_profile_row(row)

    async def get_shared_profile(self, user_id: str) -> Optional[Dict[str, object]]:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM shared_profiles WHERE user_id = $1", str(user_id))
        if row is None:
            return None
        return _shared_profile_row(row)

    async def get_or_create_persona_profile(self, user_id: str, persona_name: str) -> Optional[Dict[str, object]]:
        defaults = self._persona_defaults(persona_name)
        if defaults is None:
            logger.debug("No profile schema for persona=%s; persona profile skipped", persona_name)
            return None
        async with self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO persona_profiles (user_id, persona_name, fields_json)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT(user_id, persona_name) DO NOTHING
                """,
                str(user_id),
                persona_name,
                _dump_fields(defaults),
            )
            row = await conn.fetchrow(
                "SELECT * FROM persona_profiles WHERE user_id = $1 AND persona_name = $2",
                str(user_id),
                persona_name,
            )
        return _persona_profile_row(row, defaults)

    async def update_profile(
        self,
        user_id: str,
        updates: Mapping[str, object] | None,
        persona_name: str,
    ) -> None:
        plan = self._plan_profile_update(user_id, updates, persona_name)
        if plan is None:
            return
        schema, routed = plan
        async with self._acquire() as conn:
            async with conn.transaction():
                if routed.shared:
                    columns = sorted(routed.shared)
                    placeholders = ", ".join(f"${index}" for index in range(2, len(columns) + 2))
                    assignments = ", ".join(f"{column} = EXCLUDED.{column}" for column in columns)
                    await conn.execute(
                        f"""
                        INSERT INTO shared_profiles (user_id, {", ".join(columns)})
                        VALUES ($1, {placeholders})
                        ON CONFLICT(user_id) DO UPDATE SET
                            {assignments},
                            last_seen_at = clock_timestamp()
                        """,
                        str(user_id),
                        *(routed.shared[column] for column in columns),
                    )
                if routed.persona:
                    stored = await conn.fetchval(
                        """
                        SELECT fields_json
                        FROM persona_profiles
                        WHERE user_id = $1 AND persona_name = $2
                        FOR UPDATE
                        """,
                        str(user_id),
                        persona_name,
                    )
                    fields = schema.defaults()
                    fields.update(_load_fields(stored))
                    fields.update(routed.persona)
                    await conn.execute(
                        """
                        INSERT INTO persona_profiles (user_id, persona_name, fields_json, message_count)
                        VALUES ($1, $2, $3::jsonb, 1)
                        ON CONFLICT(user_id, persona_name) DO UPDATE SET
                            fields_json = EXCLUDED.fields_json,
                            message_count = persona_profiles.message_count + 1,
                            updated_at = clock_timestamp()
                        """,
                        str(user_id),
                        persona_name,
                        _dump_fields(fields),
                    )
        logger.info(
            "[profile.update] persona=%s user=%s shared=%s persona_fields=%s",
            persona_name,
            user_id,
            ",".join(sorted(routed.shared)) or "-",
            ",".join(sorted(routed.persona)) or "-",
        )

    async def save_deployment(
        self,
        user_id: str,
        persona_name: str,
        channel_id: str,
        artifact_url: str,
        artifact_id: str | None = None,
        status: str = "deployed",
    ) -> Dict[str, object]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO deployments (user_id, persona_name, channel_id, artifact_url, artifact_id, status)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                str(user_id),
                persona_name,
                str(channel_id),
                artifact_url,
                artifact_id,
                status,
            )
        return _deployment_row(row)

    async def get_recent_deployments(self, user_id: str, persona_name: str, limit: int = 5) -> List[Dict[str, object]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM deployments
                WHERE user_id = $1 AND persona_name = $2
                ORDER BY created_at DESC, deployment_id DESC
                LIMIT $3
                """,
                str(user_id),
                persona_name,
                max(1, int(limit)),
            )
        return [_deployment_row(row) for row in rows]
