from __future__ import annotations

from typing import Any, Mapping

from ..config import Settings
from ..persona.schemas import PersonaSchema
from .store import ConversationStore


def build_conversation_store(
    settings: Settings,
    *,
    schemas: Mapping[str, PersonaSchema] | None = None,
) -> Any:
    backend = settings.storage_backend
    if backend == "sqlite":
        return ConversationStore(
            settings.sqlite_path,
            schemas=schemas,
            busy_timeout_ms=settings.storage_sqlite_busy_timeout_ms,
            reset_on_schema_mismatch=settings.storage_reset_on_schema_mismatch,
        )
    if backend != "postgres":
        raise ValueError("STORAGE_BACKEND must be 'sqlite' or 'postgres'")
    if not settings.database_url:
        raise ValueError("DATABASE_URL is required when STORAGE_BACKEND=postgres")

    from .postgres_store import PostgresConversationStore

    return PostgresConversationStore(
        settings.database_url,
        schemas=schemas,
        pool_max_size=settings.storage_pool_max_size,
        query_timeout=settings.storage_query_timeout_seconds,
    )
