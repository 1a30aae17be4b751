from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

from .persona.schemas import PersonaSchema, get_persona_schema


def _env_lookup(name: str, aliases: tuple[str, ...] = (), env: Mapping[str, str] | None = None) -> str | None:
    source = os.environ if env is None else env
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = source.get(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = (), env: Mapping[str, str] | None = None) -> bool:
    raw = _env_lookup(name, aliases, env)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = (), env: Mapping[str, str] | None = None) -> int:
    raw = _env_lookup(name, aliases, env)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = (), env: Mapping[str, str] | None = None) -> float:
    raw = _env_lookup(name, aliases, env)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = (), env: Mapping[str, str] | None = None) -> str:
    raw = _env_lookup(name, aliases, env)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _persona_names(raw: str) -> tuple[str, ...]:
    names: list[str] = []
    for chunk in raw.split(","):
        name = chunk.strip().lower()
        if name:
            names.append(name)
    return tuple(names)


def _env_prefix(persona_name: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in persona_name).upper()


@dataclass(frozen=True, slots=True)
class PersonaSettings:
    name: str
    discord_token: str
    agent_webhook_url: str
    agent_auth_header: str
    agent_timeout_seconds: int
    max_context_messages: int
    processing_reaction: str
    test_webhook_on_ready: bool

    @property
    def schema(self) -> PersonaSchema | None:
        return get_persona_schema(self.name)

    @classmethod
    def from_env(
        cls,
        name: str,
        *,
        default_max_context_messages: int,
        test_webhook_on_ready: bool,
        env: Mapping[str, str] | None = None,
    ) -> "PersonaSettings":
        prefix = _env_prefix(name)
        schema = get_persona_schema(name)
        default_timeout = schema.default_timeout_seconds if schema is not None else 30
        return cls(
            name=name,
            discord_token=_clean_token(_env_lookup(f"{prefix}_DISCORD_TOKEN", env=env) or ""),
            agent_webhook_url=_env_str(f"{prefix}_AGENT_WEBHOOK_URL", "", env=env),
            agent_auth_header=_env_str(f"{prefix}_AGENT_AUTH_HEADER", "", env=env),
            agent_timeout_seconds=_env_int(f"{prefix}_AGENT_TIMEOUT_SECONDS", default_timeout, env=env),
            max_context_messages=_env_int(
                f"{prefix}_MAX_CONTEXT_MESSAGES",
                default_max_context_messages,
                env=env,
            ),
            processing_reaction=_env_str(f"{prefix}_PROCESSING_REACTION", "⏳", env=env),
            test_webhook_on_ready=test_webhook_on_ready,
        )

    def validate(self) -> None:
        prefix = _env_prefix(self.name)
        if not self.discord_token:
            raise ValueError(f"{prefix}_DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError(f"{prefix}_DISCORD_TOKEN is still placeholder")
        if not self.agent_webhook_url:
            raise ValueError(f"{prefix}_AGENT_WEBHOOK_URL is required")
        if not self.agent_webhook_url.startswith(("http://", "https://")):
            raise ValueError(f"{prefix}_AGENT_WEBHOOK_URL must be an http(s) URL")
        if self.agent_timeout_seconds < 1:
            raise ValueError(f"{prefix}_AGENT_TIMEOUT_SECONDS must be >= 1")
        if self.max_context_messages < 0:
            raise ValueError(f"{prefix}_MAX_CONTEXT_MESSAGES must be >= 0")
        if not self.processing_reaction:
            raise ValueError(f"{prefix}_PROCESSING_REACTION cannot be empty")


@dataclass(frozen=True, slots=True)
class Settings:
    personas: tuple[PersonaSettings, ...]

    storage_backend: str
    sqlite_path: Path
    database_url: str
    storage_pool_max_size: int
    storage_query_timeout_seconds: float
    storage_sqlite_busy_timeout_ms: int
    storage_reset_on_schema_mismatch: bool

    callback_host: str
    callback_port: int
    callback_secret: str

    log_level: str

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        if env is None:
            load_dotenv()
        max_context = _env_int("MAX_CONTEXT_MESSAGES", 10, env=env)
        test_webhook = _env_bool("AGENT_TEST_WEBHOOK_ON_READY", True, env=env)
        personas = tuple(
            PersonaSettings.from_env(
                name,
                default_max_context_messages=max_context,
                test_webhook_on_ready=test_webhook,
                env=env,
            )
            for name in _persona_names(_env_str("PERSONAS", "laura", env=env))
        )
        return cls(
            personas=personas,
            storage_backend=_env_str("STORAGE_BACKEND", "sqlite", env=env).lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/persona_relay.db", env=env)).expanduser(),
            database_url=_env_str("DATABASE_URL", "", env=env),
            storage_pool_max_size=_env_int("STORAGE_POOL_MAX_SIZE", 10, env=env),
            storage_query_timeout_seconds=_env_float("STORAGE_QUERY_TIMEOUT_SECONDS", 20.0, env=env),
            storage_sqlite_busy_timeout_ms=_env_int("STORAGE_SQLITE_BUSY_TIMEOUT_MS", 5000, env=env),
            storage_reset_on_schema_mismatch=_env_bool("STORAGE_RESET_ON_SCHEMA_MISMATCH", False, env=env),
            callback_host=_env_str("CALLBACK_HOST", "0.0.0.0", env=env),
            callback_port=_env_int("CALLBACK_PORT", 3000, aliases=("PORT",), env=env),
            callback_secret=_env_str("CALLBACK_SECRET", "", aliases=("WEBHOOK_SECRET",), env=env),
            log_level=_env_str("LOG_LEVEL", "INFO", env=env).upper(),
        )

    @property
    def persona_names(self) -> list[str]:
        return [persona.name for persona in self.personas]

    def validate(self) -> None:
        if not self.personas:
            raise ValueError("PERSONAS must name at least one persona")
        names = self.persona_names
        if len(set(names)) != len(names):
            raise ValueError("PERSONAS contains duplicate names")
        for persona in self.personas:
            persona.validate()

        if self.storage_backend not in {"sqlite", "postgres"}:
            raise ValueError("STORAGE_BACKEND must be 'sqlite' or 'postgres'")
        if self.storage_backend == "postgres" and not self.database_url:
            raise ValueError("DATABASE_URL is required when STORAGE_BACKEND=postgres")
        if self.storage_pool_max_size < 1:
            raise ValueError("STORAGE_POOL_MAX_SIZE must be >= 1")
        if self.storage_query_timeout_seconds <= 0:
            raise ValueError("STORAGE_QUERY_TIMEOUT_SECONDS must be > 0")

        if not self.callback_secret:
            raise ValueError("CALLBACK_SECRET is required")
        if self.callback_port < 1 or self.callback_port > 65535:
            raise ValueError("CALLBACK_PORT must be in [1, 65535]")
