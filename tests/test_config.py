from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_relay.config import Settings  # noqa: E402
from persona_relay.storage.factory import build_conversation_store  # noqa: E402
from persona_relay.storage.store import ConversationStore  # noqa: E402


def _env(**overrides: str) -> dict[str, str]:
    env = {
        "PERSONAS": "laura, Giorgi",
        "LAURA_DISCORD_TOKEN": "Bot laura-token",
        "LAURA_AGENT_WEBHOOK_URL": "http://agent.test/webhook/laura",
        "GIORGI_DISCORD_TOKEN": '"giorgi-token"',
        "GIORGI_AGENT_WEBHOOK_URL": "https://agent.test/webhook/giorgi",
        "CALLBACK_SECRET": "s3cret",
    }
    env.update(overrides)
    return env


def test_settings_build_one_entry_per_persona() -> None:
    settings = Settings.from_env(_env())
    laura, giorgi = settings.personas

    assert settings.persona_names == ["laura", "giorgi"]
    assert laura.discord_token == "laura-token"
    assert giorgi.discord_token == "giorgi-token"
    assert laura.agent_timeout_seconds == 30
    assert giorgi.agent_timeout_seconds == 300
    assert laura.processing_reaction == "⏳"
    assert giorgi.schema is not None and giorgi.schema.records_artifacts is True
    settings.validate()


def test_persona_overrides_and_global_defaults() -> None:
    settings = Settings.from_env(
        _env(
            LAURA_AGENT_TIMEOUT_SECONDS="45",
            LAURA_AGENT_AUTH_HEADER="Bearer agent",
            MAX_CONTEXT_MESSAGES="4",
            GIORGI_MAX_CONTEXT_MESSAGES="20",
            GIORGI_PROCESSING_REACTION="🛠️",
        )
    )
    laura, giorgi = settings.personas

    assert laura.agent_timeout_seconds == 45
    assert laura.agent_auth_header == "Bearer agent"
    assert laura.max_context_messages == 4
    assert giorgi.max_context_messages == 20
    assert giorgi.processing_reaction == "🛠️"


def test_callback_and_storage_keys_accept_aliases() -> None:
    env = _env(PORT="8080", WEBHOOK_SECRET="legacy", STORAGE_BACKEND="SQLite")
    env.pop("CALLBACK_SECRET")
    settings = Settings.from_env(env)

    assert settings.callback_port == 8080
    assert settings.callback_secret == "legacy"
    assert settings.storage_backend == "sqlite"
    assert settings.callback_host == "0.0.0.0"


def test_bom_prefixed_keys_are_tolerated() -> None:
    env = _env()
    env["\ufeffCALLBACK_SECRET"] = env.pop("CALLBACK_SECRET")
    assert Settings.from_env(env).callback_secret == "s3cret"


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"CALLBACK_SECRET": ""}, "CALLBACK_SECRET"),
        ({"LAURA_DISCORD_TOKEN": ""}, "LAURA_DISCORD_TOKEN"),
        ({"LAURA_DISCORD_TOKEN": "put_your_discord_bot_token_here"}, "placeholder"),
        ({"GIORGI_AGENT_WEBHOOK_URL": "ftp://agent.test"}, "GIORGI_AGENT_WEBHOOK_URL"),
        ({"LAURA_AGENT_TIMEOUT_SECONDS": "0"}, "LAURA_AGENT_TIMEOUT_SECONDS"),
        ({"STORAGE_BACKEND": "mongo"}, "STORAGE_BACKEND"),
        ({"STORAGE_BACKEND": "postgres"}, "DATABASE_URL"),
        ({"PERSONAS": "laura,laura"}, "duplicate"),
        ({"CALLBACK_PORT": "70000"}, "CALLBACK_PORT"),
    ],
)
def test_validate_rejects_bad_configuration(overrides: dict[str, str], message: str) -> None:
    settings = Settings.from_env(_env(**overrides))
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_factory_builds_sqlite_store(tmp_path: Path) -> None:
    settings = Settings.from_env(_env(SQLITE_PATH=str(tmp_path / "relay.db")))
    store = build_conversation_store(settings)

    assert isinstance(store, ConversationStore)
    assert store.backend_name == "sqlite"
    assert store.db_path == tmp_path / "relay.db"


def test_factory_builds_postgres_store_without_connecting() -> None:
    pytest.importorskip("asyncpg")
    settings = Settings.from_env(
        _env(
            STORAGE_BACKEND="postgres",
            DATABASE_URL="postgresql://relay@localhost/relay",
            STORAGE_POOL_MAX_SIZE="20",
        )
    )
    store = build_conversation_store(settings)

    assert store.backend_name == "postgres"
    assert store.pool_max_size == 20
    assert store.query_timeout == 20.0
