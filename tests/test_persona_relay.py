from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

discord = pytest.importorskip("discord")

from persona_relay.config import PersonaSettings  # noqa: E402
from persona_relay.discord.common import FALLBACK_REPLY, MESSAGE_CHUNK_LIMIT, AgentCallback  # noqa: E402
from persona_relay.discord.mixins.callback_mixin import CallbackMixin  # noqa: E402
from persona_relay.discord.mixins.relay_mixin import RelayMixin  # noqa: E402
from persona_relay.errors import AgentMalformedResponseError, AgentTimeoutError, StorageError  # noqa: E402
from persona_relay.services.agent_gateway import DeferredReply, ImmediateReply  # noqa: E402
from persona_relay.storage.store import ConversationStore  # noqa: E402


def _settings(name: str = "laura") -> PersonaSettings:
    return PersonaSettings(
        name=name,
        discord_token="token",
        agent_webhook_url=f"http://agent.test/webhook/{name}",
        agent_auth_header="",
        agent_timeout_seconds=30,
        max_context_messages=10,
        processing_reaction="⏳",
        test_webhook_on_ready=False,
    )


class _Typing:
    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, *exc: Any) -> bool:
        return False


class _FakeChannel:
    def __init__(self, channel_id: int = 555, kind: str = "private") -> None:
        self.id = channel_id
        self.type = SimpleNamespace(name=kind)
        self.guild = None
        self.name = None
        self.sent: list[SimpleNamespace] = []

    async def send(self, content: str, **kwargs: Any) -> SimpleNamespace:
        sent = SimpleNamespace(id=9000 + len(self.sent), content=content, kwargs=kwargs)
        self.sent.append(sent)
        return sent

    def typing(self) -> _Typing:
        return _Typing()


class _FakeMessage:
    def __init__(
        self,
        content: str,
        channel: _FakeChannel,
        *,
        message_id: int = 1001,
        bot: bool = False,
    ) -> None:
        self.id = message_id
        self.content = content
        self.channel = channel
        self.guild = None
        self.author = SimpleNamespace(id=42, name="alice", display_name="Alice", bot=bot)
        self.reactions: list[str] = []
        self.replies: list[str] = []

    async def add_reaction(self, emoji: str) -> None:
        self.reactions.append(emoji)

    async def reply(self, content: str, **kwargs: Any) -> None:
        self.replies.append(content)


class _FakeAgent:
    def __init__(self, result: Any) -> None:
        self.result = result
        self.calls: list[tuple[Any, ...]] = []

    async def send_to_agent(self, *args: Any) -> Any:
        self.calls.append(args)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _BrokenStore:
    def __getattr__(self, name: str) -> Any:
        async def _fail(*args: Any, **kwargs: Any) -> Any:
            raise StorageError("database is locked")

        return _fail


class _Subject(RelayMixin, CallbackMixin):
    def __init__(self, settings: PersonaSettings, store: Any, agent: Any, channels: dict[int, Any] | None = None) -> None:
        self.settings = settings
        self.store = store
        self.agent = agent
        self.user = SimpleNamespace(id=777)
        self._channels = channels or {}

    def get_channel(self, channel_id: int) -> Any:
        return self._channels.get(channel_id)

    async def fetch_channel(self, channel_id: int) -> Any:
        raise discord.InvalidData(f"unknown channel {channel_id}")


def _store(tmp_path: Path) -> ConversationStore:
    store = ConversationStore(tmp_path / "relay.db")
    asyncio.run(store.init())
    return store


def test_immediate_reply_is_sent_and_stored(tmp_path: Path) -> None:
    store = _store(tmp_path)
    agent = _FakeAgent(ImmediateReply("Hi there!", {"trust_level": 8, "cohort": "C3"}))
    channel = _FakeChannel()
    message = _FakeMessage("Hello", channel)
    bot = _Subject(_settings("laura"), store, agent)

    async def scenario() -> None:
        await bot.on_message(message)

        assert [sent.content for sent in channel.sent] == ["Hi there!"]
        assert channel.sent[0].kwargs["reference"] is message
        assert message.reactions == []

        channel_id, user_id, username, content, history, profile = agent.calls[0]
        assert (channel_id, user_id, username, content) == ("555", "42", "alice", "Hello")
        assert [row["content"] for row in history] == ["Hello"]
        assert profile["tension_level"] == 3
        assert profile["display_name"] == "Alice"

        conversation = await store.get_or_create_conversation("555", "dm", None, None, "laura")
        rows = await store.get_recent_messages(int(conversation["conversation_id"]), 10)
        assert [(row["sender_type"], row["content"]) for row in rows] == [("user", "Hello"), ("agent", "Hi there!")]
        assert rows[1]["persona_name"] == "laura"
        assert rows[1]["sender_id"] == "777"
        assert rows[1]["external_message_id"] == "9000"

        persona = await store.get_or_create_persona_profile("42", "laura")
        shared = await store.get_shared_profile("42")
        assert persona is not None and shared is not None
        assert persona["fields"]["trust_level"] == 8
        assert shared["cohort"] == "C3"

    asyncio.run(scenario())


def test_deferred_reply_reacts_then_callback_delivers(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = _FakeChannel()
    message = _FakeMessage("Build my landing page", channel)
    bot = _Subject(_settings("giorgi"), store, _FakeAgent(DeferredReply("processing")), channels={555: channel})

    async def scenario() -> None:
        await bot.on_message(message)
        assert message.reactions == ["⏳"]
        assert channel.sent == []

        delivered = await bot.handle_async_response(
            AgentCallback(channel_id="555", persona_name="giorgi", response="Done!", user_id="42", username="alice")
        )
        assert delivered is True
        assert [sent.content for sent in channel.sent] == ["Done!"]

        conversation = await store.get_or_create_conversation("555", "dm", None, None, "giorgi")
        rows = await store.get_recent_messages(int(conversation["conversation_id"]), 10)
        assert [row["content"] for row in rows] == ["Build my landing page", "Done!"]
        assert rows[1]["persona_name"] == "giorgi"

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "failure",
    [AgentMalformedResponseError("Invalid response format from agent"), AgentTimeoutError(30)],
)
def test_agent_failures_send_single_apology(tmp_path: Path, failure: Exception) -> None:
    store = _store(tmp_path)
    channel = _FakeChannel()
    message = _FakeMessage("Hello", channel)
    bot = _Subject(_settings(), store, _FakeAgent(failure))

    asyncio.run(bot.on_message(message))

    assert message.replies == [FALLBACK_REPLY]
    assert channel.sent == []
    assert message.reactions == []


def test_storage_outage_degrades_to_empty_context() -> None:
    agent = _FakeAgent(ImmediateReply("Still here"))
    channel = _FakeChannel()
    message = _FakeMessage("Hello", channel)
    bot = _Subject(_settings(), _BrokenStore(), agent)

    asyncio.run(bot.on_message(message))

    assert [sent.content for sent in channel.sent] == ["Still here"]
    assert agent.calls[0][4] == []
    assert agent.calls[0][5] is None
    assert message.replies == []


def test_bot_and_empty_messages_are_ignored() -> None:
    agent = _FakeAgent(ImmediateReply("never"))
    channel = _FakeChannel()
    bot = _Subject(_settings(), _BrokenStore(), agent)

    asyncio.run(bot.on_message(_FakeMessage("Hello", channel, bot=True)))
    asyncio.run(bot.on_message(_FakeMessage("   ", channel)))

    assert agent.calls == []
    assert channel.sent == []


def test_redelivered_message_is_not_processed_twice(tmp_path: Path) -> None:
    store = _store(tmp_path)
    agent = _FakeAgent(ImmediateReply("Hi"))
    channel = _FakeChannel()
    bot = _Subject(_settings(), store, agent)

    async def scenario() -> None:
        await bot.on_message(_FakeMessage("Hello", channel, message_id=1))
        await bot.on_message(_FakeMessage("Hello", channel, message_id=1))

    asyncio.run(scenario())

    assert len(agent.calls) == 1
    assert len(channel.sent) == 1


def test_long_replies_are_chunked_with_reference_on_first_chunk(tmp_path: Path) -> None:
    text = "\n".join("line %03d %s" % (i, "x" * 60) for i in range(80))
    channel = _FakeChannel()
    message = _FakeMessage("Explain", channel)
    bot = _Subject(_settings(), _store(tmp_path), _FakeAgent(ImmediateReply(text)))

    asyncio.run(bot.on_message(message))

    assert len(channel.sent) > 1
    assert all(len(sent.content) <= MESSAGE_CHUNK_LIMIT for sent in channel.sent)
    assert "".join(sent.content for sent in channel.sent) == text
    assert channel.sent[0].kwargs == {"reference": message}
    assert all(sent.kwargs == {} for sent in channel.sent[1:])


def test_callback_with_artifact_records_deployment_for_giorgi(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = _FakeChannel(kind="text")
    bot = _Subject(_settings("giorgi"), store, _FakeAgent(None), channels={555: channel})
    callback = AgentCallback(
        channel_id="555",
        persona_name="giorgi",
        response="Deployed your app.",
        user_id="42",
        profile_updates={"code_quality": 8, "tech_stack": "FastAPI"},
        artifact_url="https://app.example.dev",
        artifact_id="build-1",
    )

    async def scenario() -> None:
        assert await bot.handle_async_response(callback) is True
        assert channel.sent[0].content == "Deployed your app.\n\n🔗 https://app.example.dev"

        deployments = await store.get_recent_deployments("42", "giorgi")
        assert [(row["artifact_url"], row["artifact_id"]) for row in deployments] == [
            ("https://app.example.dev", "build-1")
        ]
        persona = await store.get_or_create_persona_profile("42", "giorgi")
        assert persona is not None
        assert persona["fields"]["tech_stack"] == "FastAPI"

    asyncio.run(scenario())


def test_callback_artifact_for_laura_is_linked_but_not_recorded(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = _FakeChannel()
    bot = _Subject(_settings("laura"), store, _FakeAgent(None), channels={555: channel})
    callback = AgentCallback(
        channel_id="555",
        persona_name="laura",
        response="Look at this",
        user_id="42",
        artifact_url="https://notes.example.dev",
    )

    async def scenario() -> None:
        assert await bot.handle_async_response(callback) is True
        assert channel.sent[0].content.endswith("🔗 https://notes.example.dev")
        assert await store.get_recent_deployments("42", "laura") == []

    asyncio.run(scenario())


def test_callback_to_unresolvable_channel_returns_false() -> None:
    bot = _Subject(_settings(), _BrokenStore(), _FakeAgent(None), channels={1: SimpleNamespace(id=1)})

    async def scenario() -> None:
        assert await bot.handle_async_response(AgentCallback("404", "laura", "lost")) is False
        assert await bot.handle_async_response(AgentCallback("not-a-number", "laura", "lost")) is False
        assert await bot.handle_async_response(AgentCallback("1", "laura", "no send")) is False

    asyncio.run(scenario())


def test_callback_delivery_survives_storage_outage() -> None:
    channel = _FakeChannel()
    bot = _Subject(_settings("giorgi"), _BrokenStore(), _FakeAgent(None), channels={555: channel})
    callback = AgentCallback("555", "giorgi", "Done!", user_id="42", artifact_url="https://app.example.dev")

    assert asyncio.run(bot.handle_async_response(callback)) is True
    assert len(channel.sent) == 1
