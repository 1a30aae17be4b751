from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import Any

FALLBACK_REPLY = "Sorry, I'm having trouble processing your message right now. Please try again later! 😔"

MESSAGE_CHUNK_LIMIT = 1900

_DM_CHANNEL_TYPES = {"private", "group"}
_THREAD_CHANNEL_TYPES = {"public_thread", "private_thread", "news_thread"}


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return (text[: limit - 3].rstrip() + "...").strip()


def chunk_text(text: str, limit: int = MESSAGE_CHUNK_LIMIT) -> list[str]:
    if len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            parts.append(current)
            current = ""
        if len(line) <= limit:
            current = line
        else:
            for i in range(0, len(line), limit):
                parts.append(line[i : i + limit])
    if current:
        parts.append(current)
    return parts


def as_float(value: object, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        with contextlib.suppress(ValueError):
            return float(value.strip())
    return default


def as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        with contextlib.suppress(ValueError):
            return int(float(value.strip()))
    return default


def with_artifact_link(text: str, artifact_url: str | None) -> str:
    url = (artifact_url or "").strip()
    if not url:
        return text
    return f"{text.rstrip()}\n\n🔗 {url}"


@dataclass(frozen=True, slots=True)
class ChannelContext:
    channel_id: str
    channel_type: str
    guild_id: str | None = None
    channel_name: str | None = None


def _channel_type_name(channel: Any) -> str:
    raw = getattr(channel, "type", None)
    name = getattr(raw, "name", None)
    if name is None:
        name = str(raw or "")
    return name.lower()


def classify_channel(channel: Any, guild: Any = None) -> ChannelContext:
    channel_id = str(channel.id)
    kind = _channel_type_name(channel)
    if kind in _DM_CHANNEL_TYPES:
        return ChannelContext(channel_id=channel_id, channel_type="dm")

    guild_id = str(guild.id) if guild is not None else None
    if guild_id is None:
        guild_ref = getattr(channel, "guild", None)
        if guild_ref is not None:
            guild_id = str(guild_ref.id)
    name = getattr(channel, "name", None) or None
    channel_type = "thread" if kind in _THREAD_CHANNEL_TYPES else "text"
    return ChannelContext(
        channel_id=channel_id,
        channel_type=channel_type,
        guild_id=guild_id,
        channel_name=str(name) if name else None,
    )


@dataclass(slots=True)
class AgentCallback:
    """Deferred answer posted back by the agent workflow."""

    channel_id: str
    persona_name: str
    response: str
    user_id: str = ""
    username: str = ""
    profile_updates: dict[str, Any] = field(default_factory=dict)
    artifact_url: str | None = None
    artifact_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AgentCallback":
        updates = payload.get("profileUpdates")
        if updates is None:
            updates = payload.get("profile_updates")
        artifact_id = payload.get("artifactId")
        return cls(
            channel_id=str(payload.get("channelId") or "").strip(),
            persona_name=str(payload.get("personaName") or "").strip().lower(),
            response=str(payload.get("response") or ""),
            user_id=str(payload.get("userId") or "").strip(),
            username=str(payload.get("username") or "").strip(),
            profile_updates=dict(updates) if isinstance(updates, dict) else {},
            artifact_url=str(payload.get("artifactUrl") or "").strip() or None,
            artifact_id=str(artifact_id).strip() if artifact_id not in (None, "") else None,
        )
