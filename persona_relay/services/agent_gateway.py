from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Union

import aiohttp

from ..errors import AgentMalformedResponseError, AgentNetworkError, AgentTimeoutError

logger = logging.getLogger("persona_relay")

TEST_WEBHOOK_TIMEOUT_SECONDS = 5.0
TEST_WEBHOOK_PAYLOAD: Dict[str, Any] = {
    "sessionId": "test-session",
    "channelId": "test",
    "userId": "test-user",
    "username": "Test User",
    "message": "Hello! This is a test message.",
    "conversationContext": [],
}


@dataclass(frozen=True, slots=True)
class ImmediateReply:
    text: str
    profile_updates: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DeferredReply:
    status: str = "processing"


@dataclass(frozen=True, slots=True)
class MalformedReply:
    reason: str


AgentReply = Union[ImmediateReply, DeferredReply]


def interpret_agent_response(data: Any) -> ImmediateReply | DeferredReply | MalformedReply:
    if not isinstance(data, Mapping):
        return MalformedReply("response body is not a JSON object")
    if "acknowledged" in data:
        status = data.get("status")
        return DeferredReply(status=str(status) if status else "processing")

    text = data.get("response")
    if not isinstance(text, str) or not text.strip():
        return MalformedReply("missing 'response' text")

    updates = data.get("profileUpdates")
    if updates is None:
        updates = data.get("profile_updates")
    metadata = data.get("metadata")
    return ImmediateReply(
        text=text,
        profile_updates=dict(updates) if isinstance(updates, Mapping) else {},
        metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
    )


class AgentGateway:
    """HTTP client for one persona's agent workflow webhook."""

    def __init__(
        self,
        persona_name: str,
        webhook_url: str,
        *,
        auth_header: str = "",
        timeout_seconds: float = 30,
        max_context_messages: int = 10,
    ) -> None:
        self.persona_name = persona_name
        self.webhook_url = webhook_url
        self.auth_header = auth_header.strip()
        self.timeout_seconds = float(timeout_seconds)
        self.max_context_messages = max(0, int(max_context_messages))
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "AgentGateway":
        return cls(
            settings.name,
            settings.agent_webhook_url,
            auth_header=settings.agent_auth_header,
            timeout_seconds=settings.agent_timeout_seconds,
            max_context_messages=settings.max_context_messages,
        )

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_header:
            headers["Authorization"] = self.auth_header
        return headers

    def _format_history(self, history: Sequence[Mapping[str, Any]]) -> List[Dict[str, str]]:
        if self.max_context_messages <= 0:
            return []
        formatted: List[Dict[str, str]] = []
        for row in history:
            timestamp = row.get("created_at")
            if not timestamp:
                continue
            sender = "user" if row.get("sender_type") == "user" else (row.get("persona_name") or self.persona_name)
            formatted.append(
                {
                    "sender": str(sender),
                    "content": str(row.get("content") or ""),
                    "timestamp": str(timestamp),
                }
            )
        return formatted[-self.max_context_messages :]

    def build_payload(
        self,
        channel_id: str,
        user_id: str,
        username: str,
        message: str,
        history: Sequence[Mapping[str, Any]],
        profile: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sessionId": str(channel_id),
            "channelId": str(channel_id),
            "userId": str(user_id),
            "username": username,
            "personaName": self.persona_name,
            "message": message,
            "conversationContext": self._format_history(history),
        }
        if profile:
            payload["personaProfile"] = dict(profile)
        return payload

    async def _post_json(self, payload: Dict[str, Any], timeout_seconds: float) -> Any:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        try:
            async with self._session.post(
                self.webhook_url,
                json=payload,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=timeout_seconds),
            ) as response:
                text = await response.text()
                if not 200 <= response.status < 300:
                    raise AgentNetworkError(
                        f"Agent webhook error {response.status}: {text[:200]}",
                        status=response.status,
                    )
        except asyncio.TimeoutError as exc:
            raise AgentTimeoutError(timeout_seconds) from exc
        except aiohttp.ClientError as exc:
            raise AgentNetworkError(f"Agent webhook unreachable: {exc}") from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise AgentMalformedResponseError(f"Agent returned non-JSON body: {text[:200]!r}") from exc

    async def send_to_agent(
        self,
        channel_id: str,
        user_id: str,
        username: str,
        message: str,
        history: Sequence[Mapping[str, Any]],
        profile: Mapping[str, Any] | None = None,
    ) -> AgentReply:
        payload = self.build_payload(channel_id, user_id, username, message, history, profile)
        logger.debug(
            "[agent.request] persona=%s channel=%s user=%s context=%s",
            self.persona_name,
            channel_id,
            user_id,
            len(payload["conversationContext"]),
        )
        data = await self._post_json(payload, self.timeout_seconds)
        reply = interpret_agent_response(data)
        if isinstance(reply, MalformedReply):
            raise AgentMalformedResponseError(f"Invalid response format from agent: {reply.reason}")
        logger.debug(
            "[agent.reply] persona=%s channel=%s kind=%s metadata=%s",
            self.persona_name,
            channel_id,
            "deferred" if isinstance(reply, DeferredReply) else "immediate",
            getattr(reply, "metadata", None) or "-",
        )
        return reply

    async def test_webhook(self) -> bool:
        payload = dict(TEST_WEBHOOK_PAYLOAD, personaName=self.persona_name)
        try:
            await self._post_json(payload, TEST_WEBHOOK_TIMEOUT_SECONDS)
        except (AgentTimeoutError, AgentNetworkError, AgentMalformedResponseError) as exc:
            logger.warning("[agent.test] persona=%s failed: %s", self.persona_name, exc)
            return False
        logger.info("[agent.test] persona=%s webhook reachable", self.persona_name)
        return True
