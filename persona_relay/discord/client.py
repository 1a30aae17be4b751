from __future__ import annotations

import asyncio
import logging
from typing import Any

import discord

from ..config import PersonaSettings
from ..services.agent_gateway import AgentGateway
from .mixins.callback_mixin import CallbackMixin
from .mixins.relay_mixin import RelayMixin

logger = logging.getLogger("persona_relay")


async def run_shutdown_step(label: str, coro: object, *, timeout: float) -> None:
    try:
        await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
    except asyncio.TimeoutError:
        logger.warning("Shutdown step timed out: %s", label)
    except Exception as exc:
        logger.warning("Shutdown step failed: %s (%s)", label, exc)


class PersonaBot(
    RelayMixin,
    CallbackMixin,
    discord.Client,
):
    """One Discord connection speaking as one persona."""

    def __init__(
        self,
        settings: PersonaSettings,
        store: Any,
        agent: AgentGateway,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.dm_messages = True
        intents.guild_messages = True

        super().__init__(intents=intents)

        self.settings = settings
        self.store = store
        self.agent = agent

    async def setup_hook(self) -> None:
        await self.agent.start()

    async def close(self) -> None:
        name = self.settings.name
        await run_shutdown_step(f"{name}.agent.close", self.agent.close(), timeout=6.0)
        await run_shutdown_step(f"{name}.discord.Client.close", super().close(), timeout=6.0)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("[%s] Connected as %s (%s)", self.settings.name, self.user, self.user.id)
        try:
            await self.store.ping()
        except Exception as exc:
            logger.error("[%s] Storage ping failed: %s", self.settings.name, exc)
        if self.settings.test_webhook_on_ready:
            await self.agent.test_webhook()
