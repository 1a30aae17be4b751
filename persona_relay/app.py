from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import uvicorn

from .config import PersonaSettings, Settings
from .discord.client import PersonaBot, run_shutdown_step
from .errors import StorageError, TransportError
from .registry import BotRegistry
from .services.agent_gateway import AgentGateway
from .storage.factory import build_conversation_store
from .web.callbacks import build_callback_app

logger = logging.getLogger("persona_relay")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.client").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_persona(settings: PersonaSettings, store: Any) -> PersonaBot:
    agent = AgentGateway.from_settings(settings)
    return PersonaBot(settings=settings, store=store, agent=agent)


def build_personas(settings: Settings, store: Any) -> dict[str, PersonaBot]:
    return {persona.name: build_persona(persona, store) for persona in settings.personas}


def build_callback_server(settings: Settings, registry: BotRegistry) -> uvicorn.Server:
    app = build_callback_app(registry, settings.callback_secret)
    config = uvicorn.Config(
        app,
        host=settings.callback_host,
        port=settings.callback_port,
        log_level=settings.log_level.lower(),
        lifespan="off",
    )
    server = uvicorn.Server(config)
    return server


async def _connect_persona(bot: PersonaBot) -> None:
    try:
        async with bot:
            await bot.start(bot.settings.discord_token)
    except Exception as exc:
        raise TransportError(f"persona {bot.settings.name} disconnected: {exc!r}") from exc
    finally:
        if not bot.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(bot.close(), timeout=10.0)


async def _run_persona(bot: PersonaBot) -> None:
    try:
        await _connect_persona(bot)
    except TransportError as exc:
        logger.error("[persona.stopped] persona=%s error=%s", bot.settings.name, exc)


async def _run(settings: Settings) -> None:
    store = build_conversation_store(settings)
    await store.init()
    logger.info("Storage ready (backend=%s)", store.backend_name)

    bots = build_personas(settings, store)
    registry = BotRegistry(bots)
    server = build_callback_server(settings, registry)
    logger.info(
        "Starting personas=%s callback=http://%s:%s",
        ",".join(registry.names()),
        settings.callback_host,
        settings.callback_port,
    )

    server_task = asyncio.create_task(server.serve(), name="callback-server")
    persona_tasks = [asyncio.create_task(_run_persona(bot), name=f"persona-{name}") for name, bot in bots.items()]
    try:
        await asyncio.gather(*persona_tasks, return_exceptions=True)
        logger.warning("All personas stopped; shutting down callback listener")
    finally:
        server.should_exit = True
        for task in persona_tasks:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*persona_tasks, return_exceptions=True)
        await run_shutdown_step("callback_server", server_task, timeout=6.0)
        await run_shutdown_step("store.close", store.close(), timeout=6.0)


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    except StorageError as exc:
        logger.error("Storage unavailable at startup: %s", exc)
        raise SystemExit(1) from exc
