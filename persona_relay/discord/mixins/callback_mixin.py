from __future__ import annotations

import logging
from typing import Any

import discord

from ..common import AgentCallback, classify_channel, truncate, with_artifact_link

logger = logging.getLogger("persona_relay")


class CallbackMixin:
    async def _resolve_channel(self, channel_id: str) -> Any:
        try:
            snowflake = int(channel_id)
        except (TypeError, ValueError):
            return None
        channel = self.get_channel(snowflake)
        if channel is not None:
            return channel
        try:
            return await self.fetch_channel(snowflake)
        except (discord.HTTPException, discord.InvalidData) as exc:
            logger.warning("[callback.channel] persona=%s channel=%s fetch failed: %s", self.settings.name, channel_id, exc)
            return None

    async def handle_async_response(self, callback: AgentCallback) -> bool:
        persona_name = self.settings.name
        channel = await self._resolve_channel(callback.channel_id)
        if channel is None or not callable(getattr(channel, "send", None)):
            logger.error(
                "[callback.drop] persona=%s channel=%s reason=channel_unavailable",
                persona_name,
                callback.channel_id,
            )
            return False

        text = with_artifact_link(callback.response, callback.artifact_url)
        sent = await self._send_chunks(channel, text)
        logger.info(
            "[callback.delivered] persona=%s channel=%s user=%s text=%s",
            persona_name,
            callback.channel_id,
            callback.user_id or "-",
            truncate(text, 120),
        )

        context = classify_channel(channel)
        try:
            await self._save_agent_message(context, text, sent)
            if callback.user_id and callback.profile_updates:
                await self.store.update_profile(callback.user_id, callback.profile_updates, persona_name)
            schema = self.settings.schema
            if schema is not None and schema.records_artifacts and callback.artifact_url:
                await self.store.save_deployment(
                    callback.user_id,
                    persona_name,
                    callback.channel_id,
                    callback.artifact_url,
                    callback.artifact_id,
                )
        except Exception as exc:
            logger.warning(
                "[callback.persist] persona=%s channel=%s delivered but not stored: %s",
                persona_name,
                callback.channel_id,
                exc,
            )
        return True
