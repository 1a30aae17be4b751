from __future__ import annotations

import logging
from typing import Any, Dict, List

import discord

from ...persona.schemas import build_agent_profile
from ...services.agent_gateway import DeferredReply, ImmediateReply
from ..common import FALLBACK_REPLY, MESSAGE_CHUNK_LIMIT, ChannelContext, chunk_text, classify_channel, truncate

logger = logging.getLogger("persona_relay")


class RelayMixin:
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        content = (message.content or "").strip()
        if not content:
            return

        persona_name = self.settings.name
        channel = classify_channel(message.channel, message.guild)
        user_id = str(message.author.id)
        username = message.author.name
        display_name = getattr(message.author, "display_name", None) or username
        logger.info(
            "[msg.user] persona=%s channel=%s type=%s user=%s text=%s",
            persona_name,
            channel.channel_id,
            channel.channel_type,
            user_id,
            truncate(content, 120),
        )

        history: List[Dict[str, Any]] = []
        profile: Dict[str, Any] | None = None
        try:
            conversation = await self._conversation_for(channel)
            conversation_id = int(conversation["conversation_id"])
            if await self.store.has_message(conversation_id, str(message.id)):
                logger.info("[msg.skip] persona=%s message=%s reason=redelivery", persona_name, message.id)
                return
            await self.store.save_message(conversation_id, str(message.id), user_id, "user", content)
            shared_profile = await self.store.get_or_create_shared_profile(user_id, username, display_name)
            persona_profile = await self.store.get_or_create_persona_profile(user_id, persona_name)
            history = await self.store.get_recent_messages(conversation_id, self.settings.max_context_messages)
            profile = build_agent_profile(self.settings.schema, shared_profile, persona_profile)
        except Exception as exc:
            logger.warning("[msg.storage] persona=%s channel=%s degraded: %s", persona_name, channel.channel_id, exc)
            history = []
            profile = None

        try:
            async with message.channel.typing():
                reply = await self.agent.send_to_agent(
                    channel.channel_id,
                    user_id,
                    username,
                    content,
                    history,
                    profile,
                )

            if isinstance(reply, DeferredReply):
                await message.add_reaction(self.settings.processing_reaction)
                logger.info(
                    "[msg.deferred] persona=%s channel=%s status=%s",
                    persona_name,
                    channel.channel_id,
                    reply.status,
                )
                return

            sent = await self._send_chunks(message.channel, reply.text, reference=message)
            await self._persist_agent_reply(channel, user_id, reply, sent)
        except Exception as exc:
            logger.exception("[msg.failed] persona=%s channel=%s: %s", persona_name, channel.channel_id, exc)
            try:
                await message.reply(FALLBACK_REPLY)
            except discord.HTTPException as reply_exc:
                logger.error("[msg.failed] persona=%s could not send apology: %s", persona_name, reply_exc)

    async def _conversation_for(self, channel: ChannelContext) -> Dict[str, Any]:
        return await self.store.get_or_create_conversation(
            channel.channel_id,
            channel.channel_type,
            channel.guild_id,
            channel.channel_name,
            self.settings.name,
        )

    async def _persist_agent_reply(
        self,
        channel: ChannelContext,
        user_id: str,
        reply: ImmediateReply,
        sent: List[Any],
    ) -> None:
        try:
            await self._save_agent_message(channel, reply.text, sent)
            if reply.profile_updates:
                await self.store.update_profile(user_id, reply.profile_updates, self.settings.name)
        except Exception as exc:
            logger.warning(
                "[msg.persist] persona=%s channel=%s agent reply not stored: %s",
                self.settings.name,
                channel.channel_id,
                exc,
            )

    async def _save_agent_message(self, channel: ChannelContext, text: str, sent: List[Any]) -> None:
        conversation = await self._conversation_for(channel)
        external_id = str(sent[0].id) if sent else ""
        sender_id = str(self.user.id) if self.user is not None else self.settings.name
        await self.store.save_message(
            int(conversation["conversation_id"]),
            external_id,
            sender_id,
            "agent",
            text,
            persona_name=self.settings.name,
        )

    async def _send_chunks(
        self,
        channel: discord.abc.Messageable,
        text: str,
        reference: discord.Message | None = None,
    ) -> List[Any]:
        sent: List[Any] = []
        for index, chunk in enumerate(chunk_text(text, MESSAGE_CHUNK_LIMIT)):
            kwargs: dict[str, Any] = {}
            if index == 0 and reference is not None:
                kwargs["reference"] = reference
            sent.append(await channel.send(chunk, **kwargs))
        return sent
