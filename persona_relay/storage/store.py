from __future__ import annotations

from .routing import ProfileRoutingMixin
from .sqlite.conversations import StoreConversationsMixin
from .sqlite.deployments import StoreDeploymentsMixin
from .sqlite.messages import StoreMessagesMixin
from .sqlite.profiles import StoreProfilesMixin
from .sqlite.schema import StoreSchemaMixin


class ConversationStore(
    StoreSchemaMixin,
    ProfileRoutingMixin,
    StoreConversationsMixin,
    StoreMessagesMixin,
    StoreProfilesMixin,
    StoreDeploymentsMixin,
):
    """SQLite conversation store: per-persona conversations, message history, profiles and deployments."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with self._connect() as db:
            await db.execute("SELECT 1")
