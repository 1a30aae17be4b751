from __future__ import annotations

import logging
from typing import Any, Mapping

from ..persona.schemas import (
    SHARED_PROFILE_FIELDS,
    PersonaSchema,
    RoutedProfileUpdate,
    get_persona_schema,
    route_profile_updates,
)

logger = logging.getLogger("persona_relay")


class ProfileRoutingMixin:
    """Backend-independent half of profile updates: schema lookup and field partitioning."""

    schemas: Mapping[str, PersonaSchema]

    def _schema_for(self, persona_name: str) -> PersonaSchema | None:
        return get_persona_schema(persona_name, self.schemas)

    def _persona_defaults(self, persona_name: str) -> dict[str, Any] | None:
        schema = self._schema_for(persona_name)
        if schema is None:
            return None
        return schema.defaults()

    def _plan_profile_update(
        self,
        user_id: str,
        updates: Mapping[str, object] | None,
        persona_name: str,
    ) -> tuple[PersonaSchema, RoutedProfileUpdate] | None:
        schema = self._schema_for(persona_name)
        if schema is None:
            logger.warning(
                "[profile.skip] persona=%s user=%s reason=unknown_persona keys=%s",
                persona_name,
                user_id,
                ",".join(sorted(str(key) for key in (updates or {}))),
            )
            return None
        routed = route_profile_updates(schema, updates)
        # Only columns that exist on shared_profiles may reach the SQL text.
        for key in [key for key in routed.shared if key not in SHARED_PROFILE_FIELDS]:
            routed.ignored.append(key)
            routed.shared.pop(key)
        if routed.empty:
            return None
        return schema, routed
