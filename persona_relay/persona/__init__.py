from .schemas import (
    PERSONA_SCHEMAS,
    SHARED_PROFILE_FIELDS,
    PersonaField,
    PersonaSchema,
    RoutedProfileUpdate,
    build_agent_profile,
    get_persona_schema,
    route_profile_updates,
)

__all__ = [
    "PERSONA_SCHEMAS",
    "SHARED_PROFILE_FIELDS",
    "PersonaField",
    "PersonaSchema",
    "RoutedProfileUpdate",
    "build_agent_profile",
    "get_persona_schema",
    "route_profile_updates",
]
