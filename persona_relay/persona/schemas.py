from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from ..discord.common import as_float, as_int

logger = logging.getLogger("persona_relay")


SHARED_PROFILE_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "cohort",
        "timezone",
        "current_project",
        "notes",
        "deadline_mvp",
    }
)


@dataclass(frozen=True, slots=True)
class PersonaField:
    kind: str
    default: Any
    min_value: float | None = None
    max_value: float | None = None

    def coerce(self, value: object) -> Any:
        if self.kind == "int":
            coerced: Any = as_int(value, int(self.default))
        elif self.kind == "float":
            coerced = as_float(value, float(self.default))
        else:
            return str(value).strip()
        if self.min_value is not None:
            coerced = max(type(coerced)(self.min_value), coerced)
        if self.max_value is not None:
            coerced = min(type(coerced)(self.max_value), coerced)
        return coerced


@dataclass(frozen=True, slots=True)
class PersonaSchema:
    """Declares which profile keys a persona owns and which it shares with the others."""

    name: str
    persona_fields: Mapping[str, PersonaField]
    shared_fields: frozenset[str] = SHARED_PROFILE_FIELDS
    records_artifacts: bool = False
    default_timeout_seconds: int = 30

    def defaults(self) -> dict[str, Any]:
        return {key: field_spec.default for key, field_spec in self.persona_fields.items()}


@dataclass(slots=True)
class RoutedProfileUpdate:
    shared: dict[str, Any] = field(default_factory=dict)
    persona: dict[str, Any] = field(default_factory=dict)
    ignored: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.shared and not self.persona


def route_profile_updates(schema: PersonaSchema, updates: Mapping[str, object] | None) -> RoutedProfileUpdate:
    routed = RoutedProfileUpdate()
    if not updates:
        return routed
    for key, value in updates.items():
        if value is None:
            continue
        field_spec = schema.persona_fields.get(key)
        if field_spec is not None:
            routed.persona[key] = field_spec.coerce(value)
        elif key in schema.shared_fields:
            routed.shared[key] = str(value).strip()
        else:
            routed.ignored.append(str(key))
    if routed.ignored:
        logger.debug("Ignoring unknown profile keys for persona=%s: %s", schema.name, ", ".join(routed.ignored))
    return routed


def build_agent_profile(
    schema: PersonaSchema | None,
    shared_profile: Mapping[str, object] | None,
    persona_profile: Mapping[str, object] | None,
) -> dict[str, Any] | None:
    if schema is None or (shared_profile is None and persona_profile is None):
        return None
    profile: dict[str, Any] = {}
    if shared_profile is not None:
        for key in ("username", "display_name", "message_count"):
            if shared_profile.get(key) is not None:
                profile[key] = shared_profile[key]
        for key in sorted(schema.shared_fields):
            value = shared_profile.get(key)
            if value is not None:
                profile[key] = value
    if persona_profile is not None:
        fields = persona_profile.get("fields")
        if isinstance(fields, Mapping):
            profile.update(fields)
        profile["persona_message_count"] = persona_profile.get("message_count", 0)
    return profile


LAURA = PersonaSchema(
    name="laura",
    persona_fields=MappingProxyType(
        {
            "tension_level": PersonaField("int", 3, min_value=0, max_value=10),
            "trust_level": PersonaField("int", 5, min_value=0, max_value=10),
        }
    ),
    default_timeout_seconds=30,
)

GIORGI = PersonaSchema(
    name="giorgi",
    persona_fields=MappingProxyType(
        {
            "code_quality": PersonaField("int", 5, min_value=0, max_value=10),
            "tech_stack": PersonaField("str", ""),
            "review_notes": PersonaField("str", ""),
        }
    ),
    records_artifacts=True,
    default_timeout_seconds=300,
)

PERSONA_SCHEMAS: Mapping[str, PersonaSchema] = MappingProxyType(
    {schema.name: schema for schema in (LAURA, GIORGI)}
)


def get_persona_schema(
    persona_name: str,
    schemas: Mapping[str, PersonaSchema] | None = None,
) -> PersonaSchema | None:
    registry = PERSONA_SCHEMAS if schemas is None else schemas
    return registry.get((persona_name or "").strip().lower())
