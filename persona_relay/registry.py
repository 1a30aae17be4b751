from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterator, Mapping


class BotRegistry:
    """Read-only persona name -> running bot lookup, frozen once the supervisor built every persona."""

    def __init__(self, bots: Mapping[str, Any]) -> None:
        self._bots: Mapping[str, Any] = MappingProxyType({name.strip().lower(): bot for name, bot in bots.items()})

    def get(self, persona_name: str) -> Any | None:
        return self._bots.get((persona_name or "").strip().lower())

    def names(self) -> list[str]:
        return sorted(self._bots)

    def __contains__(self, persona_name: object) -> bool:
        return isinstance(persona_name, str) and self.get(persona_name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._bots)
