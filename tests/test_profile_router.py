from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_relay.discord.common import (  # noqa: E402
    AgentCallback,
    chunk_text,
    classify_channel,
    with_artifact_link,
)
from persona_relay.persona.schemas import (  # noqa: E402
    GIORGI,
    LAURA,
    build_agent_profile,
    get_persona_schema,
    route_profile_updates,
)


def test_route_partitions_shared_and_persona_keys() -> None:
    routed = route_profile_updates(LAURA, {"tension_level": 7, "current_project": "X", "code_quality": 9})

    assert routed.persona == {"tension_level": 7}
    assert routed.shared == {"current_project": "X"}
    assert routed.ignored == ["code_quality"]


def test_route_coerces_and_clamps_persona_values() -> None:
    routed = route_profile_updates(GIORGI, {"code_quality": "12", "tech_stack": "  Vue  ", "review_notes": None})

    assert routed.persona == {"code_quality": 10, "tech_stack": "Vue"}
    assert routed.shared == {}


def test_route_of_empty_update_is_empty() -> None:
    assert route_profile_updates(LAURA, None).empty
    assert route_profile_updates(LAURA, {"notes": None}).empty


def test_schema_lookup_is_case_insensitive() -> None:
    assert get_persona_schema("Laura") is LAURA
    assert get_persona_schema(" GIORGI ") is GIORGI
    assert get_persona_schema("nobody") is None


def test_agent_profile_flattens_shared_and_persona_fields() -> None:
    shared = {"username": "alice", "display_name": "Alice", "message_count": 3, "cohort": "C3", "notes": None}
    persona = {"fields": {"tension_level": 2, "trust_level": 9}, "message_count": 1}

    profile = build_agent_profile(LAURA, shared, persona)

    assert profile == {
        "username": "alice",
        "display_name": "Alice",
        "message_count": 3,
        "cohort": "C3",
        "tension_level": 2,
        "trust_level": 9,
        "persona_message_count": 1,
    }
    assert build_agent_profile(LAURA, None, None) is None
    assert build_agent_profile(None, shared, persona) is None


def test_classify_channel_kinds() -> None:
    dm = classify_channel(SimpleNamespace(id=1, type=SimpleNamespace(name="private")))
    guild = SimpleNamespace(id=99)
    text = classify_channel(SimpleNamespace(id=2, type=SimpleNamespace(name="text"), name="general", guild=guild))
    thread = classify_channel(SimpleNamespace(id=3, type=SimpleNamespace(name="public_thread"), name="help"), guild)

    assert (dm.channel_type, dm.guild_id, dm.channel_name) == ("dm", None, None)
    assert (text.channel_type, text.guild_id, text.channel_name) == ("text", "99", "general")
    assert (thread.channel_type, thread.guild_id, thread.channel_name) == ("thread", "99", "help")


def test_artifact_link_suffix() -> None:
    assert with_artifact_link("Done!", "https://app.example.dev") == "Done!\n\n🔗 https://app.example.dev"
    assert with_artifact_link("Done!", None) == "Done!"
    assert with_artifact_link("Done!", "  ") == "Done!"


def test_chunk_text_splits_oversized_lines() -> None:
    chunks = chunk_text("a" * 4500, 1900)
    assert [len(chunk) for chunk in chunks] == [1900, 1900, 700]


def test_callback_payload_accepts_both_update_spellings() -> None:
    camel = AgentCallback.from_payload({"channelId": 5, "personaName": "Laura", "response": "r", "profileUpdates": {"a": 1}})
    snake = AgentCallback.from_payload({"channelId": "5", "personaName": "laura", "response": "r", "profile_updates": {"b": 2}})

    assert camel.channel_id == "5"
    assert camel.persona_name == "laura"
    assert camel.profile_updates == {"a": 1}
    assert snake.profile_updates == {"b": 2}
    assert snake.artifact_url is None
