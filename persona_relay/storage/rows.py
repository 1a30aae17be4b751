from __future__ import annotations

import json
from typing import Any, Dict, Mapping


def _iso(value: object) -> str:
    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return str(isoformat())
    return str(value)


def _load_fields(raw: object) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if not raw:
        return {}
    try:
        parsed = json.loads(str(raw))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _dump_fields(fields: Mapping[str, Any]) -> str:
    return json.dumps(dict(fields), ensure_ascii=False, sort_keys=True)


def _conversation_row(row: Mapping[str, Any]) -> Dict[str, object]:
    return {
        "conversation_id": int(row["conversation_id"]),
        "channel_id": str(row["channel_id"]),
        "persona_name": str(row["persona_name"]),
        "channel_type": str(row["channel_type"]),
        "guild_id": row["guild_id"],
        "channel_name": row["channel_name"],
        "created_at": _iso(row["created_at"]),
        "last_activity": _iso(row["last_activity"]),
    }


def _message_row(row: Mapping[str, Any]) -> Dict[str, object]:
    return {
        "message_id": int(row["message_id"]),
        "conversation_id": int(row["conversation_id"]),
        "external_message_id": str(row["external_message_id"]),
        "sender_id": str(row["sender_id"]),
        "sender_type": str(row["sender_type"]),
        "persona_name": row["persona_name"],
        "content": str(row["content"]),
        "created_at": _iso(row["created_at"]),
    }


def _shared_profile_row(row: Mapping[str, Any]) -> Dict[str, object]:
    return {
        "user_id": str(row["user_id"]),
        "username": str(row["username"]),
        "display_name": row["display_name"],
        "name": row["name"],
        "cohort": row["cohort"],
        "timezone": row["timezone"],
        "current_project": row["current_project"],
        "notes": row["notes"],
        "deadline_mvp": row["deadline_mvp"],
        "message_count": int(row["message_count"]),
        "first_seen_at": _iso(row["first_seen_at"]),
        "last_seen_at": _iso(row["last_seen_at"]),
    }


def _persona_profile_row(row: Mapping[str, Any], defaults: Mapping[str, Any]) -> Dict[str, object]:
    fields = dict(defaults)
    fields.update(_load_fields(row["fields_json"]))
    return {
        "user_id": str(row["user_id"]),
        "persona_name": str(row["persona_name"]),
        "fields": fields,
        "message_count": int(row["message_count"]),
        "created_at": _iso(row["created_at"]),
        "updated_at": _iso(row["updated_at"]),
    }


def _deployment_row(row: Mapping[str, Any]) -> Dict[str, object]:
    return {
        "deployment_id": int(row["deployment_id"]),
        "user_id": str(row["user_id"]),
        "persona_name": str(row["persona_name"]),
        "channel_id": str(row["channel_id"]),
        "artifact_url": str(row["artifact_url"]),
        "artifact_id": row["artifact_id"],
        "status": str(row["status"]),
        "created_at": _iso(row["created_at"]),
    }
