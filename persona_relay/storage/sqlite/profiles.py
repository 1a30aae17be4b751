from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from ..rows import _dump_fields, _load_fields, _persona_profile_row, _shared_profile_row
from .utils import SQLITE_NOW

logger = logging.getLogger("persona_relay")


class StoreProfilesMixin:
    async def get_or_create_shared_profile(
        self,
        user_id: str,
        username: str,
        display_name: str | None,
    ) -> Dict[str, object]:
        async with self._connect() as db:
            await db.execute(
                f"""
                INSERT INTO shared_profiles (user_id, username, display_name, message_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = excluded.username,
                    display_name = excluded.display_name,
                    message_count = shared_profiles.message_count + 1,
                    last_seen_at = {SQLITE_NOW}
                """,
                (str(user_id), username, display_name),
            )
            await db.commit()
            async with db.execute("SELECT * FROM shared_profiles WHERE user_id = ?", (str(user_id),)) as cursor:
                row = await cursor.fetchone()
        return _shared_profile_row(row)

    async def get_shared_profile(self, user_id: str) -> Optional[Dict[str, object]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM shared_profiles WHERE user_id = ?", (str(user_id),)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _shared_profile_row(row)

    async def get_or_create_persona_profile(self, user_id: str, persona_name: str) -> Optional[Dict[str, object]]:
        defaults = self._persona_defaults(persona_name)
        if defaults is None:
            logger.debug("No profile schema for persona=%s; persona profile skipped", persona_name)
            return None
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO persona_profiles (user_id, persona_name, fields_json)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, persona_name) DO NOTHING
                """,
                (str(user_id), persona_name, _dump_fields(defaults)),
            )
            await db.commit()
            async with db.execute(
                "SELECT * FROM persona_profiles WHERE user_id = ? AND persona_name = ?",
                (str(user_id), persona_name),
            ) as cursor:
                row = await cursor.fetchone()
        return _persona_profile_row(row, defaults)

    async def update_profile(
        self,
        user_id: str,
        updates: Mapping[str, object] | None,
        persona_name: str,
    ) -> None:
        plan = self._plan_profile_update(user_id, updates, persona_name)
        if plan is None:
            return
        schema, routed = plan
        async with self._connect() as db:
            if routed.shared:
                await self._write_shared_fields(db, str(user_id), routed.shared)
            if routed.persona:
                await self._write_persona_fields(db, str(user_id), persona_name, schema.defaults(), routed.persona)
            await db.commit()
        logger.info(
            "[profile.update] persona=%s user=%s shared=%s persona_fields=%s",
            persona_name,
            user_id,
            ",".join(sorted(routed.shared)) or "-",
            ",".join(sorted(routed.persona)) or "-",
        )

    async def _write_shared_fields(self, db: Any, user_id: str, values: Mapping[str, Any]) -> None:
        columns = sorted(values)
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{column} = excluded.{column}" for column in columns)
        await db.execute(
            f"""
            INSERT INTO shared_profiles (user_id, {", ".join(columns)})
            VALUES (?, {placeholders})
            ON CONFLICT(user_id) DO UPDATE SET
                {assignments},
                last_seen_at = {SQLITE_NOW}
            """,
            (user_id, *(values[column] for column in columns)),
        )

    async def _write_persona_fields(
        self,
        db: Any,
        user_id: str,
        persona_name: str,
        defaults: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> None:
        async with db.execute(
            "SELECT fields_json FROM persona_profiles WHERE user_id = ? AND persona_name = ?",
            (user_id, persona_name),
        ) as cursor:
            row = await cursor.fetchone()
        fields = dict(defaults)
        if row is not None:
            fields.update(_load_fields(row["fields_json"]))
        fields.update(values)
        await db.execute(
            f"""
            INSERT INTO persona_profiles (user_id, persona_name, fields_json, message_count)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(user_id, persona_name) DO UPDATE SET
                fields_json = excluded.fields_json,
                message_count = persona_profiles.message_count + 1,
                updated_at = {SQLITE_NOW}
            """,
            (user_id, persona_name, _dump_fields(fields)),
        )
