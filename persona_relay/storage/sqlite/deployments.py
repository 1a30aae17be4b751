from __future__ import annotations

from typing import Dict, List

from ..rows import _deployment_row


class StoreDeploymentsMixin:
    async def save_deployment(
        self,
        user_id: str,
        persona_name: str,
        channel_id: str,
        artifact_url: str,
        artifact_id: str | None = None,
        status: str = "deployed",
    ) -> Dict[str, object]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO deployments (user_id, persona_name, channel_id, artifact_url, artifact_id, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(user_id), persona_name, str(channel_id), artifact_url, artifact_id, status),
            )
            await db.commit()
            async with db.execute(
                "SELECT * FROM deployments WHERE deployment_id = ?",
                (int(cursor.lastrowid),),
            ) as select_cursor:
                row = await select_cursor.fetchone()
        return _deployment_row(row)

    async def get_recent_deployments(self, user_id: str, persona_name: str, limit: int = 5) -> List[Dict[str, object]]:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT *
                FROM deployments
                WHERE user_id = ? AND persona_name = ?
                ORDER BY created_at DESC, deployment_id DESC
                LIMIT ?
                """,
                (str(user_id), persona_name, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_deployment_row(row) for row in rows]
