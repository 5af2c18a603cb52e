from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ...common import utcnow
from ...errors import persistence_read, persistence_write
from .utils import _sqlite_connection, _ts

logger = logging.getLogger("companion_core.storage")


class SummariesMixin:
    @persistence_read
    async def get_user_summary(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT payload_json, updated_at FROM user_summaries WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        try:
            payload = json.loads(str(row["payload_json"]))
        except json.JSONDecodeError:
            logger.warning("[storage] corrupt summary payload user=%s", user_id)
            return None
        if not isinstance(payload, dict):
            return None
        payload["updated_at"] = str(row["updated_at"])
        return payload

    @persistence_write
    async def upsert_user_summary(self, user_id: str, summary: Dict[str, Any]) -> None:
        payload = {key: value for key, value in summary.items() if key != "updated_at"}
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_summaries (user_id, payload_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(payload, ensure_ascii=False), _ts(utcnow())),
            )
            await db.commit()

    @persistence_write
    async def record_safety_event(
        self,
        user_id: str,
        session_id: str | None,
        reason: str,
        created_at: datetime | None = None,
    ) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO safety_events (user_id, session_id, reason, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, session_id, reason, _ts(created_at or utcnow())),
            )
            await db.commit()
