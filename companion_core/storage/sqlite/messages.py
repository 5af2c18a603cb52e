from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List

from ...errors import persistence_read, persistence_write
from ...models import Message
from .utils import _row_to_message, _sqlite_connection, _ts


class MessagesMixin:
    @persistence_write
    async def save_message(self, message: Message) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO messages (id, session_id, user_id, role, text, tag, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.session_id,
                    message.user_id,
                    message.role,
                    message.text,
                    message.tag,
                    _ts(message.created_at),
                ),
            )
            await db.commit()

    @persistence_read
    async def get_session_messages(self, session_id: str, limit: int | None = None) -> List[Message]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, session_id, user_id, role, text, tag, created_at
                FROM messages
                WHERE session_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (session_id, -1 if limit is None else max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    @persistence_read
    async def get_recent_user_messages(self, user_id: str, limit: int) -> List[Message]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, session_id, user_id, role, text, tag, created_at
                FROM messages
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    @persistence_read
    async def count_messages_by_session(self, session_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT session_id, COUNT(*) AS total
                FROM messages
                WHERE session_id IN ({placeholders})
                GROUP BY session_id
                """,
                ids,
            ) as cursor:
                rows = await cursor.fetchall()
        counts = {session_id: 0 for session_id in ids}
        for row in rows:
            counts[str(row["session_id"])] = int(row["total"])
        return counts

    @persistence_read
    async def count_user_messages_since(self, user_id: str, since: datetime | None) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(*)
                FROM messages
                WHERE user_id = ? AND role = 'user' AND (? IS NULL OR created_at > ?)
                """,
                (user_id, _ts(since), _ts(since)),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
