from __future__ import annotations

from datetime import datetime
from typing import List

from ...common import new_id, parse_timestamp, utcnow
from ...errors import persistence_read, persistence_write
from ...models import Session
from .utils import _row_to_session, _sqlite_connection, _ts


class SessionsMixin:
    @persistence_read
    async def list_active_sessions(self, user_id: str) -> List[Session]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, user_id, type, started_at, ended_at
                FROM sessions
                WHERE user_id = ? AND ended_at IS NULL
                ORDER BY started_at DESC, rowid DESC
                """,
                (user_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    @persistence_write
    async def create_session(self, user_id: str, session_type: str, started_at: datetime | None = None) -> Session:
        session = Session(id=new_id(), user_id=user_id, type=session_type, started_at=started_at or utcnow())
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO sessions (id, user_id, type, started_at, ended_at)
                VALUES (?, ?, ?, ?, NULL)
                """,
                (session.id, session.user_id, session.type, _ts(session.started_at)),
            )
            await db.commit()
        return session

    @persistence_write
    async def end_session(self, session_id: str, ended_at: datetime | None = None) -> Session | None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                "UPDATE sessions SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
                (_ts(ended_at or utcnow()), session_id),
            )
            await db.commit()
            async with db.execute(
                "SELECT id, user_id, type, started_at, ended_at FROM sessions WHERE id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_session(row) if row is not None else None

    @persistence_read
    async def get_session(self, session_id: str) -> Session | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT id, user_id, type, started_at, ended_at FROM sessions WHERE id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_session(row) if row is not None else None

    @persistence_read
    async def list_sessions(self, user_id: str, limit: int) -> List[Session]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, user_id, type, started_at, ended_at
                FROM sessions
                WHERE user_id = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    @persistence_read
    async def get_last_message_time(self, session_id: str) -> datetime | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT MAX(created_at) FROM messages WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return parse_timestamp(row[0])
