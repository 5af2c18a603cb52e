from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

import asyncpg

from ..common import format_timestamp, new_id, utcnow
from ..errors import persistence_read, persistence_write
from ..models import Message, Session, UserProfile

logger = logging.getLogger("companion_core.storage")


def _record_to_session(row: Mapping[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        type=str(row["type"]),
        started_at=row["started_at"],
        ended_at=row["ended_at"],
    )


def _record_to_message(row: Mapping[str, Any]) -> Message:
    return Message(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        user_id=str(row["user_id"]),
        role=str(row["role"]),
        text=str(row["text"]),
        tag=str(row["tag"] or "general"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store implementing the same API as SqliteStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("POSTGRES_DSN cannot be empty")
        self._pool: asyncpg.Pool | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the service before starting."
                        )
                    await self._create_schema(conn)
                    await self._migrate_schema(conn, version)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("[storage] postgres ready schema=%s", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: asyncpg.Connection) -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS companion_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM companion_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: asyncpg.Connection, version: int) -> None:
        await conn.execute(
            """
            INSERT INTO companion_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _migrate_schema(self, conn: asyncpg.Connection, from_version: int) -> None:
        # v2: message tags and premium flag (additive, idempotent).
        await conn.execute(
            """
            ALTER TABLE messages
            ADD COLUMN IF NOT EXISTS tag TEXT NOT NULL DEFAULT 'general';

            ALTER TABLE user_profiles
            ADD COLUMN IF NOT EXISTS is_premium BOOLEAN NOT NULL DEFAULT FALSE;
            """
        )

    async def _create_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                ended_at TIMESTAMPTZ
            );

            CREATE TABLE IF NOT EXISTS messages (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                text TEXT NOT NULL,
                tag TEXT NOT NULL DEFAULT 'general',
                created_at TIMESTAMPTZ NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                persona_id TEXT,
                is_premium BOOLEAN NOT NULL DEFAULT FALSE,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS usage_counters (
                user_id TEXT PRIMARY KEY,
                total_messages BIGINT NOT NULL DEFAULT 0,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS user_summaries (
                user_id TEXT PRIMARY KEY,
                payload JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS safety_events (
                event_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                session_id TEXT,
                reason TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user_active
            ON sessions(user_id, ended_at, started_at DESC);

            CREATE INDEX IF NOT EXISTS idx_messages_session_created
            ON messages(session_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_messages_user_created
            ON messages(user_id, created_at DESC);
            """
        )

    @persistence_read
    async def list_active_sessions(self, user_id: str) -> List[Session]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, type, started_at, ended_at
                FROM sessions
                WHERE user_id = $1 AND ended_at IS NULL
                ORDER BY started_at DESC
                """,
                user_id,
            )
        return [_record_to_session(row) for row in rows]

    @persistence_write
    async def create_session(self, user_id: str, session_type: str, started_at: datetime | None = None) -> Session:
        session = Session(id=new_id(), user_id=user_id, type=session_type, started_at=started_at or utcnow())
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO sessions (id, user_id, type, started_at) VALUES ($1, $2, $3, $4)",
                session.id,
                session.user_id,
                session.type,
                session.started_at,
            )
        return session

    @persistence_write
    async def end_session(self, session_id: str, ended_at: datetime | None = None) -> Session | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE sessions SET ended_at = $2 WHERE id = $1 AND ended_at IS NULL",
                session_id,
                ended_at or utcnow(),
            )
            row = await conn.fetchrow(
                "SELECT id, user_id, type, started_at, ended_at FROM sessions WHERE id = $1",
                session_id,
            )
        return _record_to_session(row) if row is not None else None

    @persistence_read
    async def get_session(self, session_id: str) -> Session | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, user_id, type, started_at, ended_at FROM sessions WHERE id = $1",
                session_id,
            )
        return _record_to_session(row) if row is not None else None

    @persistence_read
    async def list_sessions(self, user_id: str, limit: int) -> List[Session]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, type, started_at, ended_at
                FROM sessions
                WHERE user_id = $1
                ORDER BY started_at DESC
                LIMIT $2
                """,
                user_id,
                max(1, int(limit)),
            )
        return [_record_to_session(row) for row in rows]

    @persistence_read
    async def get_last_message_time(self, session_id: str) -> datetime | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT MAX(created_at) FROM messages WHERE session_id = $1", session_id)

    @persistence_write
    async def save_message(self, message: Message) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO messages (id, session_id, user_id, role, text, tag, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                message.id,
                message.session_id,
                message.user_id,
                message.role,
                message.text,
                message.tag,
                message.created_at,
            )

    @persistence_read
    async def get_session_messages(self, session_id: str, limit: int | None = None) -> List[Message]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, session_id, user_id, role, text, tag, created_at
                FROM messages
                WHERE session_id = $1
                ORDER BY created_at DESC, seq DESC
                LIMIT $2
                """,
                session_id,
                None if limit is None else max(1, int(limit)),
            )
        return [_record_to_message(row) for row in reversed(rows)]

    @persistence_read
    async def get_recent_user_messages(self, user_id: str, limit: int) -> List[Message]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, session_id, user_id, role, text, tag, created_at
                FROM messages
                WHERE user_id = $1
                ORDER BY created_at DESC, seq DESC
                LIMIT $2
                """,
                user_id,
                max(1, int(limit)),
            )
        return [_record_to_message(row) for row in reversed(rows)]

    @persistence_read
    async def count_messages_by_session(self, session_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return {}
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT session_id, COUNT(*) AS total
                FROM messages
                WHERE session_id = ANY($1::text[])
                GROUP BY session_id
                """,
                ids,
            )
        counts = {session_id: 0 for session_id in ids}
        for row in rows:
            counts[str(row["session_id"])] = int(row["total"])
        return counts

    @persistence_read
    async def count_user_messages_since(self, user_id: str, since: datetime | None) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT COUNT(*)
                FROM messages
                WHERE user_id = $1 AND role = 'user' AND ($2::timestamptz IS NULL OR created_at > $2)
                """,
                user_id,
                since,
            )
        return int(value or 0)

    @persistence_read
    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, persona_id, is_premium FROM user_profiles WHERE user_id = $1",
                user_id,
            )
        if row is None:
            return None
        return UserProfile(
            user_id=str(row["user_id"]),
            persona_id=str(row["persona_id"]) if row["persona_id"] else None,
            is_premium=bool(row["is_premium"]),
        )

    @persistence_write
    async def upsert_user_profile(self, profile: UserProfile) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_profiles (user_id, persona_id, is_premium, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT(user_id) DO UPDATE SET
                    persona_id = EXCLUDED.persona_id,
                    is_premium = EXCLUDED.is_premium,
                    updated_at = NOW()
                """,
                profile.user_id,
                profile.persona_id,
                bool(profile.is_premium),
            )

    @persistence_read
    async def get_message_count(self, user_id: str) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval("SELECT total_messages FROM usage_counters WHERE user_id = $1", user_id)
        return int(value or 0)

    @persistence_write
    async def increment_message_count(self, user_id: str, by: int = 1) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                """
                INSERT INTO usage_counters (user_id, total_messages, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT(user_id) DO UPDATE SET
                    total_messages = usage_counters.total_messages + EXCLUDED.total_messages,
                    updated_at = NOW()
                RETURNING total_messages
                """,
                user_id,
                int(by),
            )
        return int(value or 0)

    @persistence_read
    async def get_user_summary(self, user_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT payload::text AS payload, updated_at FROM user_summaries WHERE user_id = $1",
                user_id,
            )
        if row is None:
            return None
        payload = json.loads(str(row["payload"]))
        if not isinstance(payload, dict):
            return None
        payload["updated_at"] = format_timestamp(row["updated_at"])
        return payload

    @persistence_write
    async def upsert_user_summary(self, user_id: str, summary: Dict[str, Any]) -> None:
        payload = {key: value for key, value in summary.items() if key != "updated_at"}
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_summaries (user_id, payload, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT(user_id) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    updated_at = NOW()
                """,
                user_id,
                json.dumps(payload, ensure_ascii=False),
            )

    @persistence_write
    async def record_safety_event(
        self,
        user_id: str,
        session_id: str | None,
        reason: str,
        created_at: datetime | None = None,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO safety_events (user_id, session_id, reason, created_at) VALUES ($1, $2, $3, $4)",
                user_id,
                session_id,
                reason,
                created_at or utcnow(),
            )
