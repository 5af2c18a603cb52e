from __future__ import annotations

from ...common import utcnow
from ...errors import persistence_read, persistence_write
from ...models import UserProfile
from .utils import _sqlite_connection, _ts


class ProfilesMixin:
    @persistence_read
    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT user_id, persona_id, is_premium FROM user_profiles WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return UserProfile(
            user_id=str(row["user_id"]),
            persona_id=str(row["persona_id"]) if row["persona_id"] else None,
            is_premium=bool(row["is_premium"]),
        )

    @persistence_write
    async def upsert_user_profile(self, profile: UserProfile) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_profiles (user_id, persona_id, is_premium, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    persona_id = excluded.persona_id,
                    is_premium = excluded.is_premium,
                    updated_at = excluded.updated_at
                """,
                (profile.user_id, profile.persona_id, 1 if profile.is_premium else 0, _ts(utcnow())),
            )
            await db.commit()

    @persistence_read
    async def get_message_count(self, user_id: str) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT total_messages FROM usage_counters WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    @persistence_write
    async def increment_message_count(self, user_id: str, by: int = 1) -> int:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO usage_counters (user_id, total_messages, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    total_messages = usage_counters.total_messages + excluded.total_messages,
                    updated_at = excluded.updated_at
                """,
                (user_id, int(by), _ts(utcnow())),
            )
            await db.commit()
            async with db.execute(
                "SELECT total_messages FROM usage_counters WHERE user_id = ?",
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
