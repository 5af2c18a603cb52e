from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

from ..common import new_id, utcnow
from ..errors import PersistenceError, ValidationError
from ..models import SESSION_TYPES, Session, SessionStats
from ..storage.base import Storage

logger = logging.getLogger("companion_core.session")


class SessionManager:
    """Resolves the one active conversation session per user.

    Resolution for a user is serialised by a per-user lock. Sessions left active by an
    earlier race or crash are ended on the next resolution, keeping only the newest.
    """

    def __init__(
        self,
        storage: Storage,
        timeout_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.timeout = timedelta(minutes=timeout_minutes)
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        # Entry is dropped once no caller holds or waits on it.
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                self._locks.pop(user_id, None)

    async def get_or_create_session(self, user_id: str, session_type: str = "chat") -> Session:
        if session_type not in SESSION_TYPES:
            raise ValidationError(f"session type must be one of {', '.join(SESSION_TYPES)}")

        async with self._user_lock(user_id):
            try:
                active = await self.storage.list_active_sessions(user_id)
            except PersistenceError as exc:
                logger.warning("[session] lookup failed user=%s (%s); starting fresh session", user_id, exc)
                return await self._create(user_id, session_type)

            if not active:
                return await self._create(user_id, session_type)

            current, stale = active[0], active[1:]
            for session in stale:
                logger.warning("[session] reconciling extra active session user=%s session=%s", user_id, session.id)
                await self._end_quietly(session.id)

            if current.type != session_type:
                logger.info(
                    "[session] type changed user=%s session=%s %s->%s",
                    user_id,
                    current.id,
                    current.type,
                    session_type,
                )
                await self._end_quietly(current.id)
                return await self._create(user_id, session_type)

            try:
                last_activity = await self.storage.get_last_message_time(current.id)
            except PersistenceError as exc:
                logger.warning("[session] activity lookup failed session=%s (%s); starting fresh", current.id, exc)
                return await self._create(user_id, session_type)

            idle = self.clock() - (last_activity or current.started_at)
            if idle > self.timeout:
                logger.info(
                    "[session] timed out user=%s session=%s idle_minutes=%.1f",
                    user_id,
                    current.id,
                    idle.total_seconds() / 60.0,
                )
                await self._end_quietly(current.id)
                return await self._create(user_id, session_type)

            logger.debug("[session] resumed user=%s session=%s", user_id, current.id)
            return current

    async def end_session(self, session_id: str, user_id: str | None = None) -> SessionStats | None:
        session = await self.storage.get_session(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            return None
        ended = await self.storage.end_session(session_id, self.clock())
        if ended is None:
            return None
        counts = await self.storage.count_messages_by_session([session_id])
        stats = SessionStats(
            session=ended,
            message_count=counts.get(session_id, 0),
            duration_minutes=ended.duration_minutes(self.clock()),
        )
        logger.info(
            "[session] ended user=%s session=%s minutes=%s messages=%s",
            ended.user_id,
            session_id,
            stats.duration_minutes,
            stats.message_count,
        )
        return stats

    async def _create(self, user_id: str, session_type: str) -> Session:
        started_at = self.clock()
        try:
            session = await self.storage.create_session(user_id, session_type, started_at)
        except PersistenceError as exc:
            # Unsaved session: messages still get a stable id for this turn.
            logger.warning("[session] create failed user=%s (%s); using ephemeral session", user_id, exc)
            return Session(id=new_id(), user_id=user_id, type=session_type, started_at=started_at)
        logger.info("[session] created user=%s session=%s type=%s", user_id, session.id, session_type)
        return session

    async def _end_quietly(self, session_id: str) -> None:
        try:
            await self.storage.end_session(session_id, self.clock())
        except PersistenceError as exc:
            logger.warning("[session] end failed session=%s (%s)", session_id, exc)
