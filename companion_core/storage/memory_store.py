from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..common import format_timestamp, new_id, utcnow
from ..models import Message, Session, UserProfile


class InMemoryStore:
    """Process-local store used when no database is configured, and as the test double."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.sessions: dict[str, Session] = {}
        self.messages: list[Message] = []
        self.profiles: dict[str, UserProfile] = {}
        self.counters: dict[str, int] = {}
        self.summaries: dict[str, dict[str, Any]] = {}
        self.safety_events: list[dict[str, Any]] = []

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    @staticmethod
    def _session_sort_key(session: Session) -> datetime:
        return session.started_at

    async def list_active_sessions(self, user_id: str) -> List[Session]:
        active = [s for s in self.sessions.values() if s.user_id == user_id and s.ended_at is None]
        return [replace(s) for s in sorted(active, key=self._session_sort_key, reverse=True)]

    async def create_session(self, user_id: str, session_type: str, started_at: datetime | None = None) -> Session:
        session = Session(id=new_id(), user_id=user_id, type=session_type, started_at=started_at or utcnow())
        async with self._lock:
            self.sessions[session.id] = session
        return replace(session)

    async def end_session(self, session_id: str, ended_at: datetime | None = None) -> Session | None:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            if session.ended_at is None:
                session.ended_at = ended_at or utcnow()
            return replace(session)

    async def get_session(self, session_id: str) -> Session | None:
        session = self.sessions.get(session_id)
        return replace(session) if session is not None else None

    async def list_sessions(self, user_id: str, limit: int) -> List[Session]:
        owned = [s for s in self.sessions.values() if s.user_id == user_id]
        owned.sort(key=self._session_sort_key, reverse=True)
        return [replace(s) for s in owned[: max(1, int(limit))]]

    async def get_last_message_time(self, session_id: str) -> datetime | None:
        times = [m.created_at for m in self.messages if m.session_id == session_id]
        return max(times) if times else None

    async def save_message(self, message: Message) -> None:
        async with self._lock:
            self.messages.append(message)

    def _chronological(self, items: Iterable[Message]) -> List[Message]:
        # sorted() is stable, so equal timestamps keep insertion order.
        return sorted(items, key=lambda m: m.created_at)

    async def get_session_messages(self, session_id: str, limit: int | None = None) -> List[Message]:
        ordered = self._chronological(m for m in self.messages if m.session_id == session_id)
        if limit is not None:
            ordered = ordered[-max(1, int(limit)) :]
        return ordered

    async def get_recent_user_messages(self, user_id: str, limit: int) -> List[Message]:
        ordered = self._chronological(m for m in self.messages if m.user_id == user_id)
        return ordered[-max(1, int(limit)) :]

    async def count_messages_by_session(self, session_ids: Iterable[str]) -> Dict[str, int]:
        counts = {session_id: 0 for session_id in session_ids}
        for message in self.messages:
            if message.session_id in counts:
                counts[message.session_id] += 1
        return counts

    async def count_user_messages_since(self, user_id: str, since: datetime | None) -> int:
        return sum(
            1
            for m in self.messages
            if m.user_id == user_id and m.role == "user" and (since is None or m.created_at > since)
        )

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        profile = self.profiles.get(user_id)
        return replace(profile) if profile is not None else None

    async def upsert_user_profile(self, profile: UserProfile) -> None:
        async with self._lock:
            self.profiles[profile.user_id] = replace(profile)

    async def get_message_count(self, user_id: str) -> int:
        return self.counters.get(user_id, 0)

    async def increment_message_count(self, user_id: str, by: int = 1) -> int:
        async with self._lock:
            self.counters[user_id] = self.counters.get(user_id, 0) + int(by)
            return self.counters[user_id]

    async def get_user_summary(self, user_id: str) -> Optional[Dict[str, Any]]:
        summary = self.summaries.get(user_id)
        return copy.deepcopy(summary) if summary is not None else None

    async def upsert_user_summary(self, user_id: str, summary: Dict[str, Any]) -> None:
        payload = copy.deepcopy(summary)
        payload["updated_at"] = format_timestamp(utcnow())
        async with self._lock:
            self.summaries[user_id] = payload

    async def record_safety_event(
        self,
        user_id: str,
        session_id: str | None,
        reason: str,
        created_at: datetime | None = None,
    ) -> None:
        async with self._lock:
            self.safety_events.append(
                {
                    "user_id": user_id,
                    "session_id": session_id,
                    "reason": reason,
                    "created_at": created_at or utcnow(),
                }
            )
