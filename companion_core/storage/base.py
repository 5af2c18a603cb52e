from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..models import Message, Session, UserProfile


class Storage(Protocol):
    """Persistence contract shared by the in-memory, SQLite and Postgres stores."""

    backend_name: str

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def list_active_sessions(self, user_id: str) -> List[Session]: ...

    async def create_session(
        self, user_id: str, session_type: str, started_at: datetime | None = None
    ) -> Session: ...

    async def end_session(self, session_id: str, ended_at: datetime | None = None) -> Session | None: ...

    async def get_session(self, session_id: str) -> Session | None: ...

    async def list_sessions(self, user_id: str, limit: int) -> List[Session]: ...

    async def get_last_message_time(self, session_id: str) -> datetime | None: ...

    async def save_message(self, message: Message) -> None: ...

    async def get_session_messages(self, session_id: str, limit: int | None = None) -> List[Message]: ...

    async def get_recent_user_messages(self, user_id: str, limit: int) -> List[Message]: ...

    async def count_messages_by_session(self, session_ids: Iterable[str]) -> Dict[str, int]: ...

    async def count_user_messages_since(self, user_id: str, since: datetime | None) -> int: ...

    async def get_user_profile(self, user_id: str) -> UserProfile | None: ...

    async def upsert_user_profile(self, profile: UserProfile) -> None: ...

    async def get_message_count(self, user_id: str) -> int: ...

    async def increment_message_count(self, user_id: str, by: int = 1) -> int: ...

    async def get_user_summary(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def upsert_user_summary(self, user_id: str, summary: Dict[str, Any]) -> None: ...

    async def record_safety_event(
        self, user_id: str, session_id: str | None, reason: str, created_at: datetime | None = None
    ) -> None: ...
