from __future__ import annotations

from .sqlite.messages import MessagesMixin
from .sqlite.profiles import ProfilesMixin
from .sqlite.schema import SchemaMixin
from .sqlite.sessions import SessionsMixin
from .sqlite.summaries import SummariesMixin
from .sqlite.utils import _sqlite_connection


class SqliteStore(
    SchemaMixin,
    SessionsMixin,
    MessagesMixin,
    ProfilesMixin,
    SummariesMixin,
):
    """Persistent SQLite store for sessions, messages, profiles, usage counters and summaries."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("SELECT 1")
