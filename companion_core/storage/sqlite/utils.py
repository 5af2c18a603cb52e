from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Mapping

import aiosqlite

from ...common import format_timestamp, parse_timestamp, utcnow
from ...models import Message, Session


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        db.row_factory = aiosqlite.Row
        yield db


def _ts(value: datetime | None) -> str | None:
    return format_timestamp(value)


def _row_to_session(row: Mapping[str, object]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        type=str(row["type"]),
        started_at=parse_timestamp(row["started_at"]) or utcnow(),
        ended_at=parse_timestamp(row["ended_at"]),
    )


def _row_to_message(row: Mapping[str, object]) -> Message:
    return Message(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        user_id=str(row["user_id"]),
        role=str(row["role"]),
        text=str(row["text"]),
        tag=str(row["tag"] or "general"),
        created_at=parse_timestamp(row["created_at"]) or utcnow(),
    )
