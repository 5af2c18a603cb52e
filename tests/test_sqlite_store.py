from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest
from helpers import BASE_TIME, make_message

from companion_core.errors import PersistenceReadError
from companion_core.models import UserProfile
from companion_core.storage.sqlite.schema import SchemaMixin
from companion_core.storage.store import SqliteStore


def test_schema_mismatch_raises_without_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "companion.db"

    asyncio.run(SchemaMixin(db_path).init())
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    with pytest.raises(RuntimeError, match="schema version mismatch"):
        asyncio.run(SchemaMixin(db_path).init())


def test_schema_mismatch_can_reset_with_explicit_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "companion.db"
    asyncio.run(SchemaMixin(db_path).init())

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    monkeypatch.setenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(SchemaMixin(db_path).init())

    with sqlite3.connect(db_path) as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert version == SchemaMixin.SCHEMA_VERSION


def test_v1_database_gains_new_columns(tmp_path: Path) -> None:
    db_path = tmp_path / "companion.db"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE sessions (id TEXT PRIMARY KEY, user_id TEXT NOT NULL, type TEXT NOT NULL,
                                   started_at TEXT NOT NULL, ended_at TEXT);
            CREATE TABLE messages (id TEXT PRIMARY KEY, session_id TEXT NOT NULL, user_id TEXT NOT NULL,
                                   role TEXT NOT NULL, text TEXT NOT NULL, created_at TEXT NOT NULL);
            CREATE TABLE user_profiles (user_id TEXT PRIMARY KEY, persona_id TEXT, updated_at TEXT NOT NULL);
            PRAGMA user_version = 1;
            """
        )

    asyncio.run(SqliteStore(db_path).init())

    with sqlite3.connect(db_path) as conn:
        message_cols = {row[1] for row in conn.execute("PRAGMA table_info(messages)")}
        profile_cols = {row[1] for row in conn.execute("PRAGMA table_info(user_profiles)")}
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert "tag" in message_cols
    assert "is_premium" in profile_cols
    assert version == SchemaMixin.SCHEMA_VERSION


def test_store_round_trips_sessions_messages_and_counters(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = SqliteStore(tmp_path / "companion.db")
        await store.init()

        older = await store.create_session("u1", "chat", BASE_TIME)
        newer = await store.create_session("u1", "call", BASE_TIME + timedelta(minutes=30))
        assert [s.id for s in await store.list_active_sessions("u1")] == [newer.id, older.id]

        ended = await store.end_session(older.id, BASE_TIME + timedelta(minutes=9))
        assert ended is not None and ended.duration_minutes() == 9
        assert [s.id for s in await store.list_active_sessions("u1")] == [newer.id]

        await store.save_message(make_message("first", session_id=older.id, minutes=1))
        await store.save_message(make_message("second", role="assistant", session_id=older.id, minutes=2, tag="fallback"))
        await store.save_message(make_message("third", session_id=newer.id, minutes=31))

        session_messages = await store.get_session_messages(older.id)
        assert [m.text for m in session_messages] == ["first", "second"]
        assert session_messages[1].tag == "fallback"
        recent = await store.get_recent_user_messages("u1", 2)
        assert [m.text for m in recent] == ["second", "third"]
        assert await store.get_last_message_time(older.id) == BASE_TIME + timedelta(minutes=2)
        assert await store.count_messages_by_session([older.id, newer.id, "nope"]) == {
            older.id: 2,
            newer.id: 1,
            "nope": 0,
        }
        assert await store.count_user_messages_since("u1", None) == 2
        assert await store.count_user_messages_since("u1", BASE_TIME + timedelta(minutes=10)) == 1

        assert await store.get_message_count("u1") == 0
        assert await store.increment_message_count("u1") == 1
        assert await store.increment_message_count("u1") == 2
        assert await store.get_message_count("u1") == 2

        await store.upsert_user_profile(UserProfile(user_id="u1", persona_id="playful"))
        await store.upsert_user_profile(UserProfile(user_id="u1", persona_id="dominant", is_premium=True))
        assert await store.get_user_profile("u1") == UserProfile(user_id="u1", persona_id="dominant", is_premium=True)
        assert await store.get_user_profile("ghost") is None

        await store.upsert_user_summary("u1", {"summary_text": "likes chai", "updated_at": "ignored"})
        summary = await store.get_user_summary("u1")
        assert summary is not None
        assert summary["summary_text"] == "likes chai"
        assert summary["updated_at"] != "ignored"

        await store.record_safety_event("u1", newer.id, "crisis")
        await store.ping()

    asyncio.run(scenario())


def test_driver_errors_become_persistence_errors(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = SqliteStore(tmp_path / "never-initialised.db")
        with pytest.raises(PersistenceReadError):
            await store.list_active_sessions("u1")

    asyncio.run(scenario())
