from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest
from helpers import BASE_TIME, make_message

from companion_core.errors import PersistenceReadError
from companion_core.pipeline.context_builder import (
    ContextBuilder,
    build_context_prompt,
    build_conversation_history,
)
from companion_core.storage.memory_store import InMemoryStore


class FlakyStore(InMemoryStore):
    async def get_user_summary(self, user_id: str):
        raise PersistenceReadError("get_user_summary failed: no such table")

    async def list_sessions(self, user_id: str, limit: int):
        raise PersistenceReadError("list_sessions failed: timeout")


async def _seed(store: InMemoryStore) -> str:
    session = await store.create_session("u1", "chat", BASE_TIME)
    await store.end_session(session.id, BASE_TIME + timedelta(minutes=10))
    current = await store.create_session("u1", "chat", BASE_TIME + timedelta(hours=1))
    await store.save_message(make_message("pehla message", session_id=session.id, minutes=1))
    await store.save_message(make_message("reply one", role="assistant", session_id=session.id, minutes=2))
    await store.save_message(make_message("doosra message", session_id=current.id, minutes=61))
    await store.save_message(make_message("other user", user_id="u2", session_id="x", minutes=62))
    await store.upsert_user_summary(
        "u1",
        {
            "partner_type_one_liner": "someone calm and kind",
            "top_3_traits_you_value": ["honesty", "humor", "  patience  "],
            "love_language_guess": "quality time",
            "communication_fit": "",
        },
    )
    return current.id


def test_build_chat_context_gathers_all_sources() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        session_id = await _seed(store)
        builder = ContextBuilder(store, clock=lambda: BASE_TIME + timedelta(hours=1, minutes=5))

        bundle = await builder.build_chat_context("u1", session_id)

        assert [m.text for m in bundle.recent_messages] == ["pehla message", "reply one", "doosra message"]
        assert len(bundle.session_history) == 2
        assert bundle.summary is not None and bundle.summary["love_language_guess"] == "quality time"

        prompt = bundle.system_prompt
        assert "=== WHAT YOU KNOW ABOUT THIS PERSON ===" in prompt
        assert "Traits they value most: honesty, humor, patience" in prompt
        assert "Communication style" not in prompt
        assert "You've had 2 conversations together (15 minutes, 3 messages)" in prompt
        assert "Them: pehla message" in prompt
        assert "You: reply one" in prompt
        assert "other user" not in prompt
        assert prompt.index("WHAT YOU KNOW") < prompt.index("RELATIONSHIP HISTORY") < prompt.index("RECENT CONVERSATION")

    asyncio.run(scenario())


def test_failed_fetches_degrade_without_raising(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> None:
        store = FlakyStore()
        await store.save_message(make_message("kuch bhi"))
        builder = ContextBuilder(store)

        bundle = await builder.build_chat_context("u1", "s1")

        assert bundle.summary is None
        assert bundle.session_history == []
        assert [m.text for m in bundle.recent_messages] == ["kuch bhi"]
        assert "Them: kuch bhi" in bundle.system_prompt

    caplog.set_level(logging.WARNING, logger="companion_core.context")
    asyncio.run(scenario())

    assert sum("fetch failed" in record.getMessage() for record in caplog.records) == 2


def test_new_user_context_is_empty() -> None:
    async def scenario() -> None:
        bundle = await ContextBuilder(InMemoryStore()).build_chat_context("fresh", None)

        assert bundle.system_prompt == ""
        assert bundle.recent_messages == []

    asyncio.run(scenario())


def test_transcript_is_truncated_in_lines_and_chars() -> None:
    messages = [make_message(f"message number {n} " + "x" * 300, minutes=n) for n in range(20)]

    prompt = build_context_prompt(None, messages, [], transcript_lines=15, transcript_chars=50)

    transcript_lines = [line for line in prompt.split("\n") if line.startswith("Them: ")]
    assert len(transcript_lines) == 15
    assert transcript_lines[0].startswith("Them: message number 5 ")
    assert all(len(line) <= len("Them: ") + 53 for line in transcript_lines)


def test_conversation_history_maps_last_k_messages() -> None:
    messages = [
        make_message("one", minutes=0),
        make_message("two", role="assistant", minutes=1),
        make_message("three", minutes=2),
    ]

    assert build_conversation_history(messages, 2) == [
        {"role": "assistant", "content": "two"},
        {"role": "user", "content": "three"},
    ]
    assert build_conversation_history(messages, 0) == []
