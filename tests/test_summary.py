from __future__ import annotations

import asyncio
from datetime import timedelta

from helpers import BASE_TIME, FakeLLM, make_message

from companion_core.background import BackgroundWriter
from companion_core.common import format_timestamp
from companion_core.pipeline.summary import SummaryRefresher
from companion_core.storage.memory_store import InMemoryStore

REPLY = {
    "partner_type_one_liner": "  someone   patient  ",
    "top_3_traits_you_value": ["honesty", "", "humor", "warmth", "extra"],
    "what_you_might_work_on": None,
    "love_language_guess": "quality time",
    "communication_fit": "direct but kind",
    "summary_text": "Enjoys late chats about books.",
}


async def _seed(store: InMemoryStore, pairs: int) -> None:
    for n in range(pairs):
        await store.save_message(make_message(f"note {n}", minutes=2 * n))
        await store.save_message(make_message(f"reply {n}", role="assistant", minutes=2 * n + 1))


def _refresher(store: InMemoryStore, llm: FakeLLM, **kwargs) -> SummaryRefresher:
    return SummaryRefresher(store, llm, BackgroundWriter("test-summary"), **kwargs)


def test_refresh_writes_cleaned_summary_with_source_count() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        await _seed(store, 3)
        llm = FakeLLM()
        llm.json_reply = dict(REPLY)

        refreshed = await _refresher(store, llm, min_new_user_messages=2).refresh("u1")

        assert refreshed is True
        summary = store.summaries["u1"]
        assert summary["partner_type_one_liner"] == "someone patient"
        assert summary["top_3_traits_you_value"] == ["honesty", "humor", "warmth"]
        assert summary["what_you_might_work_on"] == ""
        assert summary["source_user_messages"] == 3
        dialogue = llm.json_calls[0][1]["content"]
        assert "user: note 0" in dialogue
        assert "assistant: reply 2" in dialogue

    asyncio.run(scenario())


def test_refresh_waits_for_enough_new_messages() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        await _seed(store, 3)
        await store.upsert_user_summary("u1", {"summary_text": "old", "source_user_messages": 2})
        llm = FakeLLM()
        llm.json_reply = dict(REPLY)
        refresher = _refresher(store, llm, min_new_user_messages=5, min_interval_seconds=0)

        assert await refresher.refresh("u1") is False
        assert llm.json_calls == []
        assert await refresher.refresh("u1", force=True) is True
        assert store.summaries["u1"]["source_user_messages"] == 3

    asyncio.run(scenario())


def test_refresh_respects_minimum_interval() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        await _seed(store, 4)
        store.summaries["u1"] = {
            "summary_text": "old",
            "source_user_messages": 0,
            "updated_at": format_timestamp(BASE_TIME),
        }
        llm = FakeLLM()
        llm.json_reply = dict(REPLY)

        too_soon = _refresher(
            store, llm, min_new_user_messages=1, min_interval_seconds=600, clock=lambda: BASE_TIME + timedelta(minutes=5)
        )
        later = _refresher(
            store, llm, min_new_user_messages=1, min_interval_seconds=600, clock=lambda: BASE_TIME + timedelta(minutes=11)
        )

        assert await too_soon.refresh("u1") is False
        assert await later.refresh("u1") is True

    asyncio.run(scenario())


def test_unusable_model_reply_keeps_previous_summary() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        await _seed(store, 2)
        llm = FakeLLM()
        llm.json_reply = None

        assert await _refresher(store, llm, min_new_user_messages=1).refresh("u1") is False
        assert "u1" not in store.summaries

    asyncio.run(scenario())


def test_schedule_is_skipped_when_disabled_or_unconfigured() -> None:
    store = InMemoryStore()

    assert _refresher(store, FakeLLM(), enabled=False).schedule("u1") is False
    assert _refresher(store, FakeLLM(configured=False)).schedule("u1") is False


def test_schedule_dedupes_pending_refresh_per_user() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        await _seed(store, 2)
        llm = FakeLLM()
        llm.json_reply = dict(REPLY)
        refresher = _refresher(store, llm, min_new_user_messages=1)

        assert refresher.schedule("u1") is True
        assert refresher.schedule("u1") is False
        await refresher.writer.join()

        assert len(llm.json_calls) == 1
        assert store.summaries["u1"]["source_user_messages"] == 2

    asyncio.run(scenario())
