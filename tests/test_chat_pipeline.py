from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, List

import pytest
from helpers import FakeLLM, FakeSleep, build_pipeline, upstream_500

from companion_core.common import new_id, utcnow
from companion_core.errors import QuotaExceededError, ValidationError
from companion_core.models import Message, UserProfile
from companion_core.prompts.chat import fallback_lines, safety_override_response
from companion_core.storage.memory_store import InMemoryStore


async def _run_turn(pipeline, user_id: str, content: str, session_id: str | None = None) -> List[Dict[str, Any]]:
    stream = await pipeline.start_turn(user_id, content, session_id)
    events = await stream.collect()
    await pipeline.writer.join()
    return events


def _messages(store: InMemoryStore, user_id: str = "u1") -> List[Message]:
    return [m for m in store.messages if m.user_id == user_id]


def test_new_user_hi_streams_and_persists() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        llm = FakeLLM([["Hey", " hi!", " kaise ho?"]])
        pipeline = build_pipeline(store, llm)

        events = await _run_turn(pipeline, "u1", "hi")

        chunks, terminal = events[:-1], events[-1]
        assert [e["content"] for e in chunks] == ["Hey", " hi!", " kaise ho?"]
        assert all(e["done"] is False for e in chunks)
        assert terminal["done"] is True
        assert terminal["content"] == ""
        assert terminal["messageCount"] == 1
        assert terminal["messageLimit"] == 20
        assert terminal["isFallback"] is False

        sessions = await store.list_active_sessions("u1")
        assert [s.id for s in sessions] == [terminal["sessionId"]]
        saved = _messages(store)
        assert [(m.role, m.text, m.tag) for m in saved] == [
            ("user", "hi", "general"),
            ("assistant", "Hey hi! kaise ho?", "general"),
        ]
        assert saved[0].created_at < saved[1].created_at
        assert await store.get_message_count("u1") == 1
        assert llm.calls[0][-1] == {"role": "user", "content": "hi"}

    asyncio.run(scenario())


def test_crisis_message_skips_llm_and_streams_resources() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        llm = FakeLLM()
        pipeline = build_pipeline(store, llm)

        events = await _run_turn(pipeline, "u1", "I just want to die, I can't live without you")

        expected = safety_override_response("crisis")
        assert llm.calls == []
        assert events[0] == {"content": expected, "done": False}
        assert events[-1]["safetyReason"] == "crisis"
        assert events[-1]["isFallback"] is False
        saved = _messages(store)
        assert [(m.role, m.tag) for m in saved] == [("user", "general"), ("assistant", "safety")]
        assert saved[1].text == expected
        assert [e["reason"] for e in store.safety_events] == ["crisis"]
        assert await store.get_message_count("u1") == 1

    asyncio.run(scenario())


def test_llm_failures_fall_back_after_backoff() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        sleep = FakeSleep()
        llm = FakeLLM([upstream_500(), upstream_500(), upstream_500()])
        pipeline = build_pipeline(store, llm, sleep=sleep)

        events = await _run_turn(pipeline, "u1", "hello")

        reply = "".join(e["content"] for e in events[:-1])
        assert reply in fallback_lines()
        assert len(events) - 1 == len(reply.split())
        assert events[-1]["isFallback"] is True
        assert sleep.delays[:3] == [1.0, 2.0, 3.0]
        assert set(sleep.delays[3:]) == {0.05}
        saved = _messages(store)
        assert saved[-1].tag == "fallback"
        assert saved[-1].text == reply

    asyncio.run(scenario())


def test_idle_session_is_replaced() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        stale_start = utcnow() - timedelta(minutes=25)
        stale = await store.create_session("u1", "chat", stale_start)
        await store.save_message(
            Message(
                id=new_id(),
                session_id=stale.id,
                user_id="u1",
                role="user",
                text="purani baat",
                tag="general",
                created_at=stale_start + timedelta(minutes=5),
            )
        )
        pipeline = build_pipeline(store, FakeLLM([["fresh start"]]))

        events = await _run_turn(pipeline, "u1", "wapas aa gaya", session_id=stale.id)

        assert events[-1]["sessionId"] != stale.id
        assert store.sessions[stale.id].ended_at is not None
        assert len(await store.list_active_sessions("u1")) == 1

    asyncio.run(scenario())


def test_quota_allows_last_free_turn_then_rejects() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        store.counters["u1"] = 2
        llm = FakeLLM([["one more"]])
        pipeline = build_pipeline(store, llm, free_limit=3)

        events = await _run_turn(pipeline, "u1", "hi")
        assert events[-1]["messageCount"] == 3
        assert events[-1]["messageLimit"] == 3

        sessions_before = len(store.sessions)
        with pytest.raises(QuotaExceededError) as excinfo:
            await pipeline.start_turn("u1", "again")
        assert excinfo.value.state.message_count == 3
        assert len(store.sessions) == sessions_before
        assert len(llm.calls) == 1

    asyncio.run(scenario())


def test_premium_user_bypasses_quota() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        store.counters["vip"] = 500
        await store.upsert_user_profile(UserProfile(user_id="vip", is_premium=True))
        pipeline = build_pipeline(store, FakeLLM([["welcome back"]]), free_limit=20)

        events = await _run_turn(pipeline, "vip", "hi")

        assert events[-1]["messageCount"] == 501

    asyncio.run(scenario())


def test_invalid_input_rejected_before_pipeline() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        pipeline = build_pipeline(store, FakeLLM())

        for user_id, content in (("u1", ""), ("u1", "   "), ("u1", None), ("", "hi")):
            with pytest.raises(ValidationError):
                await pipeline.start_turn(user_id, content)
        assert store.sessions == {}

    asyncio.run(scenario())


def test_selected_persona_drives_prompt() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        llm = FakeLLM([["ok"]])
        pipeline = build_pipeline(store, llm)

        await pipeline.select_persona("u1", "dominant")
        await _run_turn(pipeline, "u1", "hi")

        assert "PERSONA MODE: Aisha" in llm.calls[0][0]["content"]
        with pytest.raises(ValidationError):
            await pipeline.select_persona("u1", "unknown")

    asyncio.run(scenario())


def test_history_pairs_included_when_enabled() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        llm = FakeLLM([["first reply"], ["second reply"]])
        pipeline = build_pipeline(store, llm, chat_history_turns=2)

        await _run_turn(pipeline, "u1", "first question")
        await _run_turn(pipeline, "u1", "second question")

        second_call = llm.calls[1]
        assert [m["role"] for m in second_call] == ["system", "user", "assistant", "user"]
        assert second_call[1]["content"] == "first question"
        assert second_call[2]["content"] == "first reply"

    asyncio.run(scenario())


def test_post_processing_shapes_persisted_text_only() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        pipeline = build_pipeline(store, FakeLLM([["I am here", " for you"]]), post_process_enabled=True)

        events = await _run_turn(pipeline, "u1", "hi")

        assert "".join(e["content"] for e in events[:-1]) == "I am here for you"
        assert _messages(store)[-1].text == "I'm here for you"

    asyncio.run(scenario())


def test_disconnect_stops_forwarding_but_persists_reply() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        pipeline = build_pipeline(store, FakeLLM([["part one", " part two", " part three"]]))

        stream = await pipeline.start_turn("u1", "hi")
        events = stream.events()
        first = await events.__anext__()
        await events.aclose()
        assert stream.detached is True

        await stream.task
        await pipeline.writer.join()

        assert first["content"] == "part one"
        assert _messages(store)[-1].text == "part one part two part three"
        assert await store.get_message_count("u1") == 1

    asyncio.run(scenario())


def test_unexpected_failure_still_emits_terminal_event() -> None:
    class ExplodingStore(InMemoryStore):
        async def list_active_sessions(self, user_id: str):
            raise RuntimeError("boom")

    async def scenario() -> None:
        store = ExplodingStore()
        pipeline = build_pipeline(store, FakeLLM())

        events = await _run_turn(pipeline, "u1", "hi")

        assert len(events) == 1
        assert events[0]["done"] is True
        assert events[0]["error"] == "boom"
        assert store.messages == []

    asyncio.run(scenario())


def test_interrupted_stream_persists_partial_reply() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        llm = FakeLLM([(["Arre", " ruko"], upstream_500())])
        pipeline = build_pipeline(store, llm)

        events = await _run_turn(pipeline, "u1", "hi")

        assert events[-1]["isFallback"] is False
        assert (_messages(store)[-1].text, _messages(store)[-1].tag) == ("Arre ruko", "interrupted")

    asyncio.run(scenario())


def test_stalled_summary_refresh_does_not_hold_back_quota_writes() -> None:
    class StalledSummaryLLM(FakeLLM):
        def __init__(self, script: List[Any]) -> None:
            super().__init__(script)
            self.json_started = asyncio.Event()

        async def json_chat(self, messages, schema_hint, temperature=0.1, max_output_tokens=900):
            self.json_calls.append(messages)
            self.json_started.set()
            await asyncio.Event().wait()
            return None

    async def scenario() -> None:
        store = InMemoryStore()
        llm = StalledSummaryLLM([["hello"], ["hey"]])
        pipeline = build_pipeline(store, llm, free_limit=1, summaries_enabled=True)
        try:
            await _run_turn(pipeline, "u1", "hi")
            pipeline.summaries.writer.start()
            await asyncio.wait_for(llm.json_started.wait(), timeout=1)

            stream = await pipeline.start_turn("u2", "first")
            await stream.collect()
            await asyncio.wait_for(pipeline.writer.join(), timeout=1)

            assert [m.text for m in _messages(store, "u2")] == ["first", "hey"]
            assert await store.get_message_count("u2") == 1
            with pytest.raises(QuotaExceededError):
                await pipeline.start_turn("u2", "second, over the free limit")
        finally:
            await pipeline.summaries.writer.close(timeout=0.05)
            await pipeline.writer.close(timeout=0.05)

    asyncio.run(scenario())


def test_drain_at_shutdown_closes_open_stream_and_keeps_partial_reply() -> None:
    class StalledLLM(FakeLLM):
        async def stream_chat(self, messages, temperature=None, max_output_tokens=None):
            self.calls.append(messages)
            yield "Hello"
            await asyncio.sleep(10)
            yield " never"

    async def scenario() -> None:
        store = InMemoryStore()
        pipeline = build_pipeline(store, StalledLLM())

        stream = await pipeline.start_turn("u1", "hi")
        events = stream.events()
        first = await asyncio.wait_for(events.__anext__(), timeout=1)
        await pipeline.drain(timeout=0.05)
        terminal = await asyncio.wait_for(events.__anext__(), timeout=1)
        await events.aclose()
        await pipeline.writer.join()

        assert first == {"content": "Hello", "done": False}
        assert terminal["done"] is True
        assert terminal["error"] == "cancelled"
        assert terminal["messageCount"] == 1
        assert stream.task is not None and stream.task.cancelled()
        assert [(m.role, m.text, m.tag) for m in _messages(store)] == [
            ("user", "hi", "general"),
            ("assistant", "Hello", "interrupted"),
        ]
        assert await store.get_message_count("u1") == 1

    asyncio.run(scenario())
