from __future__ import annotations

import asyncio
import logging

import pytest
from helpers import BASE_TIME, make_message

from companion_core.errors import PersistenceReadError, QuotaExceededError
from companion_core.models import UserProfile
from companion_core.pipeline.quota import QuotaGate
from companion_core.storage.memory_store import InMemoryStore


class BrokenCounterStore(InMemoryStore):
    async def get_message_count(self, user_id: str) -> int:
        raise PersistenceReadError("get_message_count failed: database is locked")


def test_last_free_message_is_allowed_and_limit_blocks() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        gate = QuotaGate(store, free_limit=20)

        store.counters["u1"] = 19
        state = await gate.enforce("u1")
        assert (state.message_count, state.limit, state.exceeded) == (19, 20, False)

        store.counters["u1"] = 20
        with pytest.raises(QuotaExceededError) as excinfo:
            await gate.enforce("u1")
        assert excinfo.value.state.message_count == 20
        assert "20/20" in str(excinfo.value)

    asyncio.run(scenario())


def test_premium_users_are_never_blocked() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        store.counters["listed"] = 99
        store.counters["flagged"] = 99
        gate = QuotaGate(store, free_limit=5, premium_user_ids=["listed"])

        listed = await gate.enforce("listed")
        flagged = await gate.enforce("flagged", UserProfile(user_id="flagged", is_premium=True))

        assert listed.is_premium and flagged.is_premium
        assert listed.message_count == 99
        with pytest.raises(QuotaExceededError):
            await gate.enforce("flagged", UserProfile(user_id="flagged"))

    asyncio.run(scenario())


def test_daily_window_counts_since_utc_midnight() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        await store.save_message(make_message("kal raat", minutes=-13 * 60))
        await store.save_message(make_message("subah", minutes=-6 * 60))
        await store.save_message(make_message("reply", role="assistant", minutes=-6 * 60 + 1))
        await store.save_message(make_message("abhi", minutes=0))
        gate = QuotaGate(store, free_limit=3, window="daily", clock=lambda: BASE_TIME)

        state = await gate.check("u1")

        assert state.message_count == 2
        assert state.exceeded is False

    asyncio.run(scenario())


def test_counter_failure_fails_open(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="companion_core.quota")

    state = asyncio.run(QuotaGate(BrokenCounterStore(), free_limit=1).enforce("u1"))

    assert state.message_count == 0
    assert any("count failed" in record.getMessage() for record in caplog.records)


def test_unknown_window_is_rejected() -> None:
    with pytest.raises(ValueError):
        QuotaGate(InMemoryStore(), window="weekly")
