from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from ..common import utcnow
from ..errors import PersistenceError, QuotaExceededError
from ..models import QuotaState, UserProfile
from ..storage.base import Storage

logger = logging.getLogger("companion_core.quota")

QUOTA_WINDOWS = ("total", "daily")


class QuotaGate:
    """Free-tier message allowance checked before any other turn work.

    ``total`` reads the lifetime usage counter. ``daily`` counts user messages sent
    since midnight UTC.
    """

    def __init__(
        self,
        storage: Storage,
        free_limit: int = 20,
        window: str = "total",
        premium_user_ids: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if window not in QUOTA_WINDOWS:
            raise ValueError(f"quota window must be one of {', '.join(QUOTA_WINDOWS)}")
        self.storage = storage
        self.free_limit = max(0, int(free_limit))
        self.window = window
        self.premium_user_ids = frozenset(premium_user_ids)
        self.clock = clock

    def is_premium(self, user_id: str, profile: UserProfile | None) -> bool:
        return user_id in self.premium_user_ids or bool(profile and profile.is_premium)

    async def _count(self, user_id: str) -> int:
        if self.window == "daily":
            midnight = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
            return await self.storage.count_user_messages_since(user_id, midnight)
        return await self.storage.get_message_count(user_id)

    async def check(self, user_id: str, profile: UserProfile | None = None) -> QuotaState:
        premium = self.is_premium(user_id, profile)
        try:
            count = await self._count(user_id)
        except PersistenceError as exc:
            logger.warning("[quota] count failed user=%s (%s); assuming 0", user_id, exc)
            count = 0
        return QuotaState(message_count=count, limit=self.free_limit, is_premium=premium)

    async def enforce(self, user_id: str, profile: UserProfile | None = None) -> QuotaState:
        state = await self.check(user_id, profile)
        if state.exceeded:
            logger.info("[quota] paywall user=%s count=%s limit=%s", user_id, state.message_count, state.limit)
            raise QuotaExceededError(state)
        return state
