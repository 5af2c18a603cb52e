from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Sequence, TypeVar

from ..common import collapse_spaces, truncate, utcnow
from ..models import ContextBundle, Message, SessionStats
from ..prompts.context import (
    SUMMARY_FIELDS,
    build_history_section,
    build_known_facts_section,
    build_transcript_section,
    known_fact_label,
    response_guidelines,
)
from ..storage.base import Storage

logger = logging.getLogger("companion_core.context")

T = TypeVar("T")


def _fact_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        items = [collapse_spaces(str(item)) for item in value if str(item).strip()]
        return ", ".join(items)
    if value is None:
        return ""
    return collapse_spaces(str(value))


def build_context_prompt(
    summary: Dict[str, Any] | None,
    recent_messages: Sequence[Message],
    session_history: Sequence[SessionStats],
    *,
    transcript_lines: int = 15,
    transcript_chars: int = 200,
) -> str:
    """Weave the summary, relationship stats and recent transcript into one prompt fragment."""
    sections: List[str] = []

    if summary:
        fact_lines = []
        for field in SUMMARY_FIELDS:
            value = _fact_value(summary.get(field))
            if value:
                fact_lines.append(f"{known_fact_label(field)}: {value}")
        facts = build_known_facts_section(fact_lines)
        if facts:
            sections.append(facts)

    if session_history:
        sections.append(
            build_history_section(
                sessions=len(session_history),
                minutes=sum(item.duration_minutes for item in session_history),
                messages=sum(item.message_count for item in session_history),
            )
        )

    if recent_messages:
        tail = list(recent_messages)[-max(1, transcript_lines) :]
        transcript = build_transcript_section(
            (message.role, truncate(collapse_spaces(message.text), transcript_chars)) for message in tail
        )
        if transcript:
            sections.append(transcript)

    if not sections:
        return ""
    sections.append(response_guidelines())
    return "\n\n".join(sections)


def build_conversation_history(messages: Sequence[Message], limit: int) -> List[Dict[str, str]]:
    """Last ``limit`` messages as role/content pairs for the completion request."""
    if limit <= 0:
        return []
    return [
        {"role": "user" if message.role == "user" else "assistant", "content": message.text}
        for message in list(messages)[-limit:]
    ]


class ContextBuilder:
    def __init__(
        self,
        storage: Storage,
        *,
        recent_limit: int = 30,
        history_limit: int = 5,
        transcript_lines: int = 15,
        transcript_chars: int = 200,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.recent_limit = recent_limit
        self.history_limit = history_limit
        self.transcript_lines = transcript_lines
        self.transcript_chars = transcript_chars
        self.clock = clock

    async def _safe(self, label: str, user_id: str, coro: Awaitable[T], default: T) -> T:
        try:
            return await coro
        except Exception as exc:
            logger.warning("[context] %s fetch failed user=%s (%s)", label, user_id, exc)
            return default

    async def session_history(self, user_id: str) -> List[SessionStats]:
        sessions = await self.storage.list_sessions(user_id, self.history_limit)
        if not sessions:
            return []
        counts = await self.storage.count_messages_by_session([session.id for session in sessions])
        now = self.clock()
        return [
            SessionStats(
                session=session,
                message_count=counts.get(session.id, 0),
                duration_minutes=session.duration_minutes(now),
            )
            for session in sessions
        ]

    async def build_chat_context(self, user_id: str, session_id: str | None = None) -> ContextBundle:
        summary, recent, history = await asyncio.gather(
            self._safe("summary", user_id, self.storage.get_user_summary(user_id), None),
            self._safe("recent", user_id, self.storage.get_recent_user_messages(user_id, self.recent_limit), []),
            self._safe("history", user_id, self.session_history(user_id), []),
        )
        prompt = build_context_prompt(
            summary,
            recent,
            history,
            transcript_lines=self.transcript_lines,
            transcript_chars=self.transcript_chars,
        )
        logger.debug(
            "[context] built user=%s session=%s summary=%s recent=%s sessions=%s",
            user_id,
            session_id,
            bool(summary),
            len(recent),
            len(history),
        )
        return ContextBundle(summary=summary, recent_messages=recent, session_history=history, system_prompt=prompt)
