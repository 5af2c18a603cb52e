from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Protocol

from ..background import BackgroundWriter
from ..common import as_int, collapse_spaces, parse_timestamp, truncate, utcnow
from ..prompts.context import SUMMARY_FIELDS
from ..prompts.summary import build_summary_system_prompt, build_summary_user_prompt, summary_schema_hint
from ..storage.base import Storage

logger = logging.getLogger("companion_core.summary")

_FIELD_MAX_CHARS = 400


class JsonLLM(Protocol):
    @property
    def configured(self) -> bool: ...

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None: ...


def _clean_field(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        items = [truncate(collapse_spaces(str(item)), _FIELD_MAX_CHARS) for item in value]
        return [item for item in items if item][:3]
    if value is None:
        return ""
    return truncate(collapse_spaces(str(value)), _FIELD_MAX_CHARS)


class SummaryRefresher:
    """Keeps the per-user relationship summary fresh from background jobs."""

    def __init__(
        self,
        storage: Storage,
        llm: JsonLLM,
        writer: BackgroundWriter,
        *,
        enabled: bool = True,
        min_new_user_messages: int = 10,
        min_interval_seconds: int = 300,
        window_messages: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.llm = llm
        self.writer = writer
        self.enabled = enabled
        self.min_new_user_messages = max(1, int(min_new_user_messages))
        self.min_interval_seconds = max(0, int(min_interval_seconds))
        self.window_messages = max(2, int(window_messages))
        self.clock = clock

    def schedule(self, user_id: str) -> bool:
        if not self.enabled or not self.llm.configured:
            return False
        return self.writer.submit(
            f"summary user={user_id}",
            lambda: self.refresh(user_id),
            key=("summary", user_id),
        )

    async def refresh(self, user_id: str, *, force: bool = False) -> bool:
        existing = await self.storage.get_user_summary(user_id)
        previous_count = as_int(existing.get("source_user_messages", 0), 0) if existing else 0
        current_count = await self.storage.count_user_messages_since(user_id, None)

        if not force:
            if current_count - previous_count < self.min_new_user_messages:
                return False
            updated_at = parse_timestamp(existing.get("updated_at")) if existing else None
            if updated_at is not None:
                elapsed = (self.clock() - updated_at).total_seconds()
                if elapsed < self.min_interval_seconds:
                    return False

        rows = await self.storage.get_recent_user_messages(user_id, self.window_messages)
        dialogue_lines = [
            f"{'assistant' if message.role == 'assistant' else 'user'}: {collapse_spaces(message.text)}"
            for message in rows
            if message.text.strip()
        ]
        if len(dialogue_lines) < 2:
            return False

        previous_profile = (
            {key: existing.get(key) for key in (*SUMMARY_FIELDS, "summary_text") if existing.get(key)}
            if existing
            else None
        )
        prompt_messages = [
            {"role": "system", "content": build_summary_system_prompt()},
            {"role": "user", "content": build_summary_user_prompt(previous_profile, dialogue_lines)},
        ]
        parsed = await self.llm.json_chat(prompt_messages, schema_hint=summary_schema_hint())
        if not parsed:
            logger.warning("[summary] model returned no usable JSON user=%s", user_id)
            return False

        record: Dict[str, Any] = {key: _clean_field(parsed.get(key)) for key in (*SUMMARY_FIELDS, "summary_text")}
        record["source_user_messages"] = current_count
        await self.storage.upsert_user_summary(user_id, record)
        logger.info("[summary] refreshed user=%s user_messages=%s", user_id, current_count)
        return True
