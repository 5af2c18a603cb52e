from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Set

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"﻿{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_str_set(name: str, aliases: tuple[str, ...] = ()) -> Set[str]:
    raw = (_env_lookup(name, aliases) or "").strip()
    if not raw:
        return set()
    return {chunk.strip() for chunk in raw.split(",") if chunk.strip()}


def _env_float_tuple(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = (_env_lookup(name) or "").strip()
    if not raw:
        return default
    values: list[float] = []
    for chunk in raw.split(","):
        value = chunk.strip()
        if not value:
            continue
        try:
            values.append(float(value))
        except ValueError:
            return default
    return tuple(values) if values else default


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    log_level: str

    storage_backend: str
    sqlite_path: Path
    postgres_dsn: str

    llm_base_url: str
    llm_api_key: str
    llm_model: str
    llm_temperature: float
    llm_max_tokens: int
    llm_timeout_seconds: int
    llm_max_attempts: int
    llm_retry_delays: tuple[float, ...]
    turn_timeout_seconds: float
    fallback_word_delay_seconds: float

    free_message_limit: int
    quota_window: str
    premium_user_ids: Set[str]

    session_timeout_minutes: int
    context_recent_messages: int
    context_session_history: int
    context_transcript_lines: int
    context_transcript_chars: int
    chat_history_turns: int

    default_persona_id: str
    personas_json_path: Path | None
    post_process_enabled: bool

    summary_enabled: bool
    summary_min_new_user_messages: int
    summary_min_interval_seconds: int
    summary_window_messages: int

    background_queue_size: int

    @classmethod
    def from_env(cls) -> "Settings":
        personas_path = _env_str("PERSONAS_JSON_PATH", "")
        return cls(
            host=_env_str("HOST", "127.0.0.1"),
            port=_env_int("PORT", 8000),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            storage_backend=_env_str("STORAGE_BACKEND", "sqlite", aliases=("MEMORY_BACKEND",)).lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/companion.db")).expanduser(),
            postgres_dsn=_env_str("POSTGRES_DSN", "", aliases=("MEMORY_POSTGRES_DSN",)),
            llm_base_url=_env_str("LLM_BASE_URL", "https://api.groq.com/openai/v1"),
            llm_api_key=_env_str("LLM_API_KEY", "", aliases=("GROQ_API_KEY",)),
            llm_model=_env_str("LLM_MODEL", "llama-3.3-70b-versatile"),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.7),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", 500),
            llm_timeout_seconds=_env_int("LLM_TIMEOUT_SECONDS", 60),
            llm_max_attempts=_env_int("LLM_MAX_ATTEMPTS", 3),
            llm_retry_delays=_env_float_tuple("LLM_RETRY_DELAYS", (1.0, 2.0, 3.0)),
            turn_timeout_seconds=_env_float("TURN_TIMEOUT_SECONDS", 90.0),
            fallback_word_delay_seconds=_env_float("FALLBACK_WORD_DELAY_SECONDS", 0.05),
            free_message_limit=_env_int("FREE_MESSAGE_LIMIT", 20),
            quota_window=_env_str("QUOTA_WINDOW", "total").lower(),
            premium_user_ids=_env_str_set("PREMIUM_USER_IDS"),
            session_timeout_minutes=_env_int("SESSION_TIMEOUT_MINUTES", 15),
            context_recent_messages=_env_int("CONTEXT_RECENT_MESSAGES", 30),
            context_session_history=_env_int("CONTEXT_SESSION_HISTORY", 5),
            context_transcript_lines=_env_int("CONTEXT_TRANSCRIPT_LINES", 15),
            context_transcript_chars=_env_int("CONTEXT_TRANSCRIPT_CHARS", 200),
            chat_history_turns=_env_int("CHAT_HISTORY_TURNS", 15),
            default_persona_id=_env_str("DEFAULT_PERSONA_ID", "sweet_supportive"),
            personas_json_path=Path(personas_path).expanduser() if personas_path else None,
            post_process_enabled=_env_bool("POST_PROCESS_ENABLED", False),
            summary_enabled=_env_bool("SUMMARY_ENABLED", True),
            summary_min_new_user_messages=_env_int("SUMMARY_MIN_NEW_USER_MESSAGES", 10),
            summary_min_interval_seconds=_env_int("SUMMARY_MIN_INTERVAL_SECONDS", 300),
            summary_window_messages=_env_int("SUMMARY_WINDOW_MESSAGES", 60),
            background_queue_size=_env_int("BACKGROUND_QUEUE_SIZE", 500),
        )

    def validate(self) -> None:
        if not 1 <= self.port <= 65535:
            raise ValueError("PORT must be in [1, 65535]")
        if self.storage_backend not in {"memory", "sqlite", "postgres"}:
            raise ValueError("STORAGE_BACKEND must be 'memory', 'sqlite' or 'postgres'")
        if self.storage_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("POSTGRES_DSN is required when STORAGE_BACKEND=postgres")
        if self.llm_api_key == "put_your_llm_api_key_here":
            raise ValueError("LLM_API_KEY is still placeholder")

        if self.llm_timeout_seconds < 5:
            raise ValueError("LLM_TIMEOUT_SECONDS must be >= 5")
        if self.llm_max_tokens < 0:
            raise ValueError("LLM_MAX_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.llm_temperature < 0.0 or self.llm_temperature > 2.0:
            raise ValueError("LLM_TEMPERATURE must be in [0, 2]")
        if self.llm_max_attempts < 1:
            raise ValueError("LLM_MAX_ATTEMPTS must be >= 1")
        if any(delay < 0 for delay in self.llm_retry_delays):
            raise ValueError("LLM_RETRY_DELAYS cannot contain negative values")
        if self.turn_timeout_seconds <= 0:
            raise ValueError("TURN_TIMEOUT_SECONDS must be > 0")
        if self.fallback_word_delay_seconds < 0:
            raise ValueError("FALLBACK_WORD_DELAY_SECONDS must be >= 0")

        if self.free_message_limit < 0:
            raise ValueError("FREE_MESSAGE_LIMIT must be >= 0")
        if self.quota_window not in {"total", "daily"}:
            raise ValueError("QUOTA_WINDOW must be 'total' or 'daily'")

        if self.session_timeout_minutes < 1:
            raise ValueError("SESSION_TIMEOUT_MINUTES must be >= 1")
        if self.context_recent_messages < 1:
            raise ValueError("CONTEXT_RECENT_MESSAGES must be >= 1")
        if self.context_session_history < 1:
            raise ValueError("CONTEXT_SESSION_HISTORY must be >= 1")
        if self.context_transcript_lines < 1:
            raise ValueError("CONTEXT_TRANSCRIPT_LINES must be >= 1")
        if self.context_transcript_chars < 20:
            raise ValueError("CONTEXT_TRANSCRIPT_CHARS must be >= 20")
        if self.chat_history_turns < 0:
            raise ValueError("CHAT_HISTORY_TURNS must be >= 0 (0 disables history pairs)")

        if not self.default_persona_id:
            raise ValueError("DEFAULT_PERSONA_ID cannot be empty")

        if self.summary_min_new_user_messages < 1:
            raise ValueError("SUMMARY_MIN_NEW_USER_MESSAGES must be >= 1")
        if self.summary_min_interval_seconds < 0:
            raise ValueError("SUMMARY_MIN_INTERVAL_SECONDS must be >= 0")
        if self.summary_window_messages < 6:
            raise ValueError("SUMMARY_WINDOW_MESSAGES must be >= 6")

        if self.background_queue_size < 10:
            raise ValueError("BACKGROUND_QUEUE_SIZE must be >= 10")
