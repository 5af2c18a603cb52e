from __future__ import annotations

from pathlib import Path

import pytest
from helpers import PROJECT_ROOT  # noqa: F401

from companion_core.config import Settings

_KEYS = (
    "STORAGE_BACKEND",
    "MEMORY_BACKEND",
    "LLM_API_KEY",
    "GROQ_API_KEY",
    "FREE_MESSAGE_LIMIT",
    "QUOTA_WINDOW",
    "PREMIUM_USER_IDS",
    "LLM_RETRY_DELAYS",
    "SESSION_TIMEOUT_MINUTES",
    "POST_PROCESS_ENABLED",
    "PERSONAS_JSON_PATH",
    "PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()

    assert settings.storage_backend == "sqlite"
    assert settings.free_message_limit == 20
    assert settings.quota_window == "total"
    assert settings.llm_retry_delays == (1.0, 2.0, 3.0)
    assert settings.llm_max_attempts == 3
    assert settings.session_timeout_minutes == 15
    assert settings.chat_history_turns == 15
    assert settings.post_process_enabled is False
    assert settings.personas_json_path is None
    assert settings.llm_api_key == ""
    settings.validate()


def test_env_overrides_and_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORAGE_BACKEND", "Memory")
    monkeypatch.setenv("GROQ_API_KEY", "gsk_test")
    monkeypatch.setenv("FREE_MESSAGE_LIMIT", "1000")
    monkeypatch.setenv("QUOTA_WINDOW", "daily")
    monkeypatch.setenv("PREMIUM_USER_IDS", " vip-1, ,vip-2 ")
    monkeypatch.setenv("LLM_RETRY_DELAYS", "0.5, 1.5")
    monkeypatch.setenv("POST_PROCESS_ENABLED", "yes")
    monkeypatch.setenv("PERSONAS_JSON_PATH", "/tmp/personas.json")

    settings = Settings.from_env()

    assert settings.storage_backend == "memory"
    assert settings.llm_api_key == "gsk_test"
    assert settings.free_message_limit == 1000
    assert settings.quota_window == "daily"
    assert settings.premium_user_ids == {"vip-1", "vip-2"}
    assert settings.llm_retry_delays == (0.5, 1.5)
    assert settings.post_process_enabled is True
    assert settings.personas_json_path == Path("/tmp/personas.json")
    settings.validate()


def test_malformed_values_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FREE_MESSAGE_LIMIT", "twenty")
    monkeypatch.setenv("LLM_RETRY_DELAYS", "1,x,3")

    settings = Settings.from_env()

    assert settings.free_message_limit == 20
    assert settings.llm_retry_delays == (1.0, 2.0, 3.0)


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("STORAGE_BACKEND", "redis", "STORAGE_BACKEND"),
        ("QUOTA_WINDOW", "weekly", "QUOTA_WINDOW"),
        ("SESSION_TIMEOUT_MINUTES", "0", "SESSION_TIMEOUT_MINUTES"),
        ("PORT", "70000", "PORT"),
    ],
)
def test_validate_names_the_bad_variable(monkeypatch: pytest.MonkeyPatch, key: str, value: str, message: str) -> None:
    monkeypatch.setenv(key, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_postgres_backend_requires_dsn(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORAGE_BACKEND", "postgres")
    monkeypatch.delenv("POSTGRES_DSN", raising=False)
    monkeypatch.delenv("MEMORY_POSTGRES_DSN", raising=False)

    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        Settings.from_env().validate()
