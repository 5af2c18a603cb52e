from __future__ import annotations

from typing import Iterable

from .json_loader import load_prompt_json

_DEFAULTS = {
    "known_facts_header": "=== WHAT YOU KNOW ABOUT THIS PERSON ===",
    "known_fact_labels": {
        "partner_type_one_liner": "Their ideal partner vibe",
        "top_3_traits_you_value": "Traits they value most",
        "what_you_might_work_on": "Areas they're working on",
        "love_language_guess": "Their love language seems to be",
        "communication_fit": "Communication style",
    },
    "history_header": "=== YOUR RELATIONSHIP HISTORY ===",
    "history_line_template": (
        "You've had {sessions} conversations together ({minutes} minutes, {messages} messages)"
    ),
    "transcript_header": "=== RECENT CONVERSATION CONTEXT ===",
    "transcript_intro": "Here's what you talked about recently (use this to maintain continuity):",
    "transcript_user_label": "Them",
    "transcript_assistant_label": "You",
    "guidelines": (
        "=== RESPONSE GUIDELINES ===\n"
        "1. Remember and reference past conversations naturally\n"
        "2. Ask follow-up questions about things they mentioned before\n"
        "3. Be warm and supportive, never judgmental\n"
        "4. Keep responses conversational, not too long\n"
        "5. Be encouraging about their goals and challenges"
    ),
}

SUMMARY_FIELDS = (
    "partner_type_one_liner",
    "top_3_traits_you_value",
    "what_you_might_work_on",
    "love_language_guess",
    "communication_fit",
)


def _cfg() -> dict[str, object]:
    return load_prompt_json("context.json", _DEFAULTS)


def _text(cfg: dict[str, object], key: str) -> str:
    value = cfg.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return str(_DEFAULTS[key])


def known_fact_label(field: str) -> str:
    labels = _cfg().get("known_fact_labels")
    defaults = _DEFAULTS["known_fact_labels"]
    if isinstance(labels, dict) and isinstance(labels.get(field), str):
        return str(labels[field])
    return str(defaults.get(field, field))


def build_known_facts_section(fact_lines: Iterable[str]) -> str:
    lines = [line for line in fact_lines if line]
    if not lines:
        return ""
    return "\n".join([_text(_cfg(), "known_facts_header"), *lines])


def build_history_section(sessions: int, minutes: int, messages: int) -> str:
    cfg = _cfg()
    line = _text(cfg, "history_line_template").format(sessions=sessions, minutes=minutes, messages=messages)
    return f"{_text(cfg, 'history_header')}\n{line}"


def build_transcript_section(lines: Iterable[tuple[str, str]]) -> str:
    cfg = _cfg()
    labels = {
        "user": _text(cfg, "transcript_user_label"),
        "assistant": _text(cfg, "transcript_assistant_label"),
    }
    rendered = [f"{labels.get(role, labels['assistant'])}: {text}" for role, text in lines]
    if not rendered:
        return ""
    return "\n".join([_text(cfg, "transcript_header"), _text(cfg, "transcript_intro"), "", *rendered])


def response_guidelines() -> str:
    return _text(_cfg(), "guidelines")
