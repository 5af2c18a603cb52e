from __future__ import annotations

import json
from typing import Iterable

from .json_loader import load_prompt_json

_DEFAULTS = {
    "schema_hint_object": {
        "partner_type_one_liner": "string",
        "top_3_traits_you_value": ["string", "string", "string"],
        "what_you_might_work_on": ["string"],
        "love_language_guess": "string",
        "communication_fit": "string",
        "summary_text": "string",
    },
    "system_prompt": (
        "You maintain a compact relationship profile of a user talking to an AI companion. "
        "Read the dialogue and describe what the user values in a partner, the traits they appreciate, "
        "areas they might work on, their likely love language and their communication style. "
        "Only use what the dialogue supports. Keep every field short and kind. "
        "If the previous profile is still accurate, keep its wording."
    ),
    "user_prompt_template": (
        "Previous profile:\n{previous_profile}\n\n"
        "Dialogue (oldest -> newest):\n{dialogue_lines}\n\n"
        "Return the updated profile as JSON."
    ),
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("summary.json", _DEFAULTS)


def summary_schema_hint() -> str:
    schema = _cfg().get("schema_hint_object")
    if not isinstance(schema, dict):
        schema = _DEFAULTS["schema_hint_object"]
    return json.dumps(schema, ensure_ascii=False, separators=(",", ":"))


def build_summary_system_prompt() -> str:
    return str(_cfg().get("system_prompt") or _DEFAULTS["system_prompt"])


def build_summary_user_prompt(previous_profile: dict[str, object] | None, dialogue_lines: Iterable[str]) -> str:
    joined = "\n".join(str(line) for line in dialogue_lines if str(line))
    previous = json.dumps(previous_profile, ensure_ascii=False) if previous_profile else "(none)"
    template = str(_cfg().get("user_prompt_template") or _DEFAULTS["user_prompt_template"])
    return template.format(previous_profile=previous, dialogue_lines=joined or "(no messages)")
