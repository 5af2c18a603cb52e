from __future__ import annotations

from typing import Dict, List, Sequence

from ..persona.metrics import generate_persona_modifiers, resolve_metrics_to_constraints
from ..persona.models import PersonaProfile
from ..prompts.chat import (
    base_prompt as default_base_prompt,
    base_safety_rules,
    build_memory_block,
    build_persona_constraints_block,
    build_persona_mode_block,
    build_persona_rules_block,
)


def compose_prompt(
    persona: PersonaProfile,
    memory: str,
    user_message: str,
    base_prompt: str | None = None,
    *,
    context_fragment: str = "",
    history: Sequence[Dict[str, str]] = (),
) -> List[Dict[str, str]]:
    """Build the ordered message list for the completion request.

    The system message is base prompt (plus context), safety rules, persona block,
    then memory. ``history`` pairs follow it and the raw user turn always comes last.
    """
    block = persona.modifier_block
    base = default_base_prompt() if base_prompt is None else base_prompt
    parts = [base.strip()]
    if context_fragment.strip():
        parts.append(context_fragment.strip())
    parts.append(base_safety_rules().strip())
    parts.append(
        build_persona_mode_block(
            name=persona.name,
            description=persona.description,
            tone=block.tone,
            hinglish_style=block.hinglish_style,
            emotional_focus=block.emotional_focus,
            advice_style=block.advice_style,
            compatibility_interpretation=block.compatibility_interpretation,
            reflective_questions=block.reflective_questions,
            summary_tone=block.summary_tone,
        )
    )
    parts.append(build_persona_constraints_block(resolve_metrics_to_constraints(persona)))
    modifiers = generate_persona_modifiers(persona)
    if modifiers:
        parts.append(build_persona_rules_block(modifiers))
    parts.append(build_memory_block(memory))

    messages: List[Dict[str, str]] = [{"role": "system", "content": "\n\n".join(part for part in parts if part)}]
    messages.extend({"role": item["role"], "content": item["content"]} for item in history)
    messages.append({"role": "user", "content": user_message})
    return messages
