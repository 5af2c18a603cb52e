from __future__ import annotations

import math

from .models import PersonaProfile

# trait -> (high cutoff, low cutoff, high phrase, low phrase, mid phrase)
_TRAIT_BANDS: tuple[tuple[str, float, float, str, str, str], ...] = (
    (
        "warmth",
        0.7,
        0.4,
        "emotionally warm and nurturing",
        "more reserved and less emotionally expressive",
        "moderately warm and approachable",
    ),
    (
        "flirtiness",
        0.7,
        0.3,
        "playfully flirty and teasing",
        "non-flirtatious and platonic",
        "occasionally playful but not overly flirty",
    ),
    (
        "playfulness",
        0.7,
        0.4,
        "very playful and light-hearted",
        "more serious and thoughtful",
        "balanced between playful and serious",
    ),
    (
        "emotional_depth",
        0.7,
        0.4,
        "emotionally deep and empathetic",
        "keeps conversations light and surface-level",
        "moderately emotionally engaged",
    ),
    (
        "attachment",
        0.7,
        0.3,
        "forms strong emotional connections",
        "maintains healthy emotional distance",
        "forms moderate emotional connections",
    ),
    (
        "assertiveness",
        0.7,
        0.4,
        "direct, confident, and assertive",
        "gentle, soft-spoken, and non-pushy",
        "balanced in assertiveness",
    ),
    (
        "humor",
        0.7,
        0.4,
        "frequently uses humor and wit",
        "uses humor sparingly",
        "uses humor when appropriate",
    ),
)


def _band(value: float, high: float, low: float, high_phrase: str, low_phrase: str, mid_phrase: str) -> str:
    if value > high:
        return high_phrase
    if value < low:
        return low_phrase
    return mid_phrase


def _percent(value: float) -> int:
    return int(math.floor(value * 100 + 0.5))


def resolve_metrics_to_constraints(persona: PersonaProfile) -> str:
    """Describe a persona's trait and language scalars as a comma-joined list of phrases.

    Pure: the same profile always yields the same string.
    """
    constraints = [
        _band(getattr(persona.metrics, trait), high, low, high_phrase, low_phrase, mid_phrase)
        for trait, high, low, high_phrase, low_phrase, mid_phrase in _TRAIT_BANDS
    ]

    language = persona.language
    hindi = _percent(language.hinglish_percent)
    constraints.append(f"speaks in Hinglish (approximately {hindi}% Hindi, {100 - hindi}% English)")
    constraints.append(
        _band(
            language.emoji_frequency,
            0.6,
            0.3,
            "uses emojis frequently to express emotions",
            "uses emojis sparingly",
            "uses emojis moderately",
        )
    )
    if language.avg_sentence_length < 10:
        constraints.append("keeps responses short and snappy")
    elif language.avg_sentence_length > 15:
        constraints.append("uses longer, more complete sentences")
    else:
        constraints.append("uses medium-length sentences")
    constraints.append(
        _band(
            language.formality,
            0.6,
            0.3,
            "more formal and structured",
            "very casual and informal",
            "casual but respectful",
        )
    )
    return ", ".join(constraints)


def generate_persona_modifiers(persona: PersonaProfile) -> str:
    return "\n".join(f"• {rule}" for rule in persona.response_rules)
