from __future__ import annotations

from typing import Sequence

from ..common import collapse_spaces
from ..models import Message
from ..persona.models import PersonaProfile
from ..prompts.chat import empty_memory_sentinel
from .classifier import CONFLICT, EMOTIONAL, TextClassifier


def adapt_memory(messages: Sequence[Message], persona: PersonaProfile, classifier: TextClassifier) -> str:
    """Filter, reorder and window a chronological history per the persona's memory policy.

    Emotional messages are moved ahead of the rest before the window is cut from the end,
    so the kept lines are not chronological once reordering happens.
    """
    policy = persona.memory_policy
    if not messages:
        return empty_memory_sentinel()

    tagged = [(message, classifier.classify(message.text)) for message in messages]
    if not policy.retain_conflicts:
        tagged = [(message, tags) for message, tags in tagged if CONFLICT not in tags]

    if policy.retain_emotional_events:
        emotional = [item for item in tagged if EMOTIONAL in item[1]]
        other = [item for item in tagged if EMOTIONAL not in item[1]]
        tagged = emotional + other

    window = max(0, policy.memory_window)
    tagged = tagged[-window:] if window else []
    if not tagged:
        return empty_memory_sentinel()
    return "\n".join(f"{message.role}: {collapse_spaces(message.text)}" for message, _ in tagged)
