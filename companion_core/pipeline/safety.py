from __future__ import annotations

import logging

from ..memory.classifier import CRISIS, DEPENDENCY, EXCLUSIVITY, TextClassifier
from ..models import SAFE_VERDICT, SafetyReason, SafetyVerdict
from ..persona.models import PersonaProfile
from ..prompts.chat import safety_override_response

logger = logging.getLogger("companion_core.safety")


def check_safety(user_message: str, persona: PersonaProfile, classifier: TextClassifier) -> SafetyVerdict:
    """Screen raw user input. Crisis always wins, then exclusivity, then dependency."""
    if not user_message or not user_message.strip():
        return SAFE_VERDICT

    tags = classifier.classify(user_message)
    if CRISIS in tags:
        reason = SafetyReason.CRISIS
    elif EXCLUSIVITY in tags and not persona.boundaries.exclusivity_allowed:
        reason = SafetyReason.EXCLUSIVITY
    elif DEPENDENCY in tags and not persona.boundaries.dependency_allowed:
        reason = SafetyReason.DEPENDENCY
    else:
        return SAFE_VERDICT

    logger.warning("[safety] override reason=%s persona=%s", reason.value, persona.id)
    return SafetyVerdict(safe=False, override_response=safety_override_response(reason.value), reason=reason)
