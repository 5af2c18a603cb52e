
from .metrics import generate_persona_modifiers, resolve_metrics_to_constraints
from .models import PersonaProfile
from .post_processor import post_process
from .registry import DEFAULT_PERSONA_ID, PersonaRegistry

__all__ = [
    "DEFAULT_PERSONA_ID",
    "PersonaProfile",
    "PersonaRegistry",
    "generate_persona_modifiers",
    "post_process",
    "resolve_metrics_to_constraints",
]
