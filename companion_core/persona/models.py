from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from ..common import as_float, as_int, clamp

METRIC_KEYS = (
    "warmth",
    "flirtiness",
    "playfulness",
    "emotional_depth",
    "attachment",
    "assertiveness",
    "humor",
)


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _flag(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return default


@dataclass(slots=True, frozen=True)
class PersonaMetrics:
    warmth: float = 0.5
    flirtiness: float = 0.5
    playfulness: float = 0.5
    emotional_depth: float = 0.5
    attachment: float = 0.5
    assertiveness: float = 0.5
    humor: float = 0.5

    @classmethod
    def from_dict(cls, raw: Any) -> "PersonaMetrics":
        data = _mapping(raw)
        return cls(**{key: clamp(as_float(data.get(key), 0.5)) for key in METRIC_KEYS})


@dataclass(slots=True, frozen=True)
class LanguageStyle:
    hinglish_percent: float = 0.4
    emoji_frequency: float = 0.5
    avg_sentence_length: float = 12.0
    formality: float = 0.3

    @classmethod
    def from_dict(cls, raw: Any) -> "LanguageStyle":
        data = _mapping(raw)
        return cls(
            hinglish_percent=clamp(as_float(data.get("hinglish_percent"), 0.4)),
            emoji_frequency=clamp(as_float(data.get("emoji_frequency"), 0.5)),
            avg_sentence_length=max(1.0, as_float(data.get("avg_sentence_length"), 12.0)),
            formality=clamp(as_float(data.get("formality"), 0.3)),
        )


@dataclass(slots=True, frozen=True)
class Boundaries:
    exclusivity_allowed: bool = False
    dependency_allowed: bool = False
    emotional_intensity_max: float = 0.7

    @classmethod
    def from_dict(cls, raw: Any) -> "Boundaries":
        data = _mapping(raw)
        return cls(
            exclusivity_allowed=_flag(data.get("exclusivity_allowed"), False),
            dependency_allowed=_flag(data.get("dependency_allowed"), False),
            emotional_intensity_max=clamp(as_float(data.get("emotional_intensity_max"), 0.7)),
        )


@dataclass(slots=True, frozen=True)
class MemoryPolicy:
    retain_conflicts: bool = False
    retain_emotional_events: bool = True
    memory_window: int = 6

    @classmethod
    def from_dict(cls, raw: Any) -> "MemoryPolicy":
        data = _mapping(raw)
        return cls(
            retain_conflicts=_flag(data.get("retain_conflicts"), False),
            retain_emotional_events=_flag(data.get("retain_emotional_events"), True),
            memory_window=max(0, as_int(data.get("memory_window"), 6)),
        )


@dataclass(slots=True, frozen=True)
class PersonaModifierBlock:
    tone: str = ""
    hinglish_style: str = ""
    emotional_focus: str = ""
    advice_style: str = ""
    compatibility_interpretation: str = ""
    reflective_questions: str = ""
    summary_tone: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "PersonaModifierBlock":
        data = _mapping(raw)
        return cls(**{name: str(data.get(name) or "").strip() for name in cls.__dataclass_fields__})


@dataclass(slots=True, frozen=True)
class PersonaProfile:
    id: str
    name: str
    description: str = ""
    metrics: PersonaMetrics = field(default_factory=PersonaMetrics)
    language: LanguageStyle = field(default_factory=LanguageStyle)
    boundaries: Boundaries = field(default_factory=Boundaries)
    response_rules: tuple[str, ...] = ()
    memory_policy: MemoryPolicy = field(default_factory=MemoryPolicy)
    modifier_block: PersonaModifierBlock = field(default_factory=PersonaModifierBlock)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PersonaProfile":
        persona_id = str(raw.get("id") or "").strip()
        if not persona_id:
            raise ValueError("persona id cannot be empty")
        rules = raw.get("response_rules")
        return cls(
            id=persona_id,
            name=str(raw.get("name") or persona_id).strip(),
            description=str(raw.get("description") or "").strip(),
            metrics=PersonaMetrics.from_dict(raw.get("metrics")),
            language=LanguageStyle.from_dict(raw.get("language")),
            boundaries=Boundaries.from_dict(raw.get("boundaries")),
            response_rules=tuple(str(rule).strip() for rule in rules or () if str(rule).strip())
            if isinstance(rules, (list, tuple))
            else (),
            memory_policy=MemoryPolicy.from_dict(raw.get("memory_policy")),
            modifier_block=PersonaModifierBlock.from_dict(
                raw.get("persona_modifier_block", raw.get("modifier_block"))
            ),
        )

    def summary(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "description": self.description}
