from __future__ import annotations

from typing import Iterable, Mapping, Protocol

from ..prompts.json_loader import load_prompt_json

CRISIS = "crisis"
EXCLUSIVITY = "exclusivity"
DEPENDENCY = "dependency"
CONFLICT = "conflict"
EMOTIONAL = "emotional"

TAGS = (CRISIS, EXCLUSIVITY, DEPENDENCY, CONFLICT, EMOTIONAL)

_DEFAULTS = {
    "patterns": {
        CRISIS: [
            "kill myself",
            "end it all",
            "end my life",
            "suicide",
            "want to die",
            "not worth living",
            "no point",
            "khatam karna",
            "mar jana",
            "zindagi khatam",
        ],
        EXCLUSIVITY: [
            "i only need you",
            "you're my only",
            "only you",
            "just you",
            "only friend",
            "only person",
            "sirf tum",
            "bas tum",
            "tum hi",
        ],
        DEPENDENCY: [
            "can't live without",
            "need you",
            "depend on you",
            "you're everything",
            "you're my life",
            "tumhare bina nahi",
            "tum hi sab kuch ho",
            "tumhare bina zindagi",
        ],
        CONFLICT: [
            "fight",
            "argue",
            "disagree",
            "wrong",
            "stupid",
            "hate",
            "angry",
            "mad",
            "upset with",
            "frustrated",
            "annoyed",
            "laddai",
            "jhagda",
            "galat",
            "bekar",
        ],
        EMOTIONAL: [
            "love",
            "miss",
            "care",
            "feel",
            "emotion",
            "sad",
            "happy",
            "excited",
            "nervous",
            "anxious",
            "worried",
            "scared",
            "pyaar",
            "yaad",
            "dil",
            "mann",
        ],
    }
}


class TextClassifier(Protocol):
    def classify(self, text: str) -> frozenset[str]:
        ...


def _normalize(text: str) -> str:
    # Curly apostrophes from mobile keyboards should still hit "can't" / "you're".
    return (text or "").replace("’", "'").casefold()


class KeywordClassifier:
    """Case-insensitive substring matcher over per-tag keyword lists."""

    def __init__(self, patterns: Mapping[str, Iterable[str]]) -> None:
        self.patterns: dict[str, tuple[str, ...]] = {
            tag: tuple(_normalize(str(item)) for item in values if str(item).strip())
            for tag, values in patterns.items()
        }

    @classmethod
    def default(cls) -> "KeywordClassifier":
        cfg = load_prompt_json("classifier.json", _DEFAULTS)
        patterns = cfg.get("patterns")
        if not isinstance(patterns, dict):
            patterns = _DEFAULTS["patterns"]
        cleaned = {tag: values for tag, values in patterns.items() if isinstance(values, list)}
        return cls(cleaned)

    def classify(self, text: str) -> frozenset[str]:
        lowered = _normalize(text)
        if not lowered:
            return frozenset()
        return frozenset(tag for tag, keywords in self.patterns.items() if any(k in lowered for k in keywords))
