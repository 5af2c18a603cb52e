from __future__ import annotations

import re

from .models import PersonaProfile

_EMOJI_RE = re.compile(
    "["
    "☀-➿"
    "\U0001f300-\U0001f64f"
    "\U0001f680-\U0001f6ff"
    "\U0001f900-\U0001f9ff"
    "]"
)

_EMOTIONAL_WORD_EMOJI = (
    ("happy", "😊"),
    ("sad", "😢"),
    ("love", "💕"),
    ("miss", "💔"),
    ("excited", "🎉"),
    ("good", "👍"),
    ("great", "✨"),
    ("thanks", "🙏"),
    ("thank you", "🙏"),
    ("night", "🌙"),
    ("morning", "☀️"),
    ("sleep", "😴"),
)

_CONTRACTIONS = (
    (r"\bI am\b", "I'm"),
    (r"\byou are\b", "you're"),
    (r"\bdo not\b", "don't"),
    (r"\bcannot\b", "can't"),
)

_EXPANSIONS = (
    (r"\bI'm\b", "I am"),
    (r"\byou're\b", "you are"),
    (r"\bdon't\b", "do not"),
    (r"\bcan't\b", "cannot"),
)


def _adjust_emojis(text: str, frequency: float) -> str:
    if frequency < 0.3:
        return re.sub(r"[ \t]{2,}", " ", _EMOJI_RE.sub("", text)).strip()
    if frequency > 0.7:
        for word, emoji in _EMOTIONAL_WORD_EMOJI:
            pattern = re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
            match = pattern.search(text)
            if match is None or emoji in text:
                continue
            # one emoji per reply, after the first matching word
            return f"{text[: match.end()]} {emoji}{text[match.end():]}"
    return text


def _adjust_sentence_length(text: str, avg_length: float) -> str:
    if avg_length >= 10:
        return text
    sentences = [part.strip() for part in re.split(r"[.!?]+", text) if part.strip()]
    if not any(len(sentence.split()) > 12 for sentence in sentences):
        return text
    shortened: list[str] = []
    for sentence in sentences:
        words = sentence.split()
        if len(words) > 12:
            mid = len(words) // 2
            shortened.append(" ".join(words[:mid]))
            shortened.append(" ".join(words[mid:]))
        else:
            shortened.append(sentence)
    return ". ".join(shortened) + "."


def _adjust_formality(text: str, formality: float) -> str:
    if formality < 0.3:
        rules = _CONTRACTIONS
    elif formality > 0.6:
        rules = _EXPANSIONS
    else:
        return text
    for pattern, replacement in rules:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
    return text


def post_process(text: str, persona: PersonaProfile) -> str:
    """Shape a finished reply toward the persona's emoji, sentence-length and formality style."""
    if not text:
        return text
    processed = _adjust_emojis(text, persona.language.emoji_frequency)
    processed = _adjust_sentence_length(processed, persona.language.avg_sentence_length)
    processed = _adjust_formality(processed, persona.language.formality)
    return processed.strip()
