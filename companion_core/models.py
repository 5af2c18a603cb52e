from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .common import format_timestamp, minutes_between, utcnow

SESSION_TYPES = ("chat", "call")
MESSAGE_ROLES = ("user", "assistant")

TAG_GENERAL = "general"
TAG_FALLBACK = "fallback"
TAG_SAFETY = "safety"
TAG_INTERRUPTED = "interrupted"
MESSAGE_TAGS = (TAG_GENERAL, TAG_FALLBACK, TAG_SAFETY, TAG_INTERRUPTED)


@dataclass(slots=True)
class Session:
    id: str
    user_id: str
    type: str
    started_at: datetime
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def duration_minutes(self, now: datetime | None = None) -> int:
        end = self.ended_at or now or utcnow()
        return max(0, minutes_between(self.started_at, end))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "startedAt": format_timestamp(self.started_at),
            "endedAt": format_timestamp(self.ended_at),
            "isActive": self.is_active,
        }


@dataclass(slots=True, frozen=True)
class Message:
    id: str
    session_id: str
    user_id: str
    role: str
    text: str
    tag: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "userId": self.user_id,
            "role": self.role,
            "tag": self.tag,
            "content": self.text,
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass(slots=True)
class SessionStats:
    session: Session
    message_count: int
    duration_minutes: int

    def to_dict(self) -> dict[str, Any]:
        payload = self.session.to_dict()
        payload["durationMinutes"] = self.duration_minutes
        payload["totalMessagesCount"] = self.message_count
        return payload


@dataclass(slots=True)
class UserProfile:
    user_id: str
    persona_id: str | None = None
    is_premium: bool = False


class SafetyReason(str, Enum):
    CRISIS = "crisis"
    EXCLUSIVITY = "exclusivity"
    DEPENDENCY = "dependency"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class SafetyVerdict:
    safe: bool
    override_response: str | None = None
    reason: SafetyReason = SafetyReason.NONE


SAFE_VERDICT = SafetyVerdict(safe=True)


@dataclass(slots=True)
class ContextBundle:
    summary: dict[str, Any] | None
    recent_messages: list[Message] = field(default_factory=list)
    session_history: list[SessionStats] = field(default_factory=list)
    system_prompt: str = ""


@dataclass(slots=True, frozen=True)
class QuotaState:
    message_count: int
    limit: int
    is_premium: bool

    @property
    def exceeded(self) -> bool:
        return not self.is_premium and self.message_count >= self.limit
