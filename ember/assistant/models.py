"""Plain value types shared by the interpretation engine."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

UrgencyLevel = Literal["CRITICAL", "URGENT", "IMPORTANT"]
PatternType = Literal["critical", "urgent", "important", "dysarthria", "aphasia", "standard"]
ActionSource = Literal["vision", "keyword", "interpreter"]

URGENCY_ORDER: tuple[UrgencyLevel, ...] = ("CRITICAL", "URGENT", "IMPORTANT")


def is_urgent(level: str | None) -> bool:
    """True for the tiers that skip confirmation (CRITICAL and URGENT)."""
    return level in ("CRITICAL", "URGENT")


@dataclass(frozen=True)
class Utterance:
    text: str
    is_final: bool = True
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SpeechPattern:
    type: PatternType
    is_fragmented: bool
    has_repeated_sounds: bool
    word_count: int
    urgency_level: UrgencyLevel | None = None
    indicators: tuple[str, ...] = ()

    @property
    def is_urgent(self) -> bool:
        return is_urgent(self.urgency_level)


@dataclass(frozen=True)
class VisualContext:
    room: str | None = None
    objects: tuple[str, ...] = ()
    people_count: int = 0
    gesture: str | None = None
    pointing_target: str | None = None
    pointing_direction: str | None = None
    context_hint: str | None = None

    @property
    def has_pointing(self) -> bool:
        return bool(self.pointing_target or self.pointing_direction)

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> VisualContext | None:
        """Build a context from a vision payload (snake_case or camelCase keys)."""
        if not isinstance(payload, dict):
            return None

        def _text(*keys: str) -> str | None:
            for key in keys:
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
            return None

        raw_objects = payload.get("objects") or []
        objects: tuple[str, ...] = ()
        if isinstance(raw_objects, list):
            objects = tuple(str(item).strip() for item in raw_objects if str(item).strip())
        try:
            people = int(payload.get("people_count", payload.get("peopleCount", 0)) or 0)
        except (TypeError, ValueError):
            people = 0
        return cls(
            room=_text("room"),
            objects=objects,
            people_count=max(0, people),
            gesture=_text("gesture"),
            pointing_target=_text("pointing_target", "pointingTarget"),
            pointing_direction=_text("pointing_direction", "pointingDirection"),
            context_hint=_text("context_hint", "contextHint"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "room": self.room,
            "objects": list(self.objects),
            "people_count": self.people_count,
            "gesture": self.gesture,
            "pointing_target": self.pointing_target,
            "pointing_direction": self.pointing_direction,
            "context_hint": self.context_hint,
        }


@dataclass(frozen=True)
class ActionCandidate:
    action_type: str
    source: ActionSource
    room: str | None = None
    device_category: str | None = None


@dataclass(frozen=True)
class UserProfile:
    name: str = "User"
    conditions: tuple[str, ...] = ()
    calibration_examples: tuple[str, ...] = ()

    def declares(self, condition: str) -> bool:
        wanted = condition.strip().lower()
        return any(item.strip().lower() == wanted for item in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "conditions": list(self.conditions),
            "calibration_examples": list(self.calibration_examples),
        }


@dataclass(frozen=True)
class Interpretation:
    original_text: str
    interpreted_text: str
    confidence: int
    category: str
    reasoning: str
    requires_confirmation: bool
    alternatives: tuple[str, ...] = ()
    urgency_level: UrgencyLevel | None = None
    action_required: str | None = None
    action: ActionCandidate | None = None
    response: str | None = None
    source: str = "interpreter"

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_text": self.original_text,
            "interpreted_text": self.interpreted_text,
            "confidence": self.confidence,
            "alternatives": list(self.alternatives),
            "category": self.category,
            "reasoning": self.reasoning,
            "requires_confirmation": self.requires_confirmation,
            "urgency_level": self.urgency_level,
            "action_required": self.action_required,
            "action": self.action.action_type if self.action else None,
            "source": self.source,
        }


@dataclass(frozen=True)
class ConversationTurn:
    role: Literal["user", "assistant"]
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "text": self.text}
