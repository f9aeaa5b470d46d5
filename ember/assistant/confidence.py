"""Confidence scoring for candidate interpretations."""

from __future__ import annotations

from collections.abc import Iterable

from ember.utils import tokenize

from .models import SpeechPattern, UrgencyLevel, is_urgent

MIN_CONFIDENCE = 10
MAX_CONFIDENCE = 99
URGENT_FLOOR = 85
NEUTRAL_CONFIDENCE = 50
MEMORY_CONFIDENCE = 95
CONFIRMATION_THRESHOLD = 80


def _clamp(value: int) -> int:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


def visual_overlap(objects: Iterable[str], text: str) -> bool:
    """True when any detected object name appears in the interpreted text."""
    lowered = (text or "").lower()
    if not lowered:
        return False
    tokens = set(tokenize(lowered))
    for item in objects:
        name = (item or "").strip().lower()
        if not name:
            continue
        if name in tokens or (" " in name and name in lowered):
            return True
    return False


def local_confidence(
    pattern: SpeechPattern,
    interpreted_text: str,
    *,
    visual_match: bool = False,
    history_length: int = 0,
    urgency_level: UrgencyLevel | None = None,
) -> int:
    score = NEUTRAL_CONFIDENCE
    if visual_match:
        score += 20
    if history_length > 0:
        score += 10
    if 2 <= len(tokenize(interpreted_text)) <= 15:
        score += 10
    if pattern.type == "standard":
        score += 10
    if pattern.is_fragmented:
        score -= 10
    if urgency_level is not None:
        score += 15
    return _clamp(score)


def combine_confidence(local: int, external: int | None, urgency_level: UrgencyLevel | None) -> int:
    """Merge the interpreter's own confidence with the local score.

    Calm input is capped by the local score. Urgent input (CRITICAL or URGENT)
    gets a floor of 85 instead.
    """
    if is_urgent(urgency_level):
        claimed = URGENT_FLOOR if external is None else int(external)
        return min(MAX_CONFIDENCE, max(claimed, URGENT_FLOOR))
    claimed = NEUTRAL_CONFIDENCE if external is None else int(external)
    return _clamp(min(claimed, local))


def score_confidence(
    pattern: SpeechPattern,
    interpreted_text: str,
    *,
    external: int | None = None,
    objects: Iterable[str] = (),
    history_length: int = 0,
) -> int:
    urgency = pattern.urgency_level
    local = local_confidence(
        pattern,
        interpreted_text,
        visual_match=visual_overlap(objects, interpreted_text),
        history_length=history_length,
        urgency_level=urgency,
    )
    return combine_confidence(local, external, urgency)


def requires_confirmation(confidence: int, pattern: SpeechPattern) -> bool:
    if pattern.is_urgent:
        return False
    return confidence < CONFIRMATION_THRESHOLD or pattern.is_fragmented
