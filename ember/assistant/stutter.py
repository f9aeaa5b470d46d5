"""
Stutter artifact normalization

Cleans repeated-syllable and repeated-word artifacts that speech-to-text
produces for stuttered speech before any matching happens.

Passes, applied in order:
- Repeated 1-2 letter syllables: "li-li-light" -> "light"
- Repeated single letters: "l-l-light" -> "light"
- Short hyphenated prefixes: "li-light" -> "light"
- Adjacent duplicate words: "light light on" -> "light on"

Every pass only ever removes text, so the pass sequence is repeated until
nothing changes. That makes normalize_stutter idempotent for any input,
including chains like "li-li-li-light" that a single sweep leaves half done.
"""

from __future__ import annotations

import re

_REPEATED_SYLLABLE = re.compile(r"\b(\w{1,2})-\1-(\w+)", re.IGNORECASE)
_REPEATED_LETTER = re.compile(r"\b(\w)-\1-(\w+)", re.IGNORECASE)
_SHORT_PREFIX = re.compile(r"\b(\w{1,2})-(\w+)", re.IGNORECASE)
_DUPLICATE_WORD = re.compile(r"\b(\w+)\s+\1\b", re.IGNORECASE)

_PASSES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_REPEATED_SYLLABLE, r"\2"),
    (_REPEATED_LETTER, r"\2"),
    (_SHORT_PREFIX, r"\2"),
    (_DUPLICATE_WORD, r"\1"),
)


def _single_sweep(text: str) -> str:
    for pattern, replacement in _PASSES:
        text = pattern.sub(replacement, text)
    return text


def normalize_stutter(text: str | None) -> str:
    """Collapse stutter artifacts until the text stops changing."""
    if not text:
        return ""
    current = text
    while True:
        updated = _single_sweep(current)
        if updated == current:
            return current
        current = updated


def has_stutter_artifacts(text: str | None) -> bool:
    """Whether normalization would change the text."""
    if not text:
        return False
    return normalize_stutter(text) != text
