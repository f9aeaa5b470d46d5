"""
Speech pattern classification

Labels an utterance with an urgency tier and a disorder-pattern type.

Features:
- Urgency detection: three ordered keyword tiers (CRITICAL, URGENT, IMPORTANT);
  the first tier with any hit wins
- Fragmentation detection: pause markers, runs of very short tokens, and a
  trailing bare action verb
- Pattern type resolution from the fragmentation flag and the conditions the
  user profile declares
- Aphasia indicators: a finer-grained breakdown used for reasoning text and
  for the disambiguation prompt

Keywords match whole-token sequences on both the raw and the stutter-normalized
text, so "hel" fires on "hel pai bad" but not inside "hello".
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ember.utils import tokenize

from .models import PatternType, SpeechPattern, UrgencyLevel
from .stutter import normalize_stutter

URGENCY_TIERS: tuple[tuple[UrgencyLevel, tuple[str, ...]], ...] = (
    (
        "CRITICAL",
        (
            "can't breathe",
            "cant breathe",
            "cannot breathe",
            "can not breathe",
            "breathe",
            "breathing",
            "choking",
            "chest",
            "chest pain",
            "heart attack",
            "stroke",
            "dying",
            "unconscious",
            "seizure",
            "bleeding",
            "overdose",
            "emergency",
            "911",
        ),
    ),
    (
        "URGENT",
        (
            "help",
            "hel",
            "h-h-help",
            "he-help",
            "pain",
            "pai",
            "hurt",
            "hurts",
            "fall",
            "fell",
            "fallen",
            "stuck",
            "can't move",
            "cant move",
            "can't get up",
            "bathroom",
            "toilet",
            "sick",
            "dizzy",
        ),
    ),
    (
        "IMPORTANT",
        (
            "hungry",
            "thirsty",
            "water",
            "food",
            "cold",
            "hot",
            "tired",
            "uncomfortable",
            "medication",
            "medicine",
            "pill",
            "pills",
            "blanket",
            "pillow",
            "reposition",
        ),
    ),
)

ACTION_VERBS: frozenset[str] = frozenset(
    {
        "want",
        "need",
        "get",
        "go",
        "give",
        "take",
        "make",
        "put",
        "see",
        "find",
        "come",
        "bring",
        "eat",
        "drink",
        "open",
        "close",
        "call",
        "turn",
        "stop",
        "start",
    }
)

FILLER_WORDS: frozenset[str] = frozenset({"um", "uh", "er", "ah", "like", "well", "so"})
CONCEPT_STOP_WORDS: frozenset[str] = frozenset(
    {
        "the",
        "a",
        "an",
        "is",
        "are",
        "was",
        "were",
        "to",
        "and",
        "or",
        "but",
        "in",
        "on",
        "at",
        "for",
        "with",
    }
    | FILLER_WORDS
)

_PAUSE_MARKER = re.compile(r"\.{2,}|…|\s{3,}")
VERY_SHORT_TOKEN = 2
SHORT_RUN_LENGTH = 3


def _contains_phrase(tokens: Sequence[str], phrase: str) -> bool:
    needle = tokenize(phrase)
    if not needle:
        return False
    width = len(needle)
    return any(list(tokens[index : index + width]) == needle for index in range(len(tokens) - width + 1))


def detect_urgency(raw: str, normalized: str | None = None) -> UrgencyLevel | None:
    """Scan the urgency tiers in priority order and return the first tier that hits."""
    token_sets = [tokenize(raw)]
    if normalized is not None:
        token_sets.append(tokenize(normalized))
    for level, keywords in URGENCY_TIERS:
        for keyword in keywords:
            if any(_contains_phrase(tokens, keyword) for tokens in token_sets):
                return level
    return None


def count_pause_markers(text: str) -> int:
    return len(_PAUSE_MARKER.findall(text or ""))


def _letters(token: str) -> str:
    return "".join(ch for ch in token if ch.isalpha())


def has_short_token_run(tokens: Sequence[str], *, max_len: int = VERY_SHORT_TOKEN, run: int = SHORT_RUN_LENGTH) -> bool:
    streak = 0
    for token in tokens:
        letters = _letters(token)
        if letters and len(letters) <= max_len:
            streak += 1
            if streak >= run:
                return True
        else:
            streak = 0
    return False


def ends_with_bare_verb(tokens: Sequence[str]) -> bool:
    return bool(tokens) and tokens[-1] in ACTION_VERBS


def is_fragmented(raw: str, normalized: str | None = None) -> bool:
    """Fragmented speech: repeated pauses, clipped token runs, or a dangling verb."""
    if count_pause_markers(raw) >= 2:
        return True
    tokens = tokenize(normalized if normalized is not None else raw)
    return has_short_token_run(tokens) or ends_with_bare_verb(tokens)


def _has_adjacent_repeat(tokens: Sequence[str]) -> bool:
    return any(tokens[index] == tokens[index + 1] for index in range(len(tokens) - 1))


def resolve_pattern_type(fragmented: bool, conditions: Iterable[str]) -> PatternType:
    """Aphasia beats dysarthria when fragmented; an undeclared fragment defaults to aphasia."""
    declared = {item.strip().lower() for item in conditions}
    if fragmented and "aphasia" in declared:
        return "aphasia"
    if "dysarthria" in declared:
        return "dysarthria"
    if fragmented:
        return "aphasia"
    return "standard"


def classify_speech(raw: str, normalized: str | None = None, conditions: Iterable[str] = ()) -> SpeechPattern:
    if normalized is None:
        normalized = normalize_stutter(raw)
    urgency = detect_urgency(raw, normalized)
    fragmented = is_fragmented(raw, normalized)
    raw_tokens = tokenize(raw)
    repeated = normalized != raw or _has_adjacent_repeat(raw_tokens)
    if urgency is not None:
        pattern_type: PatternType = urgency.lower()  # type: ignore[assignment]
    else:
        pattern_type = resolve_pattern_type(fragmented, conditions)
    indicators = detect_aphasia_indicators(raw)
    return SpeechPattern(
        type=pattern_type,
        is_fragmented=fragmented,
        has_repeated_sounds=repeated,
        word_count=len(tokenize(normalized)),
        urgency_level=urgency,
        indicators=tuple(name for name, present in indicators.as_dict().items() if present),
    )


@dataclass(frozen=True)
class AphasiaIndicators:
    multiple_pauses: bool
    short_fragments: bool
    missing_articles: bool
    action_verb_only: bool
    low_word_count: bool
    filler_words: bool
    word_repetition: bool

    def as_dict(self) -> dict[str, bool]:
        return {
            "multiple_pauses": self.multiple_pauses,
            "short_fragments": self.short_fragments,
            "missing_articles": self.missing_articles,
            "action_verb_only": self.action_verb_only,
            "low_word_count": self.low_word_count,
            "filler_words": self.filler_words,
            "word_repetition": self.word_repetition,
        }

    @property
    def count(self) -> int:
        return sum(1 for value in self.as_dict().values() if value)

    @property
    def likely_aphasia(self) -> bool:
        return self.count >= 2

    @property
    def subtype(self) -> str:
        """Broca-style non-fluent, Wernicke-style fluent, anomic, global, or normal."""
        if self.count < 2:
            return "normal"
        if self.missing_articles and self.low_word_count and not self.filler_words:
            return "non-fluent"
        if self.filler_words and not self.low_word_count:
            return "fluent"
        if self.multiple_pauses and self.filler_words:
            return "anomic"
        if self.low_word_count:
            return "global"
        return "non-fluent"


def detect_aphasia_indicators(text: str) -> AphasiaIndicators:
    tokens = tokenize(text)
    words = [_letters(token) for token in tokens]
    return AphasiaIndicators(
        multiple_pauses=count_pause_markers(text) >= 1,
        short_fragments=sum(1 for word in words if len(word) <= 3) >= 3,
        missing_articles=len(tokens) > 2 and not any(token in {"the", "a", "an"} for token in tokens),
        action_verb_only=bool(tokens) and tokens[0] in ACTION_VERBS,
        low_word_count=0 < len(tokens) < 5,
        filler_words=any(token in FILLER_WORDS for token in tokens) or _contains_phrase(tokens, "you know"),
        word_repetition=any(
            len(words[index]) > 2 and words[index] == words[index + 1] for index in range(len(words) - 1)
        ),
    )


def extract_key_concepts(text: str) -> list[str]:
    """Content words in first-seen order, without fillers, articles or duplicates."""
    concepts: list[str] = []
    for token in tokenize(text):
        word = _letters(token)
        if len(word) > 2 and word not in CONCEPT_STOP_WORDS and word not in concepts:
            concepts.append(word)
    return concepts
