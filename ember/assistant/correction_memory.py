"""Learned cache of user-confirmed interpretations.

The orchestrator consults the store before calling the interpreter; a fuzzy
hit short-circuits the whole disambiguation round trip. Entries are only ever
written after the user explicitly confirms an interpretation.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.7
MAX_CORRECTIONS = 50
_PATTERN_STOP_WORDS = frozenset({"i", "the", "a", "an", "to", "is", "was", "are", "were"})


def _words(text: str) -> list[str]:
    return [word for word in (text or "").lower().split() if word]


def word_similarity(first: str, second: str) -> float:
    """Shared words over the length of the longer phrase."""
    left = _words(first)
    right = _words(second)
    if not left or not right:
        return 0.0
    common = [word for word in left if word in right]
    return len(common) / max(len(left), len(right))


def similar_words(first: str, second: str) -> bool:
    if abs(len(first) - len(second)) > 2:
        return False
    shorter, longer = (first, second) if len(first) < len(second) else (second, first)
    if not longer:
        return False
    matches = sum(1 for ch in shorter if ch in longer)
    return matches / len(longer) > 0.6


@dataclass(frozen=True)
class CorrectionPattern:
    missing_words: tuple[str, ...] = ()
    added_words: tuple[str, ...] = ()
    substitutions: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "missing_words": list(self.missing_words),
            "added_words": list(self.added_words),
            "substitutions": [{"from": src, "to": dst} for src, dst in self.substitutions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CorrectionPattern:
        subs = []
        for item in data.get("substitutions") or []:
            if isinstance(item, dict) and item.get("from") and item.get("to"):
                subs.append((str(item["from"]), str(item["to"])))
        return cls(
            missing_words=tuple(str(word) for word in data.get("missing_words") or []),
            added_words=tuple(str(word) for word in data.get("added_words") or []),
            substitutions=tuple(subs),
        )


def detect_pattern(original: str, corrected: str) -> CorrectionPattern:
    """Describe how a confirmed correction differs from what was said."""
    said = _words(original)
    meant = _words(corrected)
    missing = tuple(word for word in meant if word not in said and word not in _PATTERN_STOP_WORDS)
    added = tuple(word for word in said if word not in meant and len(word) > 2)
    substitutions = tuple(
        (src, dst) for src in said for dst in meant if src != dst and similar_words(src, dst)
    )
    return CorrectionPattern(missing_words=missing, added_words=added, substitutions=substitutions)


@dataclass(frozen=True)
class CorrectionEntry:
    original: str
    corrected: str
    timestamp: str
    pattern: CorrectionPattern = field(default_factory=CorrectionPattern)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": self.original,
            "corrected": self.corrected,
            "timestamp": self.timestamp,
            "pattern": self.pattern.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CorrectionEntry:
        original = data.get("original")
        corrected = data.get("corrected")
        if not isinstance(original, str) or not isinstance(corrected, str):
            raise ValueError("correction entry needs original and corrected text")
        pattern = data.get("pattern")
        return cls(
            original=original,
            corrected=corrected,
            timestamp=str(data.get("timestamp") or ""),
            pattern=CorrectionPattern.from_dict(pattern) if isinstance(pattern, dict) else CorrectionPattern(),
        )


class CorrectionStore:
    """Repository interface the orchestrator reads and writes corrections through."""

    def get(self, text: str) -> str | None:
        raise NotImplementedError

    def put(self, original: str, corrected: str) -> None:
        raise NotImplementedError


class CorrectionMemory(CorrectionStore):
    """In-memory correction store with optional JSON persistence.

    Thread-safe: every read and write holds the lock, so only one writer can
    touch the entries at a time even if the store is shared.
    """

    def __init__(
        self,
        storage_path: Path | str | None = None,
        *,
        max_entries: int = MAX_CORRECTIONS,
        threshold: float = SIMILARITY_THRESHOLD,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or LOGGER
        self._storage_path = Path(storage_path) if storage_path else None
        self._max_entries = max(1, max_entries)
        self._threshold = threshold
        self._lock = threading.Lock()
        self._entries: list[CorrectionEntry] = []
        self._load()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def entries(self) -> list[CorrectionEntry]:
        with self._lock:
            return list(self._entries)

    def get(self, text: str) -> str | None:
        """Return the first stored correction whose original is similar enough."""
        if not text or not text.strip():
            return None
        with self._lock:
            for entry in self._entries:
                if word_similarity(entry.original, text) > self._threshold:
                    return entry.corrected
        return None

    def put(self, original: str, corrected: str) -> None:
        if not original.strip() or not corrected.strip():
            return
        entry = CorrectionEntry(
            original=original,
            corrected=corrected,
            timestamp=datetime.now(UTC).isoformat(),
            pattern=detect_pattern(original, corrected),
        )
        with self._lock:
            self._entries.append(entry)
            # Oldest entries fall off first.
            del self._entries[: max(0, len(self._entries) - self._max_entries)]
            self._persist()
        self.logger.debug("[memory] Stored correction %r -> %r", original, corrected)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._persist()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            patterns = [entry.pattern for entry in self._entries]
            total = len(self._entries)
        missing = Counter(word for pattern in patterns for word in pattern.missing_words)
        subs = Counter(pair for pattern in patterns for pair in pattern.substitutions)
        return {
            "total_corrections": total,
            "common_missing_words": [word for word, _count in missing.most_common(5)],
            "common_substitutions": [
                {"from": src, "to": dst, "count": count} for (src, dst), count in subs.most_common(5)
            ],
        }

    def _persist(self) -> None:
        if self._storage_path is None:
            return
        payload = {"corrections": [entry.to_dict() for entry in self._entries]}
        try:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._storage_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_path.replace(self._storage_path)
        except OSError as exc:
            self.logger.warning("[memory] Failed to write corrections file %s: %s", self._storage_path, exc)

    def _load(self) -> None:
        if self._storage_path is None or not self._storage_path.exists():
            return
        try:
            data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            self.logger.warning("[memory] Failed to load corrections file %s: %s", self._storage_path, exc)
            return
        items = data.get("corrections", []) if isinstance(data, dict) else []
        for item in items:
            try:
                self._entries.append(CorrectionEntry.from_dict(item))
            except (AttributeError, ValueError):
                self.logger.debug("[memory] Skipping invalid correction entry: %s", item, exc_info=True)
        del self._entries[: max(0, len(self._entries) - self._max_entries)]
