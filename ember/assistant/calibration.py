"""
Calibration passage alignment

Live word-level verification of a reference passage read aloud. Every
transcript update is re-aligned from scratch against the target words with a
single forward cursor and a lookahead of up to two words:

- spoken == target[cursor]       -> correct, advance 1
- spoken == target[cursor + 1]   -> skipped word incorrect, match correct, advance 2
- spoken == target[cursor + 2]   -> two skipped words incorrect, match correct, advance 3
- anything else                  -> target[cursor] incorrect (failed attempt), advance 1

Because the alignment is a pure function of the transcript, partial updates can
be coalesced or dropped without changing the final result. A duplicate word
within two positions of the cursor can be taken as a skip; that is accepted
behaviour for passages like the Rainbow Passage.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

LOGGER = logging.getLogger(__name__)

WordStatus = Literal["pending", "correct", "incorrect"]

ACCEPTANCE_THRESHOLD = 75
LOOKAHEAD = 2

RAINBOW_PASSAGE = (
    "The rainbow is a division of white light into many beautiful colors. These take the shape of a long "
    "round arch, with its path high above, and its two ends apparently beyond the horizon. There is, "
    "according to legend, a boiling pot of gold at one end. People look, but no one ever finds it. When a "
    "man looks for something beyond his reach, his friends say he is looking for the pot of gold at the end "
    "of the rainbow. Throughout the centuries, people have explained the rainbow in various ways. Some have "
    "accepted it as a miracle without physical explanation. To the Hebrews, it was a token that there would "
    "be no more universal floods."
)

_STRIP_PUNCTUATION = re.compile(r"[.,!?;:\"“”]")


class CalibrationRejectedError(RuntimeError):
    """Raised when a recording is finalized below the acceptance threshold."""

    def __init__(self, accuracy: int) -> None:
        super().__init__(f"calibration accuracy {accuracy}% is below {ACCEPTANCE_THRESHOLD}%")
        self.accuracy = accuracy


def clean_word(word: str) -> str:
    return _STRIP_PUNCTUATION.sub("", word).lower()


def prepare_target_words(passage: str) -> list[str]:
    """Punctuation-stripped, lower-cased target words for a passage."""
    return [cleaned for cleaned in (clean_word(word) for word in passage.split()) if cleaned]


def spoken_words(transcript: str) -> list[str]:
    return [cleaned for cleaned in (clean_word(word) for word in (transcript or "").split()) if cleaned]


@dataclass(frozen=True)
class AlignmentResult:
    statuses: tuple[WordStatus, ...]
    accuracy: int

    @property
    def correct_count(self) -> int:
        return sum(1 for status in self.statuses if status == "correct")

    @property
    def accepted(self) -> bool:
        return is_accepted(self.accuracy)


def is_accepted(accuracy: float) -> bool:
    return accuracy >= ACCEPTANCE_THRESHOLD


def accuracy_percent(statuses: Sequence[WordStatus]) -> int:
    if not statuses:
        return 0
    correct = sum(1 for status in statuses if status == "correct")
    total = len(statuses)
    # Half rounds up (74.5 -> 75), in exact integer arithmetic.
    return (correct * 200 + total) // (2 * total)


def align_words(target: Sequence[str], spoken: Sequence[str]) -> AlignmentResult:
    """Align spoken words against the target with the greedy cursor walk."""
    statuses: list[WordStatus] = ["pending"] * len(target)
    cursor = 0
    for word in spoken:
        if cursor >= len(target):
            break
        if not word:
            continue
        for offset in range(LOOKAHEAD + 1):
            index = cursor + offset
            if index < len(target) and word == target[index]:
                for skipped in range(cursor, index):
                    statuses[skipped] = "incorrect"
                statuses[index] = "correct"
                cursor = index + 1
                break
        else:
            statuses[cursor] = "incorrect"
            cursor += 1
    return AlignmentResult(statuses=tuple(statuses), accuracy=accuracy_percent(statuses))


@dataclass(frozen=True)
class CalibrationResult:
    passage: str
    transcript: str
    accuracy: int
    duration_sec: float


class CalibrationSession:
    """One recording attempt of a calibration passage."""

    def __init__(
        self,
        passage: str = RAINBOW_PASSAGE,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.passage = passage
        self.display_words = passage.split()
        self.target_words = prepare_target_words(passage)
        self.logger = logger or LOGGER
        self._clock = clock
        self._started_at: float | None = None
        self._stopped_at: float | None = None
        self._transcript = ""
        self._result = align_words(self.target_words, [])

    @property
    def result(self) -> AlignmentResult:
        return self._result

    @property
    def statuses(self) -> tuple[WordStatus, ...]:
        return self._result.statuses

    @property
    def accuracy(self) -> int:
        return self._result.accuracy

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def duration_sec(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return max(0.0, end - self._started_at)

    def start(self) -> None:
        self._started_at = self._clock()
        self._stopped_at = None

    def stop(self) -> None:
        if self._started_at is not None and self._stopped_at is None:
            self._stopped_at = self._clock()

    def update(self, transcript: str) -> AlignmentResult:
        """Re-align the full transcript so far."""
        if self._started_at is None:
            self.start()
        self._transcript = transcript or ""
        self._result = align_words(self.target_words, spoken_words(self._transcript))
        return self._result

    def rerecord(self) -> None:
        self._transcript = ""
        self._started_at = None
        self._stopped_at = None
        self._result = align_words(self.target_words, [])

    def finalize(self) -> CalibrationResult:
        self.stop()
        accuracy = self._result.accuracy
        if not is_accepted(accuracy):
            self.logger.info("[calibration] Recording rejected at %d%%", accuracy)
            raise CalibrationRejectedError(accuracy)
        self.logger.info("[calibration] Recording accepted at %d%%", accuracy)
        return CalibrationResult(
            passage=self.passage,
            transcript=self._transcript,
            accuracy=accuracy,
            duration_sec=self.duration_sec,
        )
