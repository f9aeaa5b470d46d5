"""
Device-control intent matching

Resolves a discrete smart-home action from a short spoken phrase, optionally
fused with a pointing gesture reported by the vision collaborator.

Phase 1 (vision): the pointing target (or an upward pointing direction) picks a
device category and the command verb picks the action. Any hit here wins.

Phase 2 (keywords): the ordered category table is scanned against both the
raw and the stutter-normalized phrase. The first category with a keyword hit
wins, even if none of its sub-actions match, so "lights" always beats "tv"
when a phrase mentions both.

Keywords of two characters or fewer ("on", "tv", "li") only match whole
tokens; longer keywords match anywhere in the text so clipped or stuttered
forms like "ligh" and "li-li" still register.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterable

from ember.utils import tokenize

from .models import ActionCandidate
from .stutter import normalize_stutter

LOGGER = logging.getLogger(__name__)

ACTION_LABELS: dict[str, str] = {
    "lights_on": "Turn lights on",
    "lights_off": "Turn lights off",
    "lights_bright": "Increase brightness",
    "lights_dim": "Decrease brightness",
    "temp_up": "Increase temperature",
    "temp_down": "Decrease temperature",
    "tv_on": "Turn TV on",
    "tv_off": "Turn TV off",
    "volume_up": "Increase volume",
    "volume_down": "Decrease volume",
    "door_lock": "Lock the door",
    "door_unlock": "Unlock the door",
}

# Pointing target -> device category, scanned in order.
TARGET_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("lights", ("ceiling", "light", "lamp", "bulb", "chandelier", "fixture", "switch", "fan")),
    ("entertainment", ("tv", "television", "screen", "monitor", "speaker", "soundbar", "remote")),
    ("thermostat", ("thermostat", "ac", "air condition", "heater", "heating", "cooling")),
    ("locks", ("door", "lock", "entrance", "gate")),
)

# Category -> ordered (command verb, action) pairs used with a pointing gesture.
VISION_ACTIONS: dict[str, tuple[tuple[str, str], ...]] = {
    "lights": (("on", "lights_on"), ("off", "lights_off"), ("more", "lights_bright"), ("less", "lights_dim")),
    "entertainment": (("on", "tv_on"), ("off", "tv_off"), ("more", "volume_up"), ("less", "volume_down")),
    "thermostat": (("more", "temp_up"), ("on", "temp_up"), ("less", "temp_down"), ("off", "temp_down")),
    "locks": (("unlock", "door_unlock"), ("lock", "door_lock"), ("on", "door_lock"), ("off", "door_unlock")),
}

# Keyword fallback: (category, device category, category keywords, ordered sub-actions).
KEYWORD_CATEGORIES: tuple[tuple[str, str, tuple[str, ...], tuple[tuple[str, tuple[str, ...]], ...]], ...] = (
    (
        "lights",
        "lights",
        ("light", "lights", "li-li", "l-l-", "lite", "ligh", "li"),
        (
            ("lights_on", ("on", "turn on")),
            ("lights_off", ("off", "turn off")),
            ("lights_bright", ("bright", "brighter")),
            ("lights_dim", ("dim", "darker")),
        ),
    ),
    (
        "tv",
        "entertainment",
        ("tv", "television", "t-t-"),
        (
            ("tv_on", ("on", "turn on")),
            ("tv_off", ("off", "turn off")),
        ),
    ),
    (
        "temperature",
        "thermostat",
        ("temperature", "thermostat", "temp"),
        (
            ("temp_up", ("up", "warmer", "hotter")),
            ("temp_down", ("down", "cooler", "colder")),
        ),
    ),
    (
        "lock",
        "locks",
        ("lock", "door"),
        (
            ("door_unlock", ("unlock",)),
            ("door_lock", ("lock",)),
        ),
    ),
)

ACTION_CATEGORIES: dict[str, str] = {
    action: category for category, pairs in VISION_ACTIONS.items() for _verb, action in pairs
}

_ON_COMMAND = re.compile(r"^(on|turn\s*on|switch\s*on|open)$")
_OFF_COMMAND = re.compile(r"^(off|turn\s*off|switch\s*off|close|stop)$")
_MORE_COMMAND = re.compile(r"^(bright|brighter|up|more|louder)$")
_LESS_COMMAND = re.compile(r"^(dim|dimmer|down|less|quieter|lower)$")


def keyword_in(text: str, tokens: Collection[str], keyword: str) -> bool:
    """Short keywords match whole tokens, longer ones match as substrings."""
    if len(keyword) <= 2:
        return keyword in tokens
    return keyword in text


def _any_keyword(texts: Iterable[tuple[str, Collection[str]]], keywords: Iterable[str]) -> bool:
    views = list(texts)
    return any(keyword_in(text, tokens, keyword) for keyword in keywords for text, tokens in views)


def device_category_for_target(target: str | None) -> str | None:
    if not target:
        return None
    lowered = target.lower()
    tokens = set(tokenize(lowered))
    for category, keywords in TARGET_CATEGORIES:
        if any(keyword_in(lowered, tokens, keyword) for keyword in keywords):
            return category
    return None


def command_verbs(command: str) -> set[str]:
    """Classify a short command into the verbs the vision table understands."""
    lowered = command.lower().strip()
    tokens = set(tokenize(lowered))
    verbs: set[str] = set()
    if _ON_COMMAND.match(lowered) or "turn on" in lowered:
        verbs.add("on")
    if _OFF_COMMAND.match(lowered) or "turn off" in lowered:
        verbs.add("off")
    if _MORE_COMMAND.match(lowered):
        verbs.add("more")
    if _LESS_COMMAND.match(lowered):
        verbs.add("less")
    if "unlock" in tokens:
        verbs.add("unlock")
    if "lock" in tokens or "locked" in tokens:
        verbs.add("lock")
    return verbs


def match_visual_action(
    command: str,
    pointing_target: str | None,
    pointing_direction: str | None,
) -> tuple[str, str] | None:
    """Return (action, device category) for a command plus pointing gesture."""
    category = device_category_for_target(pointing_target)
    if category is None and (pointing_direction or "").strip().lower() == "up":
        category = "lights"
    if category is None:
        return None
    verbs = command_verbs(command) | command_verbs(normalize_stutter(command))
    for verb, action in VISION_ACTIONS[category]:
        if verb in verbs:
            return action, category
    return None


def match_keyword_action(phrase: str) -> tuple[str, str] | None:
    """Return (action, device category) from the ordered keyword table."""
    lowered = phrase.lower()
    normalized = normalize_stutter(lowered)
    views = [(lowered, set(tokenize(lowered))), (normalized, set(tokenize(normalized)))]
    for category, device_category, keywords, sub_actions in KEYWORD_CATEGORIES:
        if not _any_keyword(views, keywords):
            continue
        for action, action_keywords in sub_actions:
            if _any_keyword(views, action_keywords):
                return action, device_category
        LOGGER.debug("[intent] %r matched category %s but no sub-action", phrase, category)
        return None
    return None


def match_action(
    phrase: str,
    *,
    pointing_target: str | None = None,
    pointing_direction: str | None = None,
    room: str | None = None,
    available_categories: Collection[str] | None = None,
) -> ActionCandidate | None:
    """Resolve a device action, vision first and keywords second.

    When ``available_categories`` is given, the candidate only carries a device
    category that has at least one configured device.
    """
    if not phrase or not phrase.strip():
        return None

    def _category(category: str) -> str | None:
        if available_categories is None or category in available_categories:
            return category
        return None

    if pointing_target or pointing_direction:
        visual = match_visual_action(phrase, pointing_target, pointing_direction)
        if visual:
            action, category = visual
            LOGGER.debug(
                "[intent] Pointing at %s resolved %r to %s",
                pointing_target or pointing_direction,
                phrase,
                action,
            )
            return ActionCandidate(action_type=action, source="vision", room=room, device_category=_category(category))

    keyword = match_keyword_action(phrase)
    if keyword:
        action, category = keyword
        return ActionCandidate(action_type=action, source="keyword", room=room, device_category=_category(category))
    return None
