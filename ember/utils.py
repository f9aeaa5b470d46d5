"""
Shared utility functions for parsing and data manipulation

Provides common helpers for:
- String parsing: Environment variable conversion (parse_bool, parse_int, parse_float, split_csv)
- Text helpers: Tokenizing transcripts, masking phone numbers for logs
- Async utilities: Timeout wrappers

These utilities are used throughout Ember for configuration parsing and data handling.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable
from typing import Any

_TOKEN_RE = re.compile(r"[\w'-]+")


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Interpret env-style booleans."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Best-effort int parser with fallback."""
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value: str | None, default: float) -> float:
    """Best-effort float parser with fallback."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def split_csv(value: str | None) -> list[str]:
    """Split comma-separated strings into trimmed tokens."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def tokenize(text: str | None) -> list[str]:
    """Lowercase word tokens, keeping apostrophes and hyphens inside words."""
    if not text:
        return []
    lowered = text.lower().replace("’", "'")
    return [token.strip("'-") for token in _TOKEN_RE.findall(lowered) if token.strip("'-")]


def mask_phone(phone: str | None) -> str:
    """Hide all but the last four digits of a phone number."""
    if not phone:
        return "missing"
    return "***" + phone[-4:]


async def await_with_timeout(awaitable: Awaitable[Any], timeout: float | None) -> Any:
    """Await a coroutine with an optional timeout."""
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)
