"""Semantic-completion providers for unclear speech."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import InterpreterConfig
from .errors import InterpreterError
from .models import ConversationTurn, UserProfile, VisualContext

LOGGER = logging.getLogger(__name__)

HISTORY_WINDOW = 3

BASE_PROMPT = """You are an expert speech interpreter for people with dysarthria, aphasia and other speech disabilities.
Work out what the person actually means from an unclear, fragmented or slurred transcript.

Respond only with a JSON object:
{
  "interpretation": "complete, grammatical interpretation",
  "confidence": 0-100,
  "category": "dysarthria" | "aphasia" | "clear" | "urgent",
  "alternatives": ["other reading", "another reading"],
  "action": {"type": "lights_on" | "lights_off" | "temp_up" | "temp_down" | "tv_on" | "tv_off" | "emergency_call" | null},
  "response": "short natural reply to say back",
  "reasoning": "one sentence on how you got there"
}

Rules:
- Fill in missing articles, pronouns and prepositions.
- Never copy the input verbatim unless you are certain.
- Below 70 confidence give three alternatives; at 90 or more give one or two.
- Mark emergencies ("help", "pain", "can't breathe", "fell", "stuck") as urgent with an emergency_call action.
- Interpret the intent, not just the words."""

PROMPT_TEMPLATES: dict[str, str] = {
    "urgent": (
        "This utterance contains emergency keywords. Prioritise safety: assume the person needs help, "
        "state the emergency plainly and keep the response short and calm."
    ),
    "aphasia": (
        "The speaker has aphasia. Expect dropped articles, pronouns and prepositions, single content words "
        'separated by pauses and word-finding gaps. "bathroom... help... now" means '
        '"I need help getting to the bathroom now".'
    ),
    "dysarthria": (
        "The speaker has dysarthria. Expect dropped final consonants, shortened words and merged clusters. "
        '"wan coff" means "want coffee", "tur on ligh" means "turn on the light".'
    ),
    "standard": "The speech is mostly clear. Confirm the meaning and fill in anything that is missing.",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


@dataclass
class InterpreterResult:
    interpretation: str
    confidence: int | None = None
    alternatives: list[str] = field(default_factory=list)
    category: str = "clear"
    action: str | None = None
    response: str | None = None
    reasoning: str = ""


class SemanticInterpreter:
    async def interpret(
        self,
        text: str,
        *,
        profile: UserProfile,
        visual_context: VisualContext | None,
        history: Sequence[ConversationTurn],
        pattern_type: str,
    ) -> InterpreterResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def build_system_prompt(pattern_type: str) -> str:
    template = PROMPT_TEMPLATES.get(pattern_type, PROMPT_TEMPLATES["standard"])
    return f"{BASE_PROMPT}\n\n{template}"


def build_user_message(
    text: str,
    *,
    profile: UserProfile,
    visual_context: VisualContext | None,
    history: Sequence[ConversationTurn],
) -> str:
    recent = [turn.to_dict() for turn in list(history)[-HISTORY_WINDOW:]]
    lines = [
        f'User speech input: "{text.strip()}"',
        "",
        "Additional context:",
        f"- User profile: {json.dumps(profile.to_dict())}",
        f"- Time of day: {time.strftime('%H:%M')}",
        f"- Recent conversation: {json.dumps(recent)}",
    ]
    if visual_context is not None:
        lines.append(f"- What the camera sees: {json.dumps(visual_context.to_dict())}")
    lines.extend(["", "Interpret what they mean and respond in JSON format."])
    return "\n".join(lines)


def _coerce_confidence(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # Some models answer on a 0-1 scale.
    if 0 < number <= 1:
        number *= 100
    return max(0, min(100, int(round(number))))


def parse_interpreter_response(text: str) -> InterpreterResult:
    """Parse a model reply, tolerating markdown fences around the JSON."""
    cleaned = _FENCE_RE.sub("", text or "").replace("```", "").strip()
    if not cleaned:
        raise InterpreterError("Interpreter returned an empty response")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise InterpreterError("Interpreter response was not JSON") from None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise InterpreterError("Interpreter response was not JSON") from exc
    if not isinstance(parsed, dict):
        raise InterpreterError("Interpreter response was not a JSON object")

    interpretation = str(parsed.get("interpretation") or "").strip()
    if not interpretation:
        raise InterpreterError("Interpreter response missing interpretation")

    alternatives: list[str] = []
    raw_alternatives = parsed.get("alternatives") or []
    if isinstance(raw_alternatives, list):
        for item in raw_alternatives:
            if isinstance(item, str) and item.strip():
                alternatives.append(item.strip())

    action = parsed.get("action")
    if isinstance(action, dict):
        action = action.get("type")
    action_type = action.strip() if isinstance(action, str) and action.strip() else None

    response = parsed.get("response")
    return InterpreterResult(
        interpretation=interpretation,
        confidence=_coerce_confidence(parsed.get("confidence")),
        alternatives=alternatives,
        category=str(parsed.get("category") or "clear").strip().lower(),
        action=action_type,
        response=response.strip() if isinstance(response, str) and response.strip() else None,
        reasoning=str(parsed.get("reasoning") or "").strip(),
    )


class _HttpInterpreter(SemanticInterpreter):
    provider_name = "interpreter"

    def __init__(
        self,
        config: InterpreterConfig,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or LOGGER
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout(), trust_env=False)

    def _timeout(self) -> float:
        raise NotImplementedError

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def interpret(
        self,
        text: str,
        *,
        profile: UserProfile,
        visual_context: VisualContext | None,
        history: Sequence[ConversationTurn],
        pattern_type: str,
    ) -> InterpreterResult:
        system_prompt = build_system_prompt(pattern_type)
        user_message = build_user_message(text, profile=profile, visual_context=visual_context, history=history)
        content = await self._call_api(system_prompt, user_message)
        result = parse_interpreter_response(content)
        self.logger.debug(
            "[interpreter] %s read %r as %r (confidence=%s)",
            self.provider_name,
            text,
            result.interpretation,
            result.confidence,
        )
        return result

    async def _call_api(self, system_prompt: str, user_message: str) -> str:
        raise NotImplementedError

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload, headers=headers, timeout=self._timeout())
        except httpx.RequestError as exc:
            raise InterpreterError(f"Failed to contact {self.provider_name}: {exc}") from exc
        if response.status_code >= 400:
            raise InterpreterError(f"{self.provider_name} HTTP error: {response.status_code}")
        try:
            parsed = response.json()
        except ValueError as exc:
            raise InterpreterError(f"{self.provider_name} returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise InterpreterError(f"{self.provider_name} returned an unexpected payload")
        return parsed


class GeminiInterpreter(_HttpInterpreter):
    """Call Google Gemini (Generative Language) models."""

    provider_name = "Gemini"

    def _timeout(self) -> float:
        return float(self.config.gemini_timeout)

    async def _call_api(self, system_prompt: str, user_message: str) -> str:
        if not self.config.gemini_api_key:
            raise InterpreterError("GEMINI_API_KEY is not set")
        model = (self.config.gemini_model or "").strip()
        if not model:
            raise InterpreterError("GEMINI_MODEL is not set")
        url = f"{self.config.gemini_base_url.rstrip('/')}/models/{model}:generateContent"
        payload = {
            "system_instruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": user_message}]}],
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 1024,
                "responseMimeType": "application/json",
            },
        }
        parsed = await self._post(
            url,
            payload,
            {"Content-Type": "application/json", "x-goog-api-key": self.config.gemini_api_key},
        )
        return extract_gemini_text(parsed)


def extract_gemini_text(parsed: dict[str, Any]) -> str:
    for candidate in parsed.get("candidates") or []:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        if not isinstance(content, dict):
            continue
        for part in content.get("parts") or []:
            if isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    return text
    prompt_feedback = parsed.get("promptFeedback")
    if isinstance(prompt_feedback, dict) and prompt_feedback.get("blockReason"):
        raise InterpreterError(f"Gemini blocked prompt: {prompt_feedback['blockReason']}")
    raise InterpreterError("Gemini response missing content")


class OpenAIInterpreter(_HttpInterpreter):
    """Call OpenAI-compatible chat completion endpoints."""

    provider_name = "OpenAI"

    def _timeout(self) -> float:
        return float(self.config.openai_timeout)

    async def _call_api(self, system_prompt: str, user_message: str) -> str:
        if not self.config.openai_api_key:
            raise InterpreterError("OPENAI_API_KEY is not set")
        payload = {
            "model": self.config.openai_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "temperature": 0.3,
            "max_tokens": 600,
            "response_format": {"type": "json_object"},
        }
        parsed = await self._post(
            f"{self.config.openai_base_url.rstrip('/')}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self.config.openai_api_key}", "Content-Type": "application/json"},
        )
        choices = parsed.get("choices") or []
        if not choices:
            raise InterpreterError("OpenAI response missing choices")
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not content:
            raise InterpreterError("OpenAI response missing content")
        return str(content)


def build_interpreter(
    config: InterpreterConfig,
    *,
    client: httpx.AsyncClient | None = None,
    logger: logging.Logger | None = None,
) -> SemanticInterpreter:
    provider = (config.provider or "").strip().lower()
    if provider == "openai":
        return OpenAIInterpreter(config, client=client, logger=logger)
    return GeminiInterpreter(config, client=client, logger=logger)
