"""Scene and pointing-gesture analysis of camera frames."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import Awaitable, Callable

import httpx

from .config import VisionConfig
from .errors import InterpreterError, VisionError
from .interpreter import extract_gemini_text
from .models import VisualContext

LOGGER = logging.getLogger(__name__)

GESTURE_PROMPT = """You are a scene and gesture analyzer for Ember, an app that helps people with speech disabilities communicate.
Look at the image and report:
- room: the kind of room ("kitchen", "living room", "bedroom", "office", "outdoor", "unknown")
- objects: up to 5 notable objects
- people_count: number of people visible
- context_hint: a short phrase describing the scene that could help interpret speech
- gesture: "pointing_right", "pointing_left", "pointing_forward", "pointing_at_object" or null
- pointing_target: the specific object being pointed at ("lamp", "TV", "light switch") or null
- pointing_direction: "right", "left", "forward", "up", "down" or null
Be very specific about the pointing target. Return ONLY valid JSON, no markdown."""

FrameSource = Callable[[], Awaitable[bytes | None]]


class VisionAnalyzer:
    async def analyze_frame(self, frame: bytes, mime_type: str = "image/jpeg") -> VisualContext | None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def parse_scene(content: str) -> VisualContext | None:
    cleaned = content.replace("```json", "").replace("```", "").strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return VisualContext.from_payload(payload)


class GeminiVisionAnalyzer(VisionAnalyzer):
    def __init__(
        self,
        config: VisionConfig,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or LOGGER
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout, trust_env=False)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def analyze_frame(self, frame: bytes, mime_type: str = "image/jpeg") -> VisualContext | None:
        if not frame:
            return None
        if not self.config.gemini_api_key:
            raise VisionError("GEMINI_API_KEY is not set")
        url = f"{self.config.gemini_base_url.rstrip('/')}/models/{self.config.gemini_model}:generateContent"
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": GESTURE_PROMPT},
                        {"text": "Analyze this scene for gestures and context to help understand speech intent:"},
                        {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(frame).decode("ascii")}},
                    ]
                }
            ],
            "generationConfig": {"temperature": 0.4, "topK": 32, "topP": 1, "maxOutputTokens": 2048},
        }
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "x-goog-api-key": self.config.gemini_api_key},
            )
        except httpx.RequestError as exc:
            raise VisionError(f"Failed to contact Gemini: {exc}") from exc
        if response.status_code == 429:
            raise VisionError("Gemini rate limit exceeded")
        if response.status_code >= 400:
            raise VisionError(f"Gemini vision HTTP error: {response.status_code}")
        try:
            content = extract_gemini_text(response.json())
        except (ValueError, InterpreterError) as exc:
            raise VisionError(f"Gemini vision returned no scene: {exc}") from exc
        context = parse_scene(content)
        if context is None:
            self.logger.debug("[vision] Unparseable scene payload: %s", content)
        return context


class VisionPoller:
    """Polls a frame source on a fixed interval and keeps the newest context.

    Frame or analysis failures are logged and the previous context is kept.
    """

    def __init__(
        self,
        analyzer: VisionAnalyzer,
        frame_source: FrameSource,
        *,
        interval: float = 3.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.analyzer = analyzer
        self.frame_source = frame_source
        self.interval = max(0.1, interval)
        self.logger = logger or LOGGER
        self._latest: VisualContext | None = None
        self._task: asyncio.Task | None = None

    @property
    def latest(self) -> VisualContext | None:
        return self._latest

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> VisualContext | None:
        try:
            frame = await self.frame_source()
            if not frame:
                return self._latest
            context = await self.analyzer.analyze_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("[vision] Frame analysis failed: %s", exc)
            return self._latest
        if context is not None:
            self._latest = context
        return self._latest

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._latest = None

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)
