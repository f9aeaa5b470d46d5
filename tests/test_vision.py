"""Tests for scene analysis and frame polling (ember/assistant/vision.py)."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from ember.assistant.errors import VisionError
from ember.assistant.models import VisualContext
from ember.assistant.vision import GeminiVisionAnalyzer, VisionAnalyzer, VisionPoller, parse_scene

pytestmark = pytest.mark.anyio


def _gemini_payload(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_parse_scene_strips_markdown_fence():
    context = parse_scene('```json\n{"room": "kitchen", "objects": ["kettle", "mug"]}\n```')
    assert context == VisualContext(room="kitchen", objects=("kettle", "mug"))


def test_parse_scene_invalid():
    assert parse_scene("I see a kitchen") is None


class TestGeminiVisionAnalyzer:
    async def test_parses_camel_case(self, vision_config, mock_httpx_client, mock_response):
        scene = {
            "room": "living room",
            "objects": ["lamp", "sofa"],
            "peopleCount": 1,
            "gesture": "pointing_right",
            "pointingTarget": "lamp",
            "pointingDirection": "right",
            "contextHint": "user pointing at a lamp",
        }
        mock_httpx_client.post.return_value = mock_response(json_data=_gemini_payload(json.dumps(scene)))
        analyzer = GeminiVisionAnalyzer(vision_config, client=mock_httpx_client)

        context = await analyzer.analyze_frame(b"jpeg-bytes")

        assert context is not None
        assert context.pointing_target == "lamp"
        assert context.people_count == 1
        assert context.has_pointing is True
        _args, kwargs = mock_httpx_client.post.call_args
        inline = kwargs["json"]["contents"][0]["parts"][2]["inline_data"]
        assert inline["mime_type"] == "image/jpeg"
        assert inline["data"] == "anBlZy1ieXRlcw=="

    async def test_rate_limit(self, vision_config, mock_httpx_client, mock_response):
        mock_httpx_client.post.return_value = mock_response(status_code=429)
        analyzer = GeminiVisionAnalyzer(vision_config, client=mock_httpx_client)
        with pytest.raises(VisionError, match="rate limit"):
            await analyzer.analyze_frame(b"jpeg-bytes")

    async def test_empty_candidates(self, vision_config, mock_httpx_client, mock_response):
        mock_httpx_client.post.return_value = mock_response(json_data={"candidates": []})
        analyzer = GeminiVisionAnalyzer(vision_config, client=mock_httpx_client)
        with pytest.raises(VisionError):
            await analyzer.analyze_frame(b"jpeg-bytes")

    async def test_empty_frame(self, vision_config, mock_httpx_client):
        analyzer = GeminiVisionAnalyzer(vision_config, client=mock_httpx_client)
        assert await analyzer.analyze_frame(b"") is None
        mock_httpx_client.post.assert_not_called()


class TestVisionPoller:
    async def test_keeps_latest_on_failure(self, mock_logger):
        kitchen = VisualContext(room="kitchen")
        analyzer = AsyncMock(spec=VisionAnalyzer)
        analyzer.analyze_frame.side_effect = [kitchen, VisionError("rate limited")]
        poller = VisionPoller(analyzer, AsyncMock(return_value=b"frame"), logger=mock_logger)

        assert await poller.poll_once() == kitchen
        assert await poller.poll_once() == kitchen
        mock_logger.warning.assert_called_once()

    async def test_missing_frame_skips_analysis(self):
        analyzer = AsyncMock(spec=VisionAnalyzer)
        poller = VisionPoller(analyzer, AsyncMock(return_value=None))
        assert await poller.poll_once() is None
        analyzer.analyze_frame.assert_not_called()

    async def test_start_and_stop(self):
        analyzer = AsyncMock(spec=VisionAnalyzer)
        analyzer.analyze_frame.return_value = VisualContext(room="office")
        poller = VisionPoller(analyzer, AsyncMock(return_value=b"frame"), interval=60)

        poller.start()
        assert poller.running is True
        for _ in range(5):
            if poller.latest is not None:
                break
            await asyncio.sleep(0)
        assert poller.latest == VisualContext(room="office")

        await poller.stop()
        assert poller.running is False
        assert poller.latest is None
