"""Tests for speech synthesis and fallback (ember/assistant/speech_output.py)."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock

import httpx
import pytest
from ember.assistant.config import WyomingEndpoint
from ember.assistant.errors import SynthesisError
from ember.assistant.speech_output import (
    ElevenLabsSynthesizer,
    FallbackSpeaker,
    SpeechAudio,
    Synthesizer,
    WyomingSynthesizer,
    build_speaker,
)
from wyoming.audio import AudioChunk, AudioStart, AudioStop

pytestmark = pytest.mark.anyio


class StaticSynthesizer(Synthesizer):
    def __init__(self, name: str, audio: SpeechAudio | None = None, error: Exception | None = None) -> None:
        self.name = name
        self.audio = audio
        self.error = error
        self.calls: list[str] = []

    async def synthesize(self, text: str) -> SpeechAudio:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        assert self.audio is not None
        return self.audio


# ---------------------------------------------------------------------------
# ElevenLabs
# ---------------------------------------------------------------------------


class TestElevenLabsSynthesizer:
    async def test_success(self, speech_config, mock_httpx_client, mock_response):
        mock_httpx_client.post.return_value = mock_response(content=b"mp3-bytes", content_type="audio/mpeg")
        synthesizer = ElevenLabsSynthesizer(speech_config, client=mock_httpx_client)

        audio = await synthesizer.synthesize("Hello there")

        assert audio == SpeechAudio(data=b"mp3-bytes", mime_type="audio/mpeg")
        args, kwargs = mock_httpx_client.post.call_args
        assert args[0] == "https://api.elevenlabs.io/v1/text-to-speech/voice123"
        assert kwargs["json"]["text"] == "Hello there"
        assert kwargs["json"]["model_id"] == "eleven_turbo_v2_5"
        assert kwargs["headers"]["xi-api-key"] == "test_eleven_key"

    async def test_http_error(self, speech_config, mock_httpx_client, mock_response):
        mock_httpx_client.post.return_value = mock_response(status_code=500)
        synthesizer = ElevenLabsSynthesizer(speech_config, client=mock_httpx_client)
        with pytest.raises(SynthesisError, match="500"):
            await synthesizer.synthesize("Hello")

    async def test_empty_audio(self, speech_config, mock_httpx_client, mock_response):
        mock_httpx_client.post.return_value = mock_response(content=b"")
        synthesizer = ElevenLabsSynthesizer(speech_config, client=mock_httpx_client)
        with pytest.raises(SynthesisError):
            await synthesizer.synthesize("Hello")

    async def test_network_error(self, speech_config, mock_httpx_client):
        mock_httpx_client.post.side_effect = httpx.ConnectError("down")
        synthesizer = ElevenLabsSynthesizer(speech_config, client=mock_httpx_client)
        with pytest.raises(SynthesisError):
            await synthesizer.synthesize("Hello")

    async def test_missing_key(self, speech_config, mock_httpx_client):
        synthesizer = ElevenLabsSynthesizer(replace(speech_config, elevenlabs_api_key=None), client=mock_httpx_client)
        with pytest.raises(SynthesisError, match="ELEVENLABS_API_KEY"):
            await synthesizer.synthesize("Hello")
        mock_httpx_client.post.assert_not_called()

    async def test_injected_client_is_not_closed(self, speech_config, mock_httpx_client):
        await ElevenLabsSynthesizer(speech_config, client=mock_httpx_client).close()
        mock_httpx_client.aclose.assert_not_called()


# ---------------------------------------------------------------------------
# Piper over Wyoming
# ---------------------------------------------------------------------------


class TestWyomingSynthesizer:
    async def test_collects_audio(self, monkeypatch):
        seen = {}

        async def fake_stream(text, *, endpoint, voice_name=None, timeout=None):
            seen.update(text=text, endpoint=endpoint, voice_name=voice_name)
            yield AudioStart(rate=22050, width=2, channels=1).event()
            yield AudioChunk(rate=22050, width=2, channels=1, audio=b"\x01\x02").event()
            yield AudioChunk(rate=22050, width=2, channels=1, audio=b"\x03\x04").event()
            yield AudioStop().event()

        monkeypatch.setattr("ember.assistant.speech_output._tts_event_stream", fake_stream)
        endpoint = WyomingEndpoint(host="piper.local", port=10200)
        synthesizer = WyomingSynthesizer(endpoint, voice_name="en_US-amy")

        audio = await synthesizer.synthesize("Hello")

        assert audio.data == b"\x01\x02\x03\x04"
        assert audio.mime_type == "audio/pcm"
        assert (audio.rate, audio.width, audio.channels) == (22050, 2, 1)
        assert seen == {"text": "Hello", "endpoint": endpoint, "voice_name": "en_US-amy"}

    async def test_connection_failure(self, monkeypatch):
        async def failing_stream(text, *, endpoint, voice_name=None, timeout=None):
            raise ConnectionRefusedError("refused")
            yield  # pragma: no cover

        monkeypatch.setattr("ember.assistant.speech_output._tts_event_stream", failing_stream)
        synthesizer = WyomingSynthesizer(WyomingEndpoint(host="piper.local", port=10200))
        with pytest.raises(SynthesisError):
            await synthesizer.synthesize("Hello")

    async def test_no_audio(self, monkeypatch):
        async def silent_stream(text, *, endpoint, voice_name=None, timeout=None):
            yield AudioStop().event()

        monkeypatch.setattr("ember.assistant.speech_output._tts_event_stream", silent_stream)
        synthesizer = WyomingSynthesizer(WyomingEndpoint(host="piper.local", port=10200))
        with pytest.raises(SynthesisError, match="no audio"):
            await synthesizer.synthesize("Hello")


# ---------------------------------------------------------------------------
# Fallback speaker
# ---------------------------------------------------------------------------

MP3 = SpeechAudio(data=b"mp3", mime_type="audio/mpeg")
PCM = SpeechAudio(data=b"pcm", mime_type="audio/pcm", rate=22050, width=2, channels=1)


class TestFallbackSpeaker:
    async def test_primary_is_used(self, mock_logger):
        primary = StaticSynthesizer("elevenlabs", MP3)
        fallback = StaticSynthesizer("piper", PCM)
        player = AsyncMock()
        speaker = FallbackSpeaker(primary, fallback, player=player, logger=mock_logger)

        assert await speaker.speak("Hello") == MP3
        assert fallback.calls == []
        player.assert_awaited_once_with(MP3)

    async def test_falls_back_on_failure(self, mock_logger):
        primary = StaticSynthesizer("elevenlabs", error=SynthesisError("quota"))
        fallback = StaticSynthesizer("piper", PCM)
        speaker = FallbackSpeaker(primary, fallback, logger=mock_logger)

        assert await speaker.speak("Hello") == PCM
        mock_logger.warning.assert_called_once()

    async def test_all_failures_are_silent(self, mock_logger):
        speaker = FallbackSpeaker(
            StaticSynthesizer("elevenlabs", error=SynthesisError("quota")),
            StaticSynthesizer("piper", error=SynthesisError("down")),
            logger=mock_logger,
        )
        assert await speaker.speak("Hello") is None

    async def test_missing_primary(self):
        fallback = StaticSynthesizer("piper", PCM)
        assert await FallbackSpeaker(None, fallback).speak("Hello") == PCM

    async def test_blank_text(self):
        primary = StaticSynthesizer("elevenlabs", MP3)
        assert await FallbackSpeaker(primary).speak("   ") is None
        assert primary.calls == []

    async def test_player_failure_still_returns_audio(self, mock_logger):
        player = AsyncMock(side_effect=RuntimeError("no sound card"))
        speaker = FallbackSpeaker(StaticSynthesizer("elevenlabs", MP3), player=player, logger=mock_logger)
        assert await speaker.speak("Hello") == MP3
        mock_logger.warning.assert_called_once()


def test_build_speaker(speech_config):
    speaker = build_speaker(replace(speech_config, tts_endpoint=WyomingEndpoint(host="piper.local", port=10200)))
    assert isinstance(speaker.primary, ElevenLabsSynthesizer)
    assert isinstance(speaker.fallback, WyomingSynthesizer)

    offline = build_speaker(replace(speech_config, elevenlabs_api_key=None))
    assert offline.primary is None
    assert offline.fallback is None
