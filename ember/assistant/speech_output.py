"""Text-to-speech with a cloud primary and a local Piper fallback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import httpx
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.tts import Synthesize, SynthesizeVoice

from ember.utils import await_with_timeout

from .config import SpeechConfig, WyomingEndpoint
from .errors import SynthesisError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeechAudio:
    data: bytes
    mime_type: str
    rate: int | None = None
    width: int | None = None
    channels: int | None = None


class Synthesizer:
    name = "synthesizer"

    async def synthesize(self, text: str) -> SpeechAudio:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ElevenLabsSynthesizer(Synthesizer):
    name = "elevenlabs"

    def __init__(
        self,
        config: SpeechConfig,
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

    async def synthesize(self, text: str) -> SpeechAudio:
        if not self.config.elevenlabs_api_key:
            raise SynthesisError("ELEVENLABS_API_KEY is not set")
        url = f"{self.config.elevenlabs_base_url.rstrip('/')}/text-to-speech/{self.config.elevenlabs_voice_id}"
        payload = {
            "text": text,
            "model_id": self.config.elevenlabs_model,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75, "style": 0.0, "use_speaker_boost": True},
        }
        headers = {"xi-api-key": self.config.elevenlabs_api_key, "Accept": "audio/mpeg"}
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise SynthesisError(f"Failed to contact ElevenLabs: {exc}") from exc
        if response.status_code >= 400:
            raise SynthesisError(f"ElevenLabs HTTP error: {response.status_code}")
        if not response.content:
            raise SynthesisError("ElevenLabs returned no audio")
        return SpeechAudio(data=response.content, mime_type="audio/mpeg")


class WyomingSynthesizer(Synthesizer):
    """Local Piper voice over the Wyoming protocol."""

    name = "piper"

    def __init__(
        self,
        endpoint: WyomingEndpoint,
        *,
        voice_name: str | None = None,
        timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.voice_name = voice_name
        self.timeout = timeout
        self.logger = logger or LOGGER

    async def synthesize(self, text: str) -> SpeechAudio:
        chunks: list[bytes] = []
        start: AudioStart | None = None
        try:
            async for event in _tts_event_stream(
                text,
                endpoint=self.endpoint,
                voice_name=self.voice_name,
                timeout=self.timeout,
            ):
                if AudioStart.is_type(event.type):
                    start = AudioStart.from_event(event)
                elif AudioChunk.is_type(event.type):
                    chunks.append(AudioChunk.from_event(event).audio)
                elif AudioStop.is_type(event.type):
                    break
        except (OSError, asyncio.TimeoutError) as exc:
            raise SynthesisError(f"Piper synthesis failed: {exc}") from exc
        if not chunks:
            raise SynthesisError("Piper returned no audio")
        return SpeechAudio(
            data=b"".join(chunks),
            mime_type="audio/pcm",
            rate=start.rate if start else None,
            width=start.width if start else None,
            channels=start.channels if start else None,
        )


async def _tts_event_stream(
    text: str,
    *,
    endpoint: WyomingEndpoint,
    voice_name: str | None = None,
    timeout: float | None = None,
) -> AsyncIterator:
    client = AsyncTcpClient(endpoint.host, endpoint.port)
    await await_with_timeout(client.connect(), timeout)
    voice = SynthesizeVoice(name=voice_name) if voice_name else None
    try:
        await await_with_timeout(client.write_event(Synthesize(text=text, voice=voice).event()), timeout)
        while True:
            event = await await_with_timeout(client.read_event(), timeout)
            if event is None:
                break
            yield event
            if AudioStop.is_type(event.type):
                break
    finally:
        await client.disconnect()


AudioPlayer = Callable[[SpeechAudio], Awaitable[None]]


class FallbackSpeaker:
    """Speak through the primary synthesizer, falling back silently on failure.

    Synthesis problems are logged, never raised: the caller only learns
    whether any audio was produced.
    """

    def __init__(
        self,
        primary: Synthesizer | None,
        fallback: Synthesizer | None = None,
        *,
        player: AudioPlayer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.player = player
        self.logger = logger or LOGGER

    async def speak(self, text: str) -> SpeechAudio | None:
        if not text or not text.strip():
            return None
        for synthesizer in (self.primary, self.fallback):
            if synthesizer is None:
                continue
            try:
                audio = await synthesizer.synthesize(text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning("[speech] %s synthesis failed: %s", synthesizer.name, exc)
                continue
            if self.player is not None:
                try:
                    await self.player(audio)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self.logger.warning("[speech] Playback failed: %s", exc)
            return audio
        self.logger.warning("[speech] No synthesizer produced audio for %r", text)
        return None

    async def close(self) -> None:
        for synthesizer in (self.primary, self.fallback):
            if synthesizer is not None:
                await synthesizer.close()


def build_speaker(
    config: SpeechConfig,
    *,
    player: AudioPlayer | None = None,
    logger: logging.Logger | None = None,
) -> FallbackSpeaker:
    primary = ElevenLabsSynthesizer(config, logger=logger) if config.elevenlabs_api_key else None
    fallback = None
    if config.tts_endpoint is not None:
        fallback = WyomingSynthesizer(
            config.tts_endpoint,
            voice_name=config.tts_voice,
            timeout=config.timeout,
            logger=logger,
        )
    return FallbackSpeaker(primary, fallback, player=player, logger=logger)
