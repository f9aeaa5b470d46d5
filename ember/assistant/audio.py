"""Local playback of synthesized speech through command-line players."""

from __future__ import annotations

import asyncio
import logging
import shutil

from .speech_output import SpeechAudio

LOGGER = logging.getLogger(__name__)

PLAYER_TIMEOUT = 60.0


def _alsa_format(width: int) -> str:
    return {
        1: "U8",
        2: "S16_LE",
        3: "S24_LE",
        4: "S32_LE",
    }.get(width, "S16_LE")


def build_play_command(audio: SpeechAudio) -> list[str]:
    """Command that plays ``audio`` from stdin."""
    if audio.mime_type == "audio/pcm":
        return [
            "aplay",
            "-q",
            "-t",
            "raw",
            "-f",
            _alsa_format(audio.width or 2),
            "-c",
            str(audio.channels or 1),
            "-r",
            str(audio.rate or 22050),
            "-",
        ]
    return ["mpg123", "-q", "-"]


class CommandLinePlayer:
    """Pipe audio into ``aplay`` (PCM) or ``mpg123`` (MPEG)."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER

    async def __call__(self, audio: SpeechAudio) -> None:
        cmd = build_play_command(audio)
        if shutil.which(cmd[0]) is None:
            raise RuntimeError(f"Audio player {cmd[0]} is not installed")
        self.logger.debug("[audio] Starting playback: %s", " ".join(cmd))
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _stdout, stderr = await asyncio.wait_for(proc.communicate(audio.data), timeout=PLAYER_TIMEOUT)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode:
            detail = stderr.decode("utf-8", errors="ignore").strip() if stderr else ""
            raise RuntimeError(f"{cmd[0]} exited with {proc.returncode}: {detail}")
