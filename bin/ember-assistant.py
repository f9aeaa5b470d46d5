#!/usr/bin/env python3
"""Ember speech interpretation daemon.

Reads finalized transcripts from stdin (one per line, as produced by the
speech recognizer), interprets them and asks for confirmation on the
terminal when needed. While a confirmation is pending, "yes", "no" or the
number of an alternative answer it.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

from ember.assistant.audio import CommandLinePlayer
from ember.assistant.config import EmberConfig
from ember.assistant.correction_memory import CorrectionMemory
from ember.assistant.home_control import DeviceInventory, build_device_controller
from ember.assistant.interpreter import build_interpreter
from ember.assistant.mqtt import EmberMqtt
from ember.assistant.mqtt_publisher import EmberMqttPublisher
from ember.assistant.notifications import build_caregiver_notifier, build_notifier
from ember.assistant.orchestrator import InterpretationOrchestrator
from ember.assistant.session import AutoConfirmPolicy, ConversationSession, UserAlert
from ember.assistant.speech_output import build_speaker
from ember.assistant.vision import GeminiVisionAnalyzer, VisionPoller

LOGGER = logging.getLogger("ember-assistant")

YES_WORDS = {"y", "yes", "yeah", "yep", "ok", "okay", "correct", "right"}
NO_WORDS = {"n", "no", "nope", "wrong", "cancel"}


def _print_alert(alert: UserAlert) -> None:
    print(f"\n!!! {alert.title}: {alert.message}\n", flush=True)


def _answer_pending(session: ConversationSession, line: str) -> bool:
    """Treat the line as a confirmation answer if one is pending."""
    pending = session.gate.pending
    if pending is None:
        return False
    answer = line.strip().lower()
    if answer in YES_WORDS:
        return session.confirm()
    if answer in NO_WORDS:
        return session.reject()
    if answer.isdigit():
        index = int(answer) - 1
        if 0 <= index < len(pending.alternatives):
            return session.confirm(pending.alternatives[index])
    return False


def _announce_pending(session: ConversationSession) -> None:
    pending = session.gate.pending
    if pending is None:
        return
    print(f'Did you mean: "{pending.interpreted_text}"? ({pending.confidence}%) [yes/no]', flush=True)
    for index, alternative in enumerate(pending.alternatives, start=1):
        print(f"  {index}. {alternative}", flush=True)


async def _read_lines(queue: asyncio.Queue[str | None]) -> None:
    loop = asyncio.get_running_loop()
    stream = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(stream), sys.stdin)
    while True:
        line = await stream.readline()
        if not line:
            await queue.put(None)
            return
        await queue.put(line.decode("utf-8", errors="ignore").rstrip("\n"))


async def _frame_reader(path: Path) -> bytes | None:
    try:
        return await asyncio.to_thread(path.read_bytes)
    except FileNotFoundError:
        return None


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--frame-file", type=Path, help="Camera snapshot refreshed by an external capture process")
    parser.add_argument("--no-audio", action="store_true", help="Synthesize speech without playing it")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = EmberConfig.from_env()
    loop = asyncio.get_running_loop()

    mqtt = EmberMqtt(config.mqtt, LOGGER)
    mqtt.connect()
    publisher = EmberMqttPublisher(mqtt, config.mqtt.topic_base, LOGGER)

    interpreter = build_interpreter(config.interpreter, logger=LOGGER)
    notifier = build_notifier(config.emergency, LOGGER)
    caregivers = build_caregiver_notifier(config.caregivers, config.emergency, LOGGER)
    speaker = build_speaker(config.speech, player=None if args.no_audio else CommandLinePlayer(LOGGER), logger=LOGGER)
    devices = build_device_controller(config.home_assistant, LOGGER)
    inventory = DeviceInventory.load(config.devices_file)
    memory = CorrectionMemory(config.corrections_file, logger=LOGGER)

    poller: VisionPoller | None = None
    if config.vision.enabled and args.frame_file is not None:
        frame_file: Path = args.frame_file
        poller = VisionPoller(
            GeminiVisionAnalyzer(config.vision, logger=LOGGER),
            lambda: _frame_reader(frame_file),
            interval=config.vision.poll_interval,
            logger=LOGGER,
        )

    orchestrator = InterpretationOrchestrator(
        interpreter=interpreter,
        memory=memory,
        notifier=notifier,
        emergency=config.emergency,
        logger=LOGGER,
    )
    auto_confirm = None
    if config.confirmation.auto_confirm_seconds is not None:
        auto_confirm = AutoConfirmPolicy(
            timeout=config.confirmation.auto_confirm_seconds,
            default=config.confirmation.default_outcome,
        )
    session = ConversationSession(
        orchestrator=orchestrator,
        profile=config.profile,
        speaker=speaker,
        devices=devices,
        inventory=inventory,
        visual_provider=(lambda: poller.latest) if poller else None,
        publisher=publisher,
        caregivers=caregivers,
        alert_sink=_print_alert,
        auto_confirm=auto_confirm,
        logger=LOGGER,
    )

    async def _apply_command(command: str) -> None:
        if command == "start":
            await session.start()
            if poller:
                poller.start()
        else:
            await session.stop()
            if poller:
                await poller.stop()

    def _on_command(command: str) -> None:
        asyncio.run_coroutine_threadsafe(_apply_command(command), loop)

    publisher.subscribe_commands(_on_command)

    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    await _apply_command("start")
    LOGGER.info(
        "Ember ready for %s (interpreter=%s, devices=%s)",
        config.profile.name,
        config.interpreter.provider,
        ", ".join(sorted(inventory.available_categories())) or "none",
    )

    lines: asyncio.Queue[str | None] = asyncio.Queue()
    reader = asyncio.create_task(_read_lines(lines))
    stop_wait = asyncio.create_task(stop_event.wait())
    try:
        while not stop_event.is_set():
            next_line = asyncio.create_task(lines.get())
            done, _pending = await asyncio.wait({next_line, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            if next_line not in done:
                next_line.cancel()
                break
            line = next_line.result()
            if line is None:
                # Input closed; let the last turn finish unless it is waiting on an answer.
                while session.supervisor.active is not None and session.gate.pending is None:
                    await asyncio.sleep(0.05)
                break
            if not line.strip() or _answer_pending(session, line):
                continue
            await session.submit(line)
            await asyncio.sleep(0)
            while session.supervisor.active is not None and session.gate.pending is None:
                await asyncio.sleep(0.05)
            _announce_pending(session)
    finally:
        await _apply_command("stop")
        reader.cancel()
        stop_wait.cancel()
        closers = [interpreter.close, notifier.close, speaker.close, devices.close]
        if caregivers is not None:
            closers.append(caregivers.close)
        for closer in closers:
            with contextlib.suppress(Exception):
                await closer()
        mqtt.disconnect()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
