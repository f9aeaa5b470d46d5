"""MQTT publishing of session state, interpretations and alerts.

Topics, relative to the configured topic base:
- session/state      retained session state ("idle", "listening", ...; "offline"
                     is set by the connection itself)
- interpretation     one JSON document per resolved utterance
- alert              user-facing alerts (critical escalation failures)
- session/set        inbound "start"/"stop" commands
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from ember import __version__

from .models import Interpretation
from .mqtt import STATE_TOPIC, EmberMqtt

LOGGER = logging.getLogger(__name__)

SESSION_COMMANDS = {"start", "stop"}


class EmberMqttPublisher:
    """Stateless publisher: everything it sends arrives as method arguments."""

    def __init__(self, mqtt: EmberMqtt, topic_base: str, logger: logging.Logger | None = None) -> None:
        self.mqtt = mqtt
        self.logger = logger or LOGGER
        base = topic_base.rstrip("/")
        self.state_topic = f"{base}/{STATE_TOPIC}"
        self.command_topic = f"{base}/session/set"
        self.interpretation_topic = f"{base}/interpretation"
        self.alert_topic = f"{base}/alert"

    def _publish_message(self, topic: str, payload: str, *, retain: bool = False) -> None:
        try:
            self.mqtt.publish(topic, payload, retain=retain)
        except Exception as exc:
            self.logger.debug("[mqtt_publisher] Failed to publish to %s: %s", topic, exc)

    def publish_state(self, state: str) -> None:
        self._publish_message(self.state_topic, state, retain=True)

    def publish_interpretation(self, interpretation: Interpretation, *, outcome: str) -> None:
        payload: dict[str, Any] = interpretation.to_dict()
        payload["outcome"] = outcome
        payload["timestamp"] = time.time()
        payload["version"] = __version__
        self._publish_message(self.interpretation_topic, json.dumps(payload))

    def publish_alert(self, title: str, message: str, *, level: str, dismissible: bool) -> None:
        payload = {
            "title": title,
            "message": message,
            "level": level,
            "dismissible": dismissible,
            "timestamp": time.time(),
        }
        self._publish_message(self.alert_topic, json.dumps(payload))

    def subscribe_commands(self, handler: Callable[[str], None]) -> None:
        """Route valid session commands to the handler; unknown payloads are ignored."""

        def _on_message(payload: str) -> None:
            command = payload.strip().lower()
            if command not in SESSION_COMMANDS:
                self.logger.debug("[mqtt_publisher] Ignoring unknown session command: %s", payload)
                return
            handler(command)

        self.mqtt.subscribe(self.command_topic, _on_message)
