"""paho-mqtt connection for Ember telemetry with broker-side presence.

The connection owns the retained ``<base>/session/state`` topic: a last will
sets it to ``offline`` if the process dies, and a clean disconnect publishes
the same value before closing. Subscriptions are remembered and replayed on
every (re)connect, so they survive broker restarts.
"""

from __future__ import annotations

import logging
import ssl
import threading
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from .config import MqttConfig

LOGGER = logging.getLogger(__name__)

STATE_TOPIC = "session/state"
OFFLINE_STATE = "offline"
OFFLINE_FLUSH_SECONDS = 2.0


def _connect_succeeded(reason_code: Any) -> bool:
    # paho ReasonCode compares equal to its integer value.
    return reason_code == 0


class EmberMqtt:
    """Connect, publish and subscribe; every failure is logged, never raised to the engine."""

    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or LOGGER
        self.topic_base = config.topic_base.rstrip("/")
        self.state_topic = f"{self.topic_base}/{STATE_TOPIC}"
        self._client: mqtt.Client | None = None
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Callable[[str], None]] = {}

    def connect(self) -> None:
        if not self.config.host:
            self._logger.debug("[mqtt] MQTT host not configured; telemetry disabled")
            return
        with self._lock:
            if self._client is not None:
                return
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"ember-{self.topic_base.replace('/', '-')}",
                clean_session=True,
            )
            if self.config.username:
                client.username_pw_set(self.config.username, self.config.password or "")
            if self.config.tls_enabled:
                tls_kwargs: dict[str, object] = {"tls_version": ssl.PROTOCOL_TLS_CLIENT}
                if self.config.ca_cert:
                    tls_kwargs["ca_certs"] = self.config.ca_cert
                if self.config.cert:
                    tls_kwargs["certfile"] = self.config.cert
                if self.config.key:
                    tls_kwargs["keyfile"] = self.config.key
                client.tls_set(**tls_kwargs)
            client.will_set(self.state_topic, payload=OFFLINE_STATE, qos=1, retain=True)
            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            for topic, handler in self._subscriptions.items():
                client.message_callback_add(topic, self._dispatcher(topic, handler))
            self._logger.info("[mqtt] Connecting to %s:%s", self.config.host, self.config.port)
            try:
                client.connect(self.config.host, self.config.port, keepalive=30)
            except Exception as exc:
                self._logger.warning("[mqtt] Failed to connect to MQTT: %s", exc)
                return
            client.loop_start()
            self._client = client

    def disconnect(self) -> None:
        """Mark the session offline, then close the connection."""
        with self._lock:
            client = self._client
            self._client = None
        if not client:
            return
        try:
            info = client.publish(self.state_topic, payload=OFFLINE_STATE, qos=1, retain=True)
            info.wait_for_publish(timeout=OFFLINE_FLUSH_SECONDS)
        except (RuntimeError, ValueError) as exc:
            self._logger.debug("[mqtt] Could not publish offline state: %s", exc)
        client.disconnect()
        client.loop_stop()

    def is_connected(self) -> bool:
        client = self._client
        try:
            return bool(client and client.is_connected())
        except Exception:
            return False

    def publish(self, topic: str, payload: str, retain: bool = False, qos: int = 0) -> None:
        client = self._client
        if not client:
            return
        try:
            client.publish(topic, payload=payload, qos=qos, retain=retain)
        except Exception as exc:
            self._logger.debug("[mqtt] Failed to publish to %s: %s", topic, exc)

    def subscribe(self, topic: str, on_message: Callable[[str], None]) -> None:
        """Register a handler; it is (re)subscribed on every successful connect."""
        with self._lock:
            self._subscriptions[topic] = on_message
            client = self._client
        if client is None:
            return
        client.message_callback_add(topic, self._dispatcher(topic, on_message))
        if self.is_connected():
            self._subscribe_now(client, topic)

    def _dispatcher(self, topic: str, on_message: Callable[[str], None]) -> Callable[..., None]:
        def _callback(_client, _userdata, message):  # type: ignore[no-untyped-def]
            try:
                on_message(message.payload.decode("utf-8", errors="ignore"))
            except Exception as exc:
                self._logger.error("[mqtt] Subscriber callback failed for topic '%s': %s", topic, exc, exc_info=True)

        return _callback

    def _subscribe_now(self, client: mqtt.Client, topic: str) -> None:
        result, _mid = client.subscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("[mqtt] Failed to subscribe to topic: %s (rc=%s)", topic, result)

    def _on_connect(self, client, _userdata, _flags, reason_code, properties=None):  # type: ignore[no-untyped-def]
        if not _connect_succeeded(reason_code):
            self._logger.error("[mqtt] Connection refused (reason=%s, properties=%s)", reason_code, properties)
            return
        with self._lock:
            topics = list(self._subscriptions)
        self._logger.info("[mqtt] Connected; subscribing to %d topic(s)", len(topics))
        for topic in topics:
            self._subscribe_now(client, topic)

    def _on_disconnect(self, _client, _userdata, _flags, reason_code, _properties=None):  # type: ignore[no-untyped-def]
        if _connect_succeeded(reason_code):
            self._logger.debug("[mqtt] Disconnected")
        else:
            self._logger.warning("[mqtt] Connection lost (reason=%s); paho will reconnect", reason_code)
