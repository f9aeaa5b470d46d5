"""Configuration helpers for the Ember interpretation engine."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from ember.utils import parse_bool, parse_float, parse_int, split_csv

from .models import UserProfile


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


INTERPRETER_PROVIDERS = {"gemini", "openai"}
CONTACT_METHODS = {"call", "sms", "none"}
CONFIRM_DEFAULTS = {"confirm", "reject"}


@dataclass(frozen=True)
class WyomingEndpoint:
    host: str
    port: int
    model: str | None = None


@dataclass(frozen=True)
class InterpreterConfig:
    provider: str
    openai_model: str
    openai_api_key: str | None
    openai_base_url: str
    openai_timeout: float
    gemini_model: str
    gemini_api_key: str | None
    gemini_base_url: str
    gemini_timeout: float


@dataclass(frozen=True)
class HomeAssistantConfig:
    base_url: str | None
    token: str | None
    verify_ssl: bool
    timeout: float


@dataclass(frozen=True)
class SpeechConfig:
    elevenlabs_api_key: str | None
    elevenlabs_voice_id: str
    elevenlabs_model: str
    elevenlabs_base_url: str
    tts_endpoint: WyomingEndpoint | None
    tts_voice: str | None
    timeout: float


@dataclass(frozen=True)
class EmergencyConfig:
    contact_phone: str | None
    contact_method: Literal["call", "sms", "none"]
    user_name: str
    twilio_account_sid: str | None
    twilio_auth_token: str | None
    twilio_from_number: str | None
    twilio_base_url: str
    timeout: float

    @property
    def notifications_enabled(self) -> bool:
        return self.contact_method != "none"

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


@dataclass(frozen=True)
class CaregiverConfig:
    phones: tuple[str, ...]
    min_confidence: int


@dataclass(frozen=True)
class VisionConfig:
    enabled: bool
    poll_interval: float
    gemini_model: str
    gemini_api_key: str | None
    gemini_base_url: str
    timeout: float


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class ConfirmationConfig:
    auto_confirm_seconds: float | None
    default_outcome: Literal["confirm", "reject"]


@dataclass(frozen=True)
class EmberConfig:
    hostname: str
    profile: UserProfile
    interpreter: InterpreterConfig
    home_assistant: HomeAssistantConfig
    speech: SpeechConfig
    emergency: EmergencyConfig
    caregivers: CaregiverConfig
    vision: VisionConfig
    mqtt: MqttConfig
    confirmation: ConfirmationConfig
    corrections_file: Path | None
    devices_file: Path | None

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> EmberConfig:
        source = env or os.environ
        hostname = source.get("EMBER_HOSTNAME") or socket.gethostname()
        user_name = (source.get("EMBER_USER_NAME") or "User").strip() or "User"

        profile = UserProfile(
            name=user_name,
            conditions=tuple(item.lower() for item in split_csv(source.get("EMBER_CONDITIONS"))),
            calibration_examples=tuple(split_csv(source.get("EMBER_CALIBRATION_EXAMPLES"))),
        )

        interpreter = InterpreterConfig(
            provider=_normalize_choice(source.get("EMBER_INTERPRETER_PROVIDER"), INTERPRETER_PROVIDERS, "gemini"),
            openai_model=source.get("OPENAI_MODEL", "gpt-4o-mini"),
            openai_api_key=_strip_or_none(source.get("OPENAI_API_KEY")),
            openai_base_url=source.get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_timeout=parse_float(source.get("OPENAI_TIMEOUT_SECONDS"), 20.0),
            gemini_model=source.get("GEMINI_MODEL", "gemini-2.0-flash"),
            gemini_api_key=_strip_or_none(source.get("GEMINI_API_KEY")),
            gemini_base_url=source.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            gemini_timeout=parse_float(source.get("GEMINI_TIMEOUT_SECONDS"), 20.0),
        )

        home_assistant = HomeAssistantConfig(
            base_url=_strip_or_none(source.get("HOME_ASSISTANT_BASE_URL")),
            token=_strip_or_none(source.get("HOME_ASSISTANT_TOKEN")),
            verify_ssl=parse_bool(source.get("HOME_ASSISTANT_VERIFY_SSL"), True),
            timeout=parse_float(source.get("HOME_ASSISTANT_TIMEOUT_SECONDS"), 10.0),
        )

        speech = SpeechConfig(
            elevenlabs_api_key=_strip_or_none(source.get("ELEVENLABS_API_KEY")),
            elevenlabs_voice_id=source.get("ELEVENLABS_VOICE_ID", "EXAVITQu4vr4xnSDxMaL"),
            elevenlabs_model=source.get("ELEVENLABS_MODEL", "eleven_turbo_v2_5"),
            elevenlabs_base_url=source.get("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1"),
            tts_endpoint=_optional_wyoming_endpoint(
                source,
                host_key="WYOMING_PIPER_HOST",
                port_key="WYOMING_PIPER_PORT",
                default_port=10200,
            ),
            tts_voice=_strip_or_none(source.get("EMBER_TTS_VOICE")),
            timeout=parse_float(source.get("EMBER_TTS_TIMEOUT_SECONDS"), 15.0),
        )

        emergency = EmergencyConfig(
            contact_phone=_strip_or_none(source.get("EMBER_EMERGENCY_PHONE")),
            contact_method=_normalize_choice(  # type: ignore[arg-type]
                source.get("EMBER_EMERGENCY_METHOD"), CONTACT_METHODS, "call"
            ),
            user_name=user_name,
            twilio_account_sid=_strip_or_none(source.get("TWILIO_ACCOUNT_SID")),
            twilio_auth_token=_strip_or_none(source.get("TWILIO_AUTH_TOKEN")),
            twilio_from_number=_strip_or_none(source.get("TWILIO_PHONE_NUMBER")),
            twilio_base_url=source.get("TWILIO_BASE_URL", "https://api.twilio.com/2010-04-01"),
            timeout=parse_float(source.get("TWILIO_TIMEOUT_SECONDS"), 15.0),
        )

        caregivers = CaregiverConfig(
            phones=tuple(split_csv(source.get("EMBER_CAREGIVER_PHONES"))),
            min_confidence=parse_int(source.get("EMBER_CAREGIVER_MIN_CONFIDENCE"), 60),
        )

        vision = VisionConfig(
            enabled=parse_bool(source.get("EMBER_VISION_ENABLED"), False),
            poll_interval=max(0.5, parse_float(source.get("EMBER_VISION_POLL_SECONDS"), 3.0)),
            gemini_model=source.get("EMBER_VISION_MODEL", interpreter.gemini_model),
            gemini_api_key=interpreter.gemini_api_key,
            gemini_base_url=interpreter.gemini_base_url,
            timeout=parse_float(source.get("EMBER_VISION_TIMEOUT_SECONDS"), 10.0),
        )

        topic_base = source.get("EMBER_TOPIC_BASE") or f"ember/{hostname}"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        auto_confirm = parse_float(source.get("EMBER_AUTO_CONFIRM_SECONDS"), 5.0)
        confirmation = ConfirmationConfig(
            auto_confirm_seconds=auto_confirm if auto_confirm > 0 else None,
            default_outcome=_normalize_choice(  # type: ignore[arg-type]
                source.get("EMBER_AUTO_CONFIRM_DEFAULT"), CONFIRM_DEFAULTS, "confirm"
            ),
        )

        return EmberConfig(
            hostname=hostname,
            profile=profile,
            interpreter=interpreter,
            home_assistant=home_assistant,
            speech=speech,
            emergency=emergency,
            caregivers=caregivers,
            vision=vision,
            mqtt=mqtt,
            confirmation=confirmation,
            corrections_file=_optional_path(source.get("EMBER_CORRECTIONS_FILE")),
            devices_file=_optional_path(source.get("EMBER_DEVICES_FILE")),
        )


def _optional_path(value: str | None) -> Path | None:
    stripped = _strip_or_none(value)
    return Path(stripped).expanduser() if stripped else None


def _optional_wyoming_endpoint(
    source: dict[str, str],
    *,
    host_key: str,
    port_key: str,
    default_port: int,
    model_key: str | None = None,
) -> WyomingEndpoint | None:
    host = _strip_or_none(source.get(host_key))
    if not host:
        return None
    port = parse_int(source.get(port_key), default_port)
    if not port:
        return None
    model = source.get(model_key) if model_key else None
    return WyomingEndpoint(host=host, port=port, model=model)


def _normalize_choice(value: str | None, allowed: set[str], default: str) -> str:
    if not value:
        return default
    lowered = value.strip().lower()
    if lowered in allowed:
        return lowered
    return default
