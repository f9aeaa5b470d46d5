"""Shared test fixtures and configuration for the Ember test suite.

This module provides reusable fixtures for common test scenarios including:
- httpx client and response mocking for the interpreter, Home Assistant,
  Twilio, ElevenLabs and Gemini vision clients
- MQTT client mocking
- Configuration objects
- Fake collaborators for the orchestrator and session tests
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any
from unittest.mock import AsyncMock, Mock

import httpx
import paho.mqtt.client as mqtt
import pytest
from ember.assistant.config import (
    EmergencyConfig,
    HomeAssistantConfig,
    InterpreterConfig,
    MqttConfig,
    SpeechConfig,
    VisionConfig,
)
from ember.assistant.interpreter import InterpreterResult, SemanticInterpreter
from ember.assistant.models import ConversationTurn, UserProfile, VisualContext
from ember.assistant.notifications import EmergencyNotifier, NotificationResult

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing.

    Returns a Mock with spec=logging.Logger to ensure only valid
    logger methods can be called.
    """
    return Mock(spec=logging.Logger)


# ============================================================================
# HTTP Fixtures
# ============================================================================


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx.AsyncClient."""
    client = AsyncMock(spec=httpx.AsyncClient)
    client.headers = {}
    return client


@pytest.fixture
def mock_response():
    """Create a factory for mock HTTP responses.

    Usage:
        response = mock_response(status_code=200, json_data={"state": "on"})
    """

    def _create_response(
        status_code: int = 200,
        json_data: Any = None,
        text: str = "",
        content: bytes = b"",
        content_type: str = "application/json",
    ) -> Mock:
        response = Mock(spec=httpx.Response)
        response.status_code = status_code
        response.json = Mock(return_value=json_data if json_data is not None else {})
        response.text = text
        response.content = content
        response.headers = {"content-type": content_type}
        response.is_success = 200 <= status_code < 300
        return response

    return _create_response


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def interpreter_config():
    return InterpreterConfig(
        provider="gemini",
        openai_model="gpt-4o-mini",
        openai_api_key="test_openai_key",
        openai_base_url="https://api.openai.com/v1",
        openai_timeout=20.0,
        gemini_model="gemini-2.0-flash",
        gemini_api_key="test_gemini_key",
        gemini_base_url="https://generativelanguage.googleapis.com/v1beta",
        gemini_timeout=20.0,
    )


@pytest.fixture
def ha_config():
    """Create a basic Home Assistant configuration for testing."""
    return HomeAssistantConfig(
        base_url="http://homeassistant.local:8123",
        token="test_token_123",
        verify_ssl=True,
        timeout=10.0,
    )


@pytest.fixture
def speech_config():
    return SpeechConfig(
        elevenlabs_api_key="test_eleven_key",
        elevenlabs_voice_id="voice123",
        elevenlabs_model="eleven_turbo_v2_5",
        elevenlabs_base_url="https://api.elevenlabs.io/v1",
        tts_endpoint=None,
        tts_voice=None,
        timeout=15.0,
    )


@pytest.fixture
def emergency_config():
    return EmergencyConfig(
        contact_phone="+15551234567",
        contact_method="call",
        user_name="Sam",
        twilio_account_sid="AC123",
        twilio_auth_token="twilio_token",
        twilio_from_number="+15557654321",
        twilio_base_url="https://api.twilio.com/2010-04-01",
        timeout=15.0,
    )


@pytest.fixture
def vision_config():
    return VisionConfig(
        enabled=True,
        poll_interval=3.0,
        gemini_model="gemini-2.0-flash",
        gemini_api_key="test_gemini_key",
        gemini_base_url="https://generativelanguage.googleapis.com/v1beta",
        timeout=10.0,
    )


@pytest.fixture
def mqtt_config():
    """Create a basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        username=None,
        password=None,
        tls_enabled=False,
        cert=None,
        key=None,
        ca_cert=None,
        topic_base="ember/test-host",
    )


@pytest.fixture
def mock_mqtt_client():
    """Create a mock paho MQTT client."""
    client = Mock(spec=mqtt.Client)
    client.connect = Mock()
    client.disconnect = Mock()
    client.subscribe = Mock(return_value=(mqtt.MQTT_ERR_SUCCESS, 1))
    client.message_callback_add = Mock()

    message_info = Mock(spec=mqtt.MQTTMessageInfo)
    message_info.rc = mqtt.MQTT_ERR_SUCCESS
    message_info.mid = 1
    client.publish = Mock(return_value=message_info)

    client.loop_start = Mock()
    client.loop_stop = Mock()
    client.is_connected = Mock(return_value=True)
    return client


# ============================================================================
# Fake Collaborators
# ============================================================================


class FakeInterpreter(SemanticInterpreter):
    """Records calls and returns a canned result (or raises a canned error)."""

    def __init__(self, result: InterpreterResult | None = None, error: Exception | None = None) -> None:
        self.result = result or InterpreterResult(interpretation="I want coffee", confidence=90)
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def interpret(
        self,
        text: str,
        *,
        profile: UserProfile,
        visual_context: VisualContext | None,
        history: Sequence[ConversationTurn],
        pattern_type: str,
    ) -> InterpreterResult:
        self.calls.append(
            {
                "text": text,
                "profile": profile,
                "visual_context": visual_context,
                "history": list(history),
                "pattern_type": pattern_type,
            }
        )
        if self.error is not None:
            raise self.error
        return self.result


class FakeNotifier(EmergencyNotifier):
    def __init__(self, result: NotificationResult | None = None, error: Exception | None = None) -> None:
        self.result = result or NotificationResult(success=True, call_id="CA123")
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    async def notify(self, phone: str, message: str, user_name: str) -> NotificationResult:
        self.calls.append((phone, message, user_name))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def make_interpreter():
    """Factory for fake interpreters.

    Usage:
        interpreter = make_interpreter(InterpreterResult(interpretation="...", confidence=70))
    """

    def _create(result: InterpreterResult | None = None, error: Exception | None = None) -> FakeInterpreter:
        return FakeInterpreter(result, error)

    return _create


@pytest.fixture
def make_notifier():
    def _create(result: NotificationResult | None = None, error: Exception | None = None) -> FakeNotifier:
        return FakeNotifier(result, error)

    return _create
