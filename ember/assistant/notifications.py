"""Emergency and caregiver notification over Twilio voice calls and SMS."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from xml.sax.saxutils import escape

import httpx

from ember.utils import mask_phone

from .config import CaregiverConfig, EmergencyConfig
from .errors import NotificationError
from .models import Interpretation

LOGGER = logging.getLogger(__name__)

CALL_VOICE = "Polly.Matthew"
DEFAULT_MIN_CONFIDENCE = 60


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    call_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class CaregiverReport:
    success: bool
    sent: int = 0
    total: int = 0
    reason: str | None = None


class EmergencyNotifier:
    async def notify(self, phone: str, message: str, user_name: str) -> NotificationResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class TextMessenger:
    async def send(self, phone: str, body: str) -> NotificationResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def build_alert_message(message: str, user_name: str | None) -> str:
    said = f" They said: {message.strip()}." if message and message.strip() else ""
    return (
        f"Hello, this is an urgent alert from Ember. {user_name or 'Your contact'} is asking for help.{said} "
        "Please reach out to them as soon as possible. This is an automated emergency message. Thank you."
    )


def build_urgent_sms(message: str, user_name: str | None) -> str:
    return (
        f"URGENT: {message.strip()}\n\n"
        f"This is an automated message from Ember. {user_name or 'Your contact'} needs help."
    )


def format_interpretation_message(original: str, interpretation: str, confidence: int, timestamp: str) -> str:
    """Caregiver update for one resolved utterance."""
    return (
        "[Ember Alert]\n\n"
        f'They said: "{original}"\n\n'
        f'Meant: "{interpretation}"\n\n'
        f"Confidence: {confidence}%\n\n"
        f"Time: {timestamp}\n\n"
        "Reply HELP for assistance, STOP to unsubscribe"
    )


def build_twiml(alert: str) -> str:
    """Voice script that reads the alert, announces the repeat, and reads it again."""
    spoken = escape(alert.replace('"', "").replace("'", ""))
    say = f'<Say voice="{CALL_VOICE}" language="en-US">'
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<Response>\n"
        f"  {say}{spoken}</Say>\n"
        '  <Pause length="1"/>\n'
        f"  {say}This message will repeat once more.</Say>\n"
        '  <Pause length="1"/>\n'
        f"  {say}{spoken}</Say>\n"
        "  <Hangup/>\n"
        "</Response>"
    )


def normalize_phone(phone: str) -> str:
    """E.164-style number; bare 10-digit numbers get the US country code."""
    cleaned = re.sub(r"[^+\d]", "", phone or "")
    if not cleaned:
        return ""
    if cleaned.startswith("+"):
        return cleaned
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    return f"+{cleaned}"


class TwilioRestClient:
    """Creates Twilio call and message resources; errors raise NotificationError."""

    def __init__(
        self,
        config: EmergencyConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout, trust_env=False)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def create(self, resource: str, form: dict[str, str]) -> str | None:
        """POST to ``/Accounts/<sid>/<resource>.json`` and return the new resource sid."""
        sid = self.config.twilio_account_sid
        token = self.config.twilio_auth_token
        from_number = self.config.twilio_from_number
        if not sid or not token or not from_number:
            raise NotificationError("Twilio credentials not configured")
        url = f"{self.config.twilio_base_url.rstrip('/')}/Accounts/{sid}/{resource}.json"
        try:
            response = await self._client.post(url, data={**form, "From": from_number}, auth=(sid, token))
        except httpx.RequestError as exc:
            raise NotificationError(f"Failed to contact Twilio: {exc}") from exc
        try:
            payload: Any = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.status_code >= 400:
            detail = payload.get("message") or payload.get("code") or response.status_code
            raise NotificationError(f"Twilio error: {detail}")
        return payload.get("sid")


class TwilioEmergencyNotifier(EmergencyNotifier):
    """Place a voice call with a spoken alert via the Twilio REST API."""

    def __init__(
        self,
        config: EmergencyConfig,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or LOGGER
        self.twilio = TwilioRestClient(config, client=client)

    async def close(self) -> None:
        await self.twilio.close()

    async def notify(self, phone: str, message: str, user_name: str) -> NotificationResult:
        to_number = normalize_phone(phone)
        if not to_number:
            raise NotificationError("Phone number is required")
        self.logger.info("[emergency] Calling %s on behalf of %s", mask_phone(to_number), user_name)
        call_id = await self.twilio.create(
            "Calls",
            {"To": to_number, "Twiml": build_twiml(build_alert_message(message, user_name))},
        )
        self.logger.info("[emergency] Call to %s initiated (%s)", mask_phone(to_number), call_id)
        return NotificationResult(success=True, call_id=call_id)


class TwilioMessenger(TextMessenger):
    """Send SMS through the Twilio Messages API."""

    def __init__(
        self,
        config: EmergencyConfig,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or LOGGER
        self.twilio = TwilioRestClient(config, client=client)

    async def close(self) -> None:
        await self.twilio.close()

    async def send(self, phone: str, body: str) -> NotificationResult:
        to_number = normalize_phone(phone)
        if not to_number or not body:
            raise NotificationError("Phone number and message are required")
        message_id = await self.twilio.create("Messages", {"To": to_number, "Body": body})
        self.logger.info("[sms] Message to %s sent (%s)", mask_phone(to_number), message_id)
        return NotificationResult(success=True, call_id=message_id)


class SmsEmergencyNotifier(EmergencyNotifier):
    """Emergency contact reached by text message instead of a call."""

    def __init__(self, messenger: TextMessenger, logger: logging.Logger | None = None) -> None:
        self.messenger = messenger
        self.logger = logger or LOGGER

    async def close(self) -> None:
        await self.messenger.close()

    async def notify(self, phone: str, message: str, user_name: str) -> NotificationResult:
        self.logger.info("[emergency] Texting %s on behalf of %s", mask_phone(phone), user_name)
        return await self.messenger.send(phone, build_urgent_sms(message, user_name))


class LoggingEmergencyNotifier(EmergencyNotifier):
    """Notifier used when no telephony is configured; it reports failure."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER

    async def notify(self, phone: str, message: str, user_name: str) -> NotificationResult:
        self.logger.error("[emergency] No call provider configured; could not call %s", mask_phone(phone))
        return NotificationResult(success=False, error="No emergency call provider configured")


class CaregiverNotifier:
    """Texts every resolved interpretation to the configured caregivers.

    Interpretations below ``min_confidence`` are not sent. Per-recipient
    failures are logged and counted, never raised.
    """

    def __init__(
        self,
        messenger: TextMessenger,
        phones: Sequence[str],
        *,
        min_confidence: int = DEFAULT_MIN_CONFIDENCE,
        clock: Callable[[], datetime] = datetime.now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.messenger = messenger
        self.phones = tuple(phone for phone in phones if phone)
        self.min_confidence = min_confidence
        self._clock = clock
        self.logger = logger or LOGGER

    async def close(self) -> None:
        await self.messenger.close()

    async def send_interpretation(self, interpretation: Interpretation) -> CaregiverReport:
        if not self.phones:
            self.logger.debug("[caregivers] No caregiver contacts configured")
            return CaregiverReport(success=False, reason="no_contacts")
        if interpretation.confidence < self.min_confidence:
            self.logger.debug("[caregivers] Confidence %d too low to send", interpretation.confidence)
            return CaregiverReport(success=False, total=len(self.phones), reason="low_confidence")

        body = format_interpretation_message(
            interpretation.original_text,
            interpretation.interpreted_text,
            interpretation.confidence,
            self._clock().strftime("%Y-%m-%d %H:%M:%S"),
        )
        results = await asyncio.gather(
            *(self.messenger.send(phone, body) for phone in self.phones),
            return_exceptions=True,
        )
        sent = 0
        for phone, result in zip(self.phones, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self.logger.warning("[caregivers] SMS to %s failed: %s", mask_phone(phone), result)
            elif result.success:
                sent += 1
        return CaregiverReport(success=sent > 0, sent=sent, total=len(self.phones))


def build_notifier(config: EmergencyConfig, logger: logging.Logger | None = None) -> EmergencyNotifier:
    """Notifier for the configured contact method."""
    if config.twilio_configured and config.contact_method == "call":
        return TwilioEmergencyNotifier(config, logger=logger)
    if config.twilio_configured and config.contact_method == "sms":
        return SmsEmergencyNotifier(TwilioMessenger(config, logger=logger), logger)
    return LoggingEmergencyNotifier(logger)


def build_caregiver_notifier(
    caregivers: CaregiverConfig,
    emergency: EmergencyConfig,
    logger: logging.Logger | None = None,
) -> CaregiverNotifier | None:
    if not caregivers.phones:
        return None
    if not emergency.twilio_configured:
        (logger or LOGGER).warning("[caregivers] Caregiver phones set but Twilio is not configured")
        return None
    messenger = TwilioMessenger(emergency, logger=logger)
    return CaregiverNotifier(messenger, caregivers.phones, min_confidence=caregivers.min_confidence, logger=logger)
