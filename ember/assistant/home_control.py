"""Device inventory and smart-home execution through Home Assistant."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from .config import HomeAssistantConfig
from .errors import DeviceControlAuthError, DeviceControlError
from .intent_matcher import ACTION_LABELS

LOGGER = logging.getLogger(__name__)

# Matcher device category -> inventory section.
INVENTORY_SECTIONS: dict[str, str] = {
    "lights": "lights",
    "thermostat": "thermostats",
    "entertainment": "entertainment",
    "locks": "locks",
}

TEMPERATURE_STEP = 2.0
DIM_BRIGHTNESS_PCT = 30
BRIGHT_BRIGHTNESS_PCT = 100

# action -> (domain, service, extra service data)
SERVICE_MAP: dict[str, tuple[str, str, dict[str, Any]]] = {
    "lights_on": ("light", "turn_on", {}),
    "lights_off": ("light", "turn_off", {}),
    "lights_bright": ("light", "turn_on", {"brightness_pct": BRIGHT_BRIGHTNESS_PCT}),
    "lights_dim": ("light", "turn_on", {"brightness_pct": DIM_BRIGHTNESS_PCT}),
    "tv_on": ("media_player", "turn_on", {}),
    "tv_off": ("media_player", "turn_off", {}),
    "volume_up": ("media_player", "volume_up", {}),
    "volume_down": ("media_player", "volume_down", {}),
    "door_lock": ("lock", "lock", {}),
    "door_unlock": ("lock", "unlock", {}),
}


@dataclass(frozen=True)
class Device:
    id: str
    name: str


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str
    action: str | None = None
    simulated: bool = False


class DeviceInventory:
    """Configured devices per section (lights, thermostats, entertainment, locks)."""

    def __init__(self, devices: dict[str, list[Device]] | None = None) -> None:
        self._devices: dict[str, list[Device]] = {section: [] for section in INVENTORY_SECTIONS.values()}
        for section, items in (devices or {}).items():
            if section in self._devices:
                self._devices[section] = list(items)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceInventory:
        devices: dict[str, list[Device]] = {}
        for section in INVENTORY_SECTIONS.values():
            items = data.get(section) or []
            if not isinstance(items, list):
                continue
            parsed: list[Device] = []
            for item in items:
                if isinstance(item, dict) and item.get("id"):
                    parsed.append(Device(id=str(item["id"]), name=str(item.get("name") or item["id"])))
            devices[section] = parsed
        return cls(devices)

    @classmethod
    def load(cls, path: Path | str | None) -> DeviceInventory:
        if not path:
            return cls()
        file_path = Path(path)
        if not file_path.exists():
            return cls()
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            LOGGER.warning("[devices] Failed to load devices file %s: %s", file_path, exc)
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls.from_dict(data)

    def get(self, category: str) -> list[Device]:
        section = INVENTORY_SECTIONS.get(category, category)
        return list(self._devices.get(section, []))

    def put(self, category: str, device: Device) -> None:
        section = INVENTORY_SECTIONS.get(category, category)
        if section not in self._devices:
            raise ValueError(f"Unknown device category: {category}")
        self._devices[section] = [item for item in self._devices[section] if item.id != device.id] + [device]

    def primary_device(self, category: str | None) -> Device | None:
        if not category:
            return None
        devices = self.get(category)
        return devices[0] if devices else None

    def available_categories(self) -> set[str]:
        return {category for category, section in INVENTORY_SECTIONS.items() if self._devices.get(section)}

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        return {
            section: [{"id": device.id, "name": device.name} for device in devices]
            for section, devices in self._devices.items()
        }


def describe_action(action_type: str, room: str | None = None) -> str:
    label = ACTION_LABELS.get(action_type, action_type.replace("_", " "))
    return f"{label} in {room}" if room else label


class DeviceController:
    async def execute(self, action_type: str, room: str | None = None, device_id: str | None = None) -> ActionResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SimulatedDeviceController(DeviceController):
    """Reports every action as done without touching a real device."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER

    async def execute(self, action_type: str, room: str | None = None, device_id: str | None = None) -> ActionResult:
        self.logger.info("[devices] Simulated %s", describe_action(action_type, room))
        return ActionResult(
            success=True,
            message=f"{describe_action(action_type, room)} (simulated)",
            action=action_type,
            simulated=True,
        )


class HomeAssistantDeviceController(DeviceController):
    """Run device actions as Home Assistant service calls.

    The device id is the Home Assistant entity id. Without one the action is
    simulated and reported as such.
    """

    def __init__(
        self,
        config: HomeAssistantConfig,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not config.base_url:
            raise ValueError("Home Assistant base URL is not configured")
        if not config.token:
            raise ValueError("Home Assistant token is not configured")
        self.config = config
        self.logger = logger or LOGGER
        self._simulator = SimulatedDeviceController(self.logger)
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {config.token}", "Content-Type": "application/json"},
            timeout=config.timeout,
            verify=config.verify_ssl,
            trust_env=False,
        )
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()

    async def execute(self, action_type: str, room: str | None = None, device_id: str | None = None) -> ActionResult:
        if not device_id:
            return await self._simulator.execute(action_type, room)
        try:
            if action_type in ("temp_up", "temp_down"):
                await self._step_temperature(device_id, TEMPERATURE_STEP if action_type == "temp_up" else -TEMPERATURE_STEP)
            else:
                mapping = SERVICE_MAP.get(action_type)
                if mapping is None:
                    return ActionResult(success=False, message=f"Unsupported action: {action_type}", action=action_type)
                domain, service, extra = mapping
                await self.call_service(domain, service, {"entity_id": device_id, **extra})
        except DeviceControlError as exc:
            self.logger.warning("[devices] %s failed on %s: %s", action_type, device_id, exc)
            return ActionResult(success=False, message=str(exc), action=action_type)
        self.logger.info("[devices] %s on %s", action_type, device_id)
        return ActionResult(success=True, message=describe_action(action_type, room), action=action_type)

    async def get_state(self, entity_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/api/states/{entity_id}")
        return payload if isinstance(payload, dict) else {}

    async def call_service(self, domain: str, service: str, data: dict[str, Any] | None = None) -> Any:
        return await self._request("POST", f"/api/services/{domain}/{service}", json=data or {})

    async def _step_temperature(self, entity_id: str, delta: float) -> None:
        state = await self.get_state(entity_id)
        attributes = state.get("attributes") or {}
        try:
            current = float(attributes.get("temperature"))
        except (TypeError, ValueError) as exc:
            raise DeviceControlError(f"{entity_id} has no target temperature") from exc
        await self.call_service(
            "climate",
            "set_temperature",
            {"entity_id": entity_id, "temperature": current + delta},
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise DeviceControlError(f"Failed to contact Home Assistant: {exc}") from exc
        if response.status_code in (401, 403):
            raise DeviceControlAuthError("Home Assistant rejected the token")
        if response.status_code >= 400:
            raise DeviceControlError(f"Home Assistant error {response.status_code}: {response.text}")
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text


def build_device_controller(config: HomeAssistantConfig, logger: logging.Logger | None = None) -> DeviceController:
    if config.base_url and config.token:
        return HomeAssistantDeviceController(config, logger=logger)
    return SimulatedDeviceController(logger)
