"""In-memory registry of controllable household devices."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


class DeviceCategory(str, Enum):
    """Closed set of device kinds the voice assistant can address."""

    ILLUMINATION = "illumination"
    CLIMATE = "climate"
    SHADING = "shading"
    APPLIANCE = "generic-appliance"

    @property
    def has_value(self) -> bool:
        """Brightness, temperature or openness; plain appliances only switch."""
        return self is not DeviceCategory.APPLIANCE


class UnknownDeviceError(KeyError):
    """Raised when a mutation targets an id that is not registered."""


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    category: DeviceCategory
    is_on: bool = False
    value: Optional[float] = None
    room: str = ""
    unit: Optional[str] = None

    def __post_init__(self) -> None:
        if self.value is not None and not self.category.has_value:
            raise ValueError(f"Device {self.id!r} ({self.category.value}) does not take a value")


# The household the assistant is configured with at process start.
DEFAULT_DEVICES: list[dict[str, Any]] = [
    {"id": "1", "name": "Luz da Sala", "category": "illumination", "is_on": False, "value": 80, "unit": "%", "room": "Sala de Estar"},
    {"id": "2", "name": "Ar Condicionado", "category": "climate", "is_on": True, "value": 24, "unit": "°C", "room": "Quarto Principal"},
    {"id": "3", "name": "Persiana", "category": "shading", "is_on": False, "value": 0, "unit": "%", "room": "Sala de Estar"},
    {"id": "4", "name": "Luz da Cozinha", "category": "illumination", "is_on": True, "value": 100, "unit": "%", "room": "Cozinha"},
    {"id": "5", "name": "Smart TV", "category": "generic-appliance", "is_on": False, "room": "Sala de Estar"},
    {"id": "6", "name": "Luz de Leitura", "category": "illumination", "is_on": False, "value": 50, "unit": "%", "room": "Quarto Principal"},
]


class DeviceRegistry:
    """Ordered mapping of device id to its current state.

    Records are immutable; every mutation stores a replacement record so a reader
    holding an earlier snapshot never sees a half-applied change.
    ``lock`` is re-entrant and serializes every mutation; callers that resolve
    and then mutate hold it across both steps.
    """

    def __init__(self, devices: Iterable[Device] = ()) -> None:
        self.lock = threading.RLock()
        self._devices: dict[str, Device] = {}
        for device in devices:
            if device.id in self._devices:
                raise ValueError(f"Duplicate device id {device.id!r}")
            self._devices[device.id] = device

    @classmethod
    def from_config(cls, records: Iterable[Mapping[str, Any]]) -> "DeviceRegistry":
        """Build a registry from static configuration records."""
        devices = []
        for record in records:
            value = record.get("value")
            devices.append(
                Device(
                    id=str(record["id"]),
                    name=str(record["name"]),
                    category=DeviceCategory(record["category"]),
                    is_on=bool(record.get("is_on", False)),
                    value=float(value) if value is not None else None,
                    room=str(record.get("room", "")),
                    unit=record.get("unit"),
                )
            )
        return cls(devices)

    def __len__(self) -> int:
        return len(self._devices)

    def devices(self) -> list[Device]:
        """Snapshot of all devices in registry order."""
        return list(self._devices.values())

    def get(self, device_id: str) -> Device:
        try:
            return self._devices[device_id]
        except KeyError:
            raise UnknownDeviceError(device_id) from None

    def active_count(self) -> int:
        return sum(1 for device in self._devices.values() if device.is_on)

    def find_by_fuzzy_name(self, query: str) -> Optional[Device]:
        """Return the first device whose name contains ``query``, ignoring case.

        Ambiguous queries ("luz") resolve to the first match in registry order.
        """
        needle = (query or "").strip().lower()
        if not needle:
            return None
        for device in self._devices.values():
            if needle in device.name.lower():
                return device
        return None

    def set_power(self, device_id: str, on: bool) -> Device:
        with self.lock:
            current = self.get(device_id)
            if current.is_on == on:
                return current
            updated = replace(current, is_on=on)
            self._devices[device_id] = updated
        logger.info("Device %s (%s) power -> %s", current.id, current.name, "on" if on else "off")
        return updated

    def set_value(self, device_id: str, value: float) -> Device:
        """Store ``value`` verbatim; range policy belongs to the caller."""
        with self.lock:
            current = self.get(device_id)
            updated = replace(current, value=value)
            self._devices[device_id] = updated
        logger.info("Device %s (%s) value -> %s", current.id, current.name, value)
        return updated

    def toggle(self, device_id: str) -> Device:
        with self.lock:
            return self.set_power(device_id, not self.get(device_id).is_on)
