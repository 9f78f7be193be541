"""Pydantic models describing request and response payloads."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..services.device_registry import Device
from ..services.realtime_voice import SessionStatus


class DeviceResponse(BaseModel):
    """Current state of one device as shown on the control panel."""

    id: str
    name: str
    category: str
    is_on: bool
    value: Optional[float] = None
    unit: Optional[str] = None
    room: str

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            id=device.id,
            name=device.name,
            category=device.category.value,
            is_on=device.is_on,
            value=device.value,
            unit=device.unit,
            room=device.room,
        )


class PowerUpdateRequest(BaseModel):
    on: bool = Field(..., description="Desired power state")


class ValueUpdateRequest(BaseModel):
    value: float = Field(..., description="Brightness, temperature or openness; stored as given")


class SessionStatusResponse(BaseModel):
    """Represents the current state of the voice session."""

    session_id: Optional[str] = None
    phase: str = Field(default="idle", description="idle | connecting | connected | closed")
    status: str = Field(..., description="User-facing status line")
    capturing: bool = False
    active_devices: int = 0

    @classmethod
    def from_status(cls, status: Optional[SessionStatus], *, idle_message: str, active_devices: int) -> "SessionStatusResponse":
        if status is None:
            return cls(status=idle_message, active_devices=active_devices)
        return cls(
            session_id=status.session_id,
            phase=status.phase.value,
            status=status.message,
            capturing=status.capturing,
            active_devices=active_devices,
        )
