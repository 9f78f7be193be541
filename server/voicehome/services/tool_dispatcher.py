"""Resolve and apply device mutations requested by the conversational model."""
from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from .device_registry import DeviceRegistry

logger = logging.getLogger(__name__)

CONTROL_DEVICE = "controlDevice"
SET_DEVICE_VALUE = "setDeviceValue"

ACTION_TURN_ON = "turnOn"
ACTION_TURN_OFF = "turnOff"

DEVICE_NOT_FOUND = "device not found"

STATUS_OK = "ok"
STATUS_ERROR = "error"

# Declarations handed to the model during the handshake.
TOOL_DECLARATIONS: list[dict[str, Any]] = [
    {
        "name": CONTROL_DEVICE,
        "description": "Ligar ou desligar um dispositivo específico.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "deviceName": {
                    "type": "STRING",
                    "description": "O nome do dispositivo a controlar (ex: Luz da Sala)",
                },
                "action": {
                    "type": "STRING",
                    "description": '"turnOn" para ligar, "turnOff" para desligar',
                },
            },
            "required": ["deviceName", "action"],
        },
    },
    {
        "name": SET_DEVICE_VALUE,
        "description": "Ajustar um valor numérico de um dispositivo (temperatura, brilho, abertura).",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "deviceName": {"type": "STRING", "description": "O nome do dispositivo."},
                "value": {
                    "type": "NUMBER",
                    "description": "O valor alvo (ex: 22 para temperatura, 50 para brilho).",
                },
            },
            "required": ["deviceName", "value"],
        },
    },
]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, payload: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            args=dict(payload.get("args") or {}),
        )


@dataclass(frozen=True)
class ToolResult:
    id: str
    name: str
    status: str
    message: str

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def as_function_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "response": {"result": {"status": self.status, "message": self.message}},
        }


def _format_value(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class ToolDispatcher:
    """Apply tool calls to the registry, one at a time.

    Resolution and mutation happen under the registry lock, so no other
    mutation (a dispatch or a direct user change) interleaves with a call. Every call
    yields exactly one ``ToolResult``; failures are reported, never raised.
    """

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry
        self._lock = registry.lock
        self._handlers: Dict[str, Callable[[ToolCall], ToolResult]] = {
            CONTROL_DEVICE: self._control_device,
            SET_DEVICE_VALUE: self._set_device_value,
        }

    def dispatch(self, call: ToolCall) -> ToolResult:
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning("Unknown tool call %s (id=%s)", call.name, call.id)
            return self._error(call, f"unknown function: {call.name}")
        with self._lock:
            try:
                result = handler(call)
            except Exception as exc:
                logger.exception("Tool call %s (id=%s) failed", call.name, call.id)
                result = self._error(call, f"failed to apply {call.name}: {exc}")
        logger.info(
            "Tool call %s(%s) -> %s: %s", call.name, call.args, result.status, result.message
        )
        return result

    def dispatch_all(self, calls: list[ToolCall]) -> list[ToolResult]:
        return [self.dispatch(call) for call in calls]

    def _error(self, call: ToolCall, message: str) -> ToolResult:
        return ToolResult(id=call.id, name=call.name, status=STATUS_ERROR, message=message)

    def _control_device(self, call: ToolCall) -> ToolResult:
        action = call.args.get("action")
        if action not in (ACTION_TURN_ON, ACTION_TURN_OFF):
            return self._error(call, f"invalid action: {action!r}")
        target = self._registry.find_by_fuzzy_name(str(call.args.get("deviceName") or ""))
        if target is None:
            return self._error(call, DEVICE_NOT_FOUND)
        should_be_on = action == ACTION_TURN_ON
        self._registry.set_power(target.id, should_be_on)
        state = "ligado" if should_be_on else "desligado"
        return ToolResult(
            id=call.id,
            name=call.name,
            status=STATUS_OK,
            message=f"{target.name} agora está {state}",
        )

    def _set_device_value(self, call: ToolCall) -> ToolResult:
        value = call.args.get("value")
        # bool is a Number subclass; a flag is not a setpoint.
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            return self._error(call, f"invalid value: {value!r}")
        target = self._registry.find_by_fuzzy_name(str(call.args.get("deviceName") or ""))
        if target is None:
            return self._error(call, DEVICE_NOT_FOUND)
        if not target.category.has_value:
            return self._error(call, f"{target.name} does not support a value")
        self._registry.set_value(target.id, value)
        return ToolResult(
            id=call.id,
            name=call.name,
            status=STATUS_OK,
            message=f"{target.name} ajustado para {_format_value(value)}",
        )
