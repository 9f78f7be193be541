from __future__ import annotations

import threading

import pytest

from voicehome.services.device_registry import DEFAULT_DEVICES, DeviceRegistry
from voicehome.services.tool_dispatcher import (
    TOOL_DECLARATIONS,
    ToolCall,
    ToolDispatcher,
)


@pytest.fixture()
def registry() -> DeviceRegistry:
    return DeviceRegistry.from_config(DEFAULT_DEVICES)


@pytest.fixture()
def dispatcher(registry: DeviceRegistry) -> ToolDispatcher:
    return ToolDispatcher(registry)


def test_control_device_turns_on_fuzzy_match(registry: DeviceRegistry, dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch(
        ToolCall(id="c1", name="controlDevice", args={"deviceName": "sala", "action": "turnOn"})
    )
    assert result.status == "ok"
    assert "Luz da Sala" in result.message and "ligado" in result.message
    assert registry.get("1").is_on is True


def test_control_device_turn_off(registry: DeviceRegistry, dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch(
        ToolCall(id="c2", name="controlDevice", args={"deviceName": "AR CONDICIONADO", "action": "turnOff"})
    )
    assert result.message == "Ar Condicionado agora está desligado"
    assert registry.get("2").is_on is False


def test_unknown_device_reports_error_without_mutation(registry: DeviceRegistry, dispatcher: ToolDispatcher) -> None:
    before = registry.devices()
    result = dispatcher.dispatch(
        ToolCall(id="c3", name="setDeviceValue", args={"deviceName": "inexistente", "value": 50})
    )
    assert (result.status, result.message) == ("error", "device not found")
    assert registry.devices() == before


def test_set_value_is_stored_verbatim(registry: DeviceRegistry, dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch(
        ToolCall(id="c4", name="setDeviceValue", args={"deviceName": "persiana", "value": 150})
    )
    assert result.ok
    assert result.message == "Persiana ajustado para 150"
    assert registry.get("3").value == 150


def test_ambiguous_name_resolves_to_first_device(registry: DeviceRegistry, dispatcher: ToolDispatcher) -> None:
    dispatcher.dispatch(ToolCall(id="c5", name="setDeviceValue", args={"deviceName": "luz", "value": 10}))
    assert registry.get("1").value == 10
    assert registry.get("4").value == 100


@pytest.mark.parametrize(
    "call, message",
    [
        (ToolCall(id="e1", name="controlDevice", args={"deviceName": "sala", "action": "dim"}), "invalid action: 'dim'"),
        (ToolCall(id="e2", name="setDeviceValue", args={"deviceName": "sala", "value": "alto"}), "invalid value: 'alto'"),
        (ToolCall(id="e3", name="setDeviceValue", args={"deviceName": "sala", "value": True}), "invalid value: True"),
        (ToolCall(id="e4", name="setDeviceValue", args={"deviceName": "tv", "value": 20}), "Smart TV does not support a value"),
        (ToolCall(id="e5", name="openDoor", args={}), "unknown function: openDoor"),
        (ToolCall(id="e6", name="controlDevice", args={"action": "turnOn"}), "device not found"),
    ],
)
def test_invalid_calls_become_error_results(dispatcher: ToolDispatcher, call: ToolCall, message: str) -> None:
    result = dispatcher.dispatch(call)
    assert result.status == "error"
    assert result.message == message
    assert result.id == call.id and result.name == call.name


def test_function_response_shape() -> None:
    call = ToolCall.from_wire({"id": "abc", "name": "controlDevice", "args": {"deviceName": "tv", "action": "turnOn"}})
    result = ToolDispatcher(DeviceRegistry.from_config(DEFAULT_DEVICES)).dispatch(call)
    assert result.as_function_response() == {
        "id": "abc",
        "name": "controlDevice",
        "response": {"result": {"status": "ok", "message": "Smart TV agora está ligado"}},
    }


def test_dispatch_all_preserves_call_order(dispatcher: ToolDispatcher) -> None:
    calls = [
        ToolCall(id=str(i), name="controlDevice", args={"deviceName": "leitura", "action": action})
        for i, action in enumerate(["turnOn", "turnOff", "turnOn"])
    ]
    results = dispatcher.dispatch_all(calls)
    assert [r.id for r in results] == ["0", "1", "2"]
    assert results[-1].message.endswith("ligado")


def test_declarations_require_both_fields() -> None:
    by_name = {d["name"]: d["parameters"] for d in TOOL_DECLARATIONS}
    assert by_name["controlDevice"]["required"] == ["deviceName", "action"]
    assert by_name["setDeviceValue"]["required"] == ["deviceName", "value"]
    assert by_name["setDeviceValue"]["properties"]["value"]["type"] == "NUMBER"


def test_dispatch_shares_the_registry_lock(registry: DeviceRegistry, dispatcher: ToolDispatcher) -> None:
    call = ToolCall(id="c9", name="controlDevice", args={"deviceName": "sala", "action": "turnOn"})
    results = []
    worker = threading.Thread(target=lambda: results.append(dispatcher.dispatch(call)))
    with registry.lock:
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert registry.get("1").is_on is False
    worker.join(timeout=2)
    assert results[0].status == "ok"
    assert registry.get("1").is_on is True
