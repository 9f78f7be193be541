from __future__ import annotations

import asyncio
import base64
import threading

import numpy as np
import pytest

from fakes import FakeCaptureFactory, FakeClock, FakeTransport, drain
from voicehome.config import Settings
from voicehome.services.device_registry import DEFAULT_DEVICES, DeviceRegistry
from voicehome.services.realtime_voice import (
    STATUS_CONNECTION_ERROR,
    STATUS_IDLE,
    STATUS_LISTENING,
    STATUS_SETUP_FAILED,
    HandshakeError,
    SessionPhase,
    SessionStateError,
    SetupError,
    TransportError,
    VoiceSession,
)
from voicehome.services.tool_dispatcher import ToolDispatcher


def _run(coro):  # noqa: ANN001
    return asyncio.run(coro)


def _pcm_payload(samples: int) -> str:
    return base64.b64encode(np.zeros(samples, dtype="<i2").tobytes()).decode("ascii")


class Harness:
    def __init__(self, transport: FakeTransport | None = None, capture_fail: Exception | None = None) -> None:
        self.registry = DeviceRegistry.from_config(DEFAULT_DEVICES)
        self.transport = transport or FakeTransport()
        self.clocks: list[FakeClock] = []
        self.captures = FakeCaptureFactory(fail=capture_fail)
        self.statuses = []
        self.session = VoiceSession(
            registry=self.registry,
            dispatcher=ToolDispatcher(self.registry),
            transport=self.transport,
            settings=Settings(),
            clock_factory=self._make_clock,
            capture_factory=self.captures,
            on_status=self.statuses.append,
            session_id="test",
        )

    def _make_clock(self) -> FakeClock:
        clock = FakeClock()
        self.clocks.append(clock)
        return clock

    @property
    def clock(self) -> FakeClock:
        return self.clocks[-1]


def test_connect_walks_every_phase_and_starts_capture() -> None:
    async def scenario():
        h = Harness()
        assert h.session.phase is SessionPhase.IDLE
        await h.session.connect()
        phases = [status.phase for status in h.statuses]
        assert phases[0] is SessionPhase.CONNECTING
        assert SessionPhase.CONNECTED in phases
        assert h.session.phase is SessionPhase.CONNECTED
        assert h.session.capturing
        assert h.statuses[-1].message == STATUS_LISTENING
        assert len(h.captures.created) == 1 and h.captures.created[0].started
        await h.session.disconnect()

    _run(scenario())


def test_handshake_carries_device_snapshot_taken_at_connect() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        handshake = h.transport.handshakes[0]
        assert "Luz da Sala (no cômodo Sala de Estar)" in handshake.system_instruction
        assert handshake.response_modalities == ("AUDIO",)
        assert [d["name"] for d in handshake.function_declarations] == ["controlDevice", "setDeviceValue"]
        assert handshake.voice_name == "Kore"
        await h.session.disconnect()

    _run(scenario())


def test_connect_is_only_valid_from_idle() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        with pytest.raises(SessionStateError):
            await h.session.connect()
        await h.session.disconnect()
        with pytest.raises(SessionStateError):
            await h.session.connect()

    _run(scenario())


def test_outbound_frames_are_relayed_in_order() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        capture = h.captures.created[0]
        for payload in ("AAAA", "BBBB", "CCCC"):
            capture.emit(payload)
        await drain()
        sent = h.transport.link.realtime_inputs
        assert [m["media"]["data"] for m in sent] == ["AAAA", "BBBB", "CCCC"]
        assert all(m["media"]["mimeType"] == "audio/pcm;rate=16000" for m in sent)
        assert h.session.frames_sent == 3
        await h.session.disconnect()

    _run(scenario())


def test_two_tool_calls_produce_one_batched_response_in_order() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        await h.session.handle_server_message(
            {
                "toolCall": {
                    "functionCalls": [
                        {"id": "a", "name": "controlDevice", "args": {"deviceName": "sala", "action": "turnOn"}},
                        {"id": "b", "name": "setDeviceValue", "args": {"deviceName": "inexistente", "value": 50}},
                    ]
                }
            }
        )
        assert len(h.transport.link.tool_responses) == 1
        entries = h.transport.link.tool_responses[0]["functionResponses"]
        assert [e["id"] for e in entries] == ["a", "b"]
        assert entries[0]["response"]["result"]["status"] == "ok"
        assert entries[1]["response"]["result"] == {"status": "error", "message": "device not found"}
        assert h.registry.get("1").is_on is True
        await h.session.disconnect()

    _run(scenario())


def test_inbound_audio_is_scheduled_back_to_back() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        h.clock.current_time = 2.0
        await h.session.handle_server_message(
            {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": _pcm_payload(12_000)}}]}}}
        )
        await h.session.handle_server_message(
            {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": _pcm_payload(2_400)}}]}}}
        )
        assert [start for _, start in h.clock.nodes] == [2.0, 2.5]
        assert h.session.next_start == pytest.approx(2.6)
        await h.session.disconnect()

    _run(scenario())


def test_undecodable_audio_is_dropped_without_closing() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        await h.session.handle_server_message(
            {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": "not base64!"}}]}}}
        )
        assert h.clock.nodes == []
        assert h.session.payloads_dropped == 1
        assert h.session.phase is SessionPhase.CONNECTED
        await h.session.disconnect()

    _run(scenario())


def test_disconnect_releases_everything_and_resets_cursor() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        await h.session.handle_server_message(
            {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": _pcm_payload(2_400)}}]}}}
        )
        assert h.session.next_start > 0
        await h.session.disconnect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.session.next_start == 0.0
        assert h.clock.closed
        assert h.captures.created[0].stopped
        assert h.transport.link.closed
        assert h.statuses[-1].message == STATUS_IDLE
        await asyncio.wait_for(h.session.wait_closed(), timeout=1)

    _run(scenario())


def test_disconnect_is_idempotent() -> None:
    async def scenario():
        h = Harness()
        await h.session.disconnect()
        assert h.session.phase is SessionPhase.IDLE
        await h.session.connect()
        await h.session.disconnect()
        await h.session.disconnect()
        assert h.session.phase is SessionPhase.CLOSED
        assert [s.phase for s in h.statuses].count(SessionPhase.CLOSED) == 1

    _run(scenario())


def test_disconnect_during_pending_handshake_leaves_nothing_acquired() -> None:
    async def scenario():
        gate = asyncio.Event()
        h = Harness(transport=FakeTransport(gate=gate))
        connecting = asyncio.create_task(h.session.connect())
        await h.transport.opening.wait()
        assert h.session.phase is SessionPhase.CONNECTING

        await h.session.disconnect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.clock.closed

        gate.set()
        await connecting
        assert h.session.phase is SessionPhase.CLOSED
        assert h.captures.created == []
        assert h.transport.link.closed
        assert not h.session.capturing

    _run(scenario())


def test_handshake_failure_closes_session() -> None:
    async def scenario():
        h = Harness(transport=FakeTransport(fail=ConnectionRefusedError("denied")))
        with pytest.raises(HandshakeError):
            await h.session.connect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.clock.closed
        assert h.statuses[-1].message == STATUS_CONNECTION_ERROR

    _run(scenario())


def test_microphone_failure_is_a_setup_error() -> None:
    async def scenario():
        h = Harness(capture_fail=PermissionError("denied"))
        with pytest.raises(SetupError):
            await h.session.connect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.transport.link.closed
        assert h.clock.closed

    _run(scenario())


def test_output_device_failure_is_a_setup_error() -> None:
    async def scenario():
        h = Harness()

        def broken_clock():
            raise OSError("no output device")

        h.session._clock_factory = broken_clock
        with pytest.raises(SetupError):
            await h.session.connect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.transport.handshakes == []

    _run(scenario())


def test_remote_error_tears_down_like_disconnect() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        await h.transport.link.inbox.put(ConnectionResetError("socket closed"))
        await asyncio.wait_for(h.session.wait_closed(), timeout=1)
        assert h.session.phase is SessionPhase.CLOSED
        assert isinstance(h.session.last_error, TransportError)
        assert h.captures.created[0].stopped
        assert h.clock.closed
        assert h.session.next_start == 0.0

    _run(scenario())


def test_remote_close_ends_session() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        await h.transport.link.inbox.put(None)
        await asyncio.wait_for(h.session.wait_closed(), timeout=1)
        assert h.session.phase is SessionPhase.CLOSED
        assert h.session.last_error is None

    _run(scenario())


def test_messages_received_through_the_loop_are_dispatched() -> None:
    async def scenario():
        h = Harness()
        await h.session.connect()
        await h.transport.link.inbox.put(
            {"toolCall": {"functionCalls": [{"id": "x", "name": "controlDevice", "args": {"deviceName": "cozinha", "action": "turnOff"}}]}}
        )
        await drain()
        assert h.registry.get("4").is_on is False
        assert h.session.tool_responses_sent == 1
        await h.session.disconnect()

    _run(scenario())


def test_capture_construction_failure_is_a_setup_error() -> None:
    async def scenario():
        h = Harness()

        def broken_capture(on_frame):  # noqa: ANN001
            raise ValueError("frame_size must be positive")

        h.session._capture_factory = broken_capture
        with pytest.raises(SetupError):
            await h.session.connect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.transport.link.closed
        assert h.clock.closed
        assert h.statuses[-1].message == STATUS_SETUP_FAILED

    _run(scenario())


def test_disconnect_during_pending_microphone_releases_it() -> None:
    async def scenario():
        gate = asyncio.Event()
        h = Harness()
        h.captures.gate = gate
        connecting = asyncio.create_task(h.session.connect())
        while not h.captures.created:
            await asyncio.sleep(0)
        capture = h.captures.created[0]
        await capture.starting.wait()
        assert h.session.phase is SessionPhase.CONNECTED

        await h.session.disconnect()
        assert h.session.phase is SessionPhase.CLOSED
        assert h.transport.link.closed

        gate.set()
        await connecting
        assert h.session.phase is SessionPhase.CLOSED
        assert capture.stopped
        assert not h.session.capturing

    _run(scenario())


def test_disconnect_during_pending_output_clock_releases_it() -> None:
    async def scenario():
        entered = threading.Event()
        release = threading.Event()
        h = Harness()

        def slow_clock() -> FakeClock:
            entered.set()
            release.wait(timeout=5)
            return h._make_clock()

        h.session._clock_factory = slow_clock
        connecting = asyncio.create_task(h.session.connect())
        while not entered.is_set():
            await asyncio.sleep(0.01)

        await h.session.disconnect()
        assert h.session.phase is SessionPhase.CLOSED

        release.set()
        await connecting
        assert h.session.phase is SessionPhase.CLOSED
        assert h.clock.closed
        assert h.transport.handshakes == []
        assert h.captures.created == []

    _run(scenario())
