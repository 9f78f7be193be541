"""Realtime voice session management.

A ``VoiceSession`` owns one conversation with the remote model: the output
clock and playback cursor, the microphone pipeline, the outbound frame relay
and the inbound message loop. Sessions are single use and walk
``IDLE -> CONNECTING -> CONNECTED -> CLOSED``; ``CLOSED`` can be reached from
any phase.

Every await inside ``connect`` is followed by a generation check. Teardown bumps
the generation, so a connection attempt that resumes after ``disconnect()``
releases whatever it acquired late instead of resurrecting the session.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ..ai_agents.realtime_conversation import build_handshake
from ..config import Settings, settings as default_settings
from .audio_capture import AudioCapturePipeline, FrameCallback
from .audio_playback import (
    DecodeError,
    OutputClock,
    PlaybackScheduler,
    SoundDeviceOutputClock,
    decode_audio_payload,
)
from .device_registry import DeviceRegistry
from .live_transport import LiveLink, LiveTransport
from .tool_dispatcher import ToolCall, ToolDispatcher

logger = logging.getLogger(__name__)

STATUS_IDLE = "Toque no microfone para falar"
STATUS_CONNECTING = "Conectando..."
STATUS_LISTENING = "Ouvindo... Pode falar."
STATUS_CONNECTION_ERROR = "Erro na conexão. Tente novamente."
STATUS_SETUP_FAILED = "Falha ao iniciar. Verifique o microfone."


class SessionPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class SessionError(RuntimeError):
    """Base class for failures that end a voice session."""


class SetupError(SessionError):
    """Microphone or speaker could not be acquired."""


class HandshakeError(SessionError):
    """The remote peer refused the connection."""


class TransportError(SessionError):
    """The connection failed or was closed mid-session."""


class SessionStateError(SessionError):
    """Operation not valid in the current phase."""


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    phase: SessionPhase
    message: str
    capturing: bool = False


StatusCallback = Callable[[SessionStatus], None]
ClockFactory = Callable[[], OutputClock]
CaptureFactory = Callable[[FrameCallback], AudioCapturePipeline]


class VoiceSession:
    """One duplex conversation with the remote model."""

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        dispatcher: ToolDispatcher,
        transport: LiveTransport,
        settings: Optional[Settings] = None,
        clock_factory: Optional[ClockFactory] = None,
        capture_factory: Optional[CaptureFactory] = None,
        on_status: Optional[StatusCallback] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self._registry = registry
        self._dispatcher = dispatcher
        self._transport = transport
        self._settings = settings or default_settings
        self._clock_factory = clock_factory or self._default_clock
        self._capture_factory = capture_factory or self._default_capture
        self._on_status = on_status

        self._phase = SessionPhase.IDLE
        self._status_message = STATUS_IDLE
        self._generation = 0
        self._closed = asyncio.Event()

        self._clock: Optional[OutputClock] = None
        self._scheduler: Optional[PlaybackScheduler] = None
        self._capture: Optional[AudioCapturePipeline] = None
        self._link: Optional[LiveLink] = None
        self._outbound: Optional[asyncio.Queue[str]] = None
        self._send_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None

        self.frames_sent = 0
        self.payloads_dropped = 0
        self.tool_responses_sent = 0
        self.last_error: Optional[SessionError] = None

    # ------------------------------------------------------------------
    # Introspection

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_active(self) -> bool:
        return self._phase in (SessionPhase.CONNECTING, SessionPhase.CONNECTED)

    @property
    def capturing(self) -> bool:
        return self._capture is not None and self._capture.running

    @property
    def next_start(self) -> float:
        """Playback cursor in output clock seconds; 0 when no clock is held."""
        return self._scheduler.next_start if self._scheduler is not None else 0.0

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.session_id,
            phase=self._phase,
            message=self._status_message,
            capturing=self.capturing,
        )

    async def wait_closed(self) -> None:
        """Block until teardown has released every resource."""
        await self._closed.wait()

    # ------------------------------------------------------------------
    # Lifecycle

    async def connect(self) -> None:
        """Open the session: output clock, handshake, then microphone.

        Raises ``SetupError`` or ``HandshakeError`` when the attempt fails; the
        session is ``CLOSED`` by then. Returns quietly if ``disconnect()``
        superseded the attempt while it was suspended.
        """
        if self._phase is not SessionPhase.IDLE:
            raise SessionStateError(f"connect() is only valid from idle, session is {self._phase.value}")
        generation = self._generation
        self._set_phase(SessionPhase.CONNECTING, STATUS_CONNECTING)
        try:
            await self._connect(generation)
        except asyncio.CancelledError:
            await self.disconnect()
            raise

    async def _connect(self, generation: int) -> None:
        loop = asyncio.get_running_loop()

        try:
            clock = await loop.run_in_executor(None, self._clock_factory)
        except Exception as exc:
            await self._abort(generation, SetupError(f"audio output unavailable: {exc}"), STATUS_SETUP_FAILED, exc)
            return
        if not self._is_current(generation):
            clock.close()
            return
        self._clock = clock
        self._scheduler = PlaybackScheduler(clock)

        # Device list is frozen into the instruction as of now.
        handshake = build_handshake(self._registry.devices(), self._settings)
        try:
            link = await self._transport.open(handshake)
        except Exception as exc:
            await self._abort(generation, HandshakeError(f"handshake rejected: {exc}"), STATUS_CONNECTION_ERROR, exc)
            return
        if not self._is_current(generation):
            logger.info(f"[Session {self.session_id}] Handshake finished after disconnect; closing stale link")
            await self._close_link(link)
            return
        self._link = link
        self._outbound = asyncio.Queue()
        self._set_phase(SessionPhase.CONNECTED, STATUS_LISTENING)
        self._receive_task = asyncio.create_task(self._receive_loop(generation, link))

        try:
            capture = self._capture_factory(self._on_frame)
            await capture.start()
        except Exception as exc:
            await self._abort(generation, SetupError(f"microphone unavailable: {exc}"), STATUS_SETUP_FAILED, exc)
            return
        if not self._is_current(generation):
            logger.info(f"[Session {self.session_id}] Microphone granted after disconnect; releasing it")
            capture.stop()
            return
        self._capture = capture
        self._send_task = asyncio.create_task(self._send_loop(generation, link, self._outbound))
        self._set_status(STATUS_LISTENING)
        logger.info(f"[Session {self.session_id}] Connected; streaming microphone audio")

    async def _abort(self, generation: int, error: SessionError, message: str, cause: Exception) -> None:
        if not self._is_current(generation):
            logger.info(f"[Session {self.session_id}] Ignoring failure of superseded attempt: {cause}")
            return
        logger.error(f"[Session {self.session_id}] {error}")
        self.last_error = error
        await self._teardown(message)
        raise error from cause

    async def disconnect(self) -> None:
        """Close the session and release everything it holds. No-op unless active."""
        if not self.is_active:
            return
        await self._teardown(STATUS_IDLE)

    async def _teardown(self, message: str) -> None:
        self._generation += 1
        self._set_phase(SessionPhase.CLOSED, message)

        capture, self._capture = self._capture, None
        if capture is not None:
            try:
                capture.stop()
            except Exception:
                logger.exception(f"[Session {self.session_id}] Failed to stop capture")

        clock, self._clock = self._clock, None
        if clock is not None:
            try:
                clock.close()
            except Exception:
                logger.exception(f"[Session {self.session_id}] Failed to close output clock")
        if self._scheduler is not None:
            self._scheduler.reset()
        self._scheduler = None

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._send_task, self._receive_task)
            if task is not None and task is not current and not task.done()
        ]
        self._send_task = None
        self._receive_task = None
        self._outbound = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        link, self._link = self._link, None
        if link is not None:
            await self._close_link(link)

        self._closed.set()
        logger.info(
            f"[Session {self.session_id}] Closed (frames_sent={self.frames_sent}, "
            f"tool_responses={self.tool_responses_sent}, dropped_payloads={self.payloads_dropped})"
        )

    async def _close_link(self, link: LiveLink) -> None:
        try:
            await link.close()
        except Exception as exc:
            logger.warning(f"[Session {self.session_id}] Error closing live link: {exc}")

    # ------------------------------------------------------------------
    # Outbound

    def _on_frame(self, payload: str) -> None:
        if self._phase is not SessionPhase.CONNECTED or self._outbound is None:
            return
        self._outbound.put_nowait(payload)

    async def _send_loop(self, generation: int, link: LiveLink, queue: asyncio.Queue[str]) -> None:
        mime_type = f"audio/pcm;rate={self._settings.capture_sample_rate}"
        while True:
            payload = await queue.get()
            if not self._is_current(generation):
                return
            try:
                await link.send_realtime_input({"media": {"mimeType": mime_type, "data": payload}})
            except Exception as exc:
                await self._transport_failed(generation, exc)
                return
            self.frames_sent += 1

    # ------------------------------------------------------------------
    # Inbound

    async def _receive_loop(self, generation: int, link: LiveLink) -> None:
        try:
            async for message in link.receive():
                if not self._is_current(generation):
                    return
                await self.handle_server_message(message)
        except Exception as exc:
            await self._transport_failed(generation, exc)
            return
        if self._is_current(generation):
            logger.info(f"[Session {self.session_id}] Remote peer closed the session")
            await self._teardown(STATUS_IDLE)

    async def _transport_failed(self, generation: int, exc: Exception) -> None:
        if not self._is_current(generation):
            return
        self.last_error = TransportError(str(exc) or exc.__class__.__name__)
        logger.error(f"[Session {self.session_id}] Transport error: {exc}")
        await self._teardown(STATUS_CONNECTION_ERROR)

    async def handle_server_message(self, message: dict[str, Any]) -> None:
        """Route one inbound message: audio to playback, tool calls to the dispatcher."""
        if self._phase is not SessionPhase.CONNECTED:
            return
        generation = self._generation

        server_content = message.get("serverContent") or {}
        for part in (server_content.get("modelTurn") or {}).get("parts") or []:
            inline = part.get("inlineData") or {}
            data = inline.get("data")
            mime_type = inline.get("mimeType") or "audio/pcm"
            if data and mime_type.startswith("audio/"):
                self._play(data)

        function_calls = (message.get("toolCall") or {}).get("functionCalls") or []
        if not function_calls:
            return
        calls = [ToolCall.from_wire(call) for call in function_calls]
        results = self._dispatcher.dispatch_all(calls)
        link = self._link
        if not self._is_current(generation) or link is None:
            return
        try:
            await link.send_tool_response(
                {"functionResponses": [result.as_function_response() for result in results]}
            )
        except Exception as exc:
            await self._transport_failed(generation, exc)
            return
        self.tool_responses_sent += 1

    def _play(self, data: str) -> None:
        try:
            buffer = decode_audio_payload(data, self._settings.playback_sample_rate)
        except DecodeError as exc:
            self.payloads_dropped += 1
            logger.warning(f"[Session {self.session_id}] Dropping undecodable audio payload: {exc}")
            return
        if self._scheduler is None:
            return
        start_at = self._scheduler.schedule(buffer)
        logger.debug(
            f"[Session {self.session_id}] Scheduled {buffer.duration:.3f}s of audio at {start_at:.3f}s"
        )

    # ------------------------------------------------------------------
    # Helpers

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.is_active

    def _set_phase(self, phase: SessionPhase, message: str) -> None:
        old = self._phase
        self._phase = phase
        logger.info(f"[Session {self.session_id}] Phase: {old.value} -> {phase.value}")
        self._set_status(message)

    def _set_status(self, message: str) -> None:
        self._status_message = message
        if self._on_status is None:
            return
        try:
            self._on_status(self.status())
        except Exception:
            logger.exception(f"[Session {self.session_id}] Status observer failed")

    def _default_clock(self) -> OutputClock:
        return SoundDeviceOutputClock(
            sample_rate=self._settings.playback_sample_rate,
            device=self._settings.output_device,
        )

    def _default_capture(self, on_frame: FrameCallback) -> AudioCapturePipeline:
        return AudioCapturePipeline(
            on_frame,
            sample_rate=self._settings.capture_sample_rate,
            frame_size=self._settings.capture_frame_size,
            device=self._settings.input_device,
        )
