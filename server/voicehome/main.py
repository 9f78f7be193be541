"""FastAPI application entrypoint for the voice home controller."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import FastAPI, WebSocket

from .config import Settings, settings
from .models.schemas import SessionStatusResponse
from .routers import devices, realtime, sessions
from .services.device_registry import DEFAULT_DEVICES, DeviceRegistry
from .services.live_transport import GeminiLiveTransport, LiveTransport
from .services.realtime_voice import (
    STATUS_IDLE,
    SessionPhase,
    SessionStateError,
    SessionStatus,
    VoiceSession,
)
from .services.tool_dispatcher import ToolDispatcher

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

SessionFactory = Callable[..., VoiceSession]


class VoiceHomeManager:
    """Owns the device registry and at most one active voice session."""

    def __init__(
        self,
        registry: Optional[DeviceRegistry] = None,
        *,
        transport: Optional[LiveTransport] = None,
        settings: Settings = settings,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.registry = registry if registry is not None else DeviceRegistry.from_config(DEFAULT_DEVICES)
        self.dispatcher = ToolDispatcher(self.registry)
        self.settings = settings
        self._transport = transport
        self._session_factory = session_factory or VoiceSession
        self._session: Optional[VoiceSession] = None
        self._start_lock = asyncio.Lock()
        self.websockets: set[WebSocket] = set()
        self._status_tasks: set[asyncio.Task] = set()

    @property
    def session(self) -> Optional[VoiceSession]:
        return self._session

    def _get_transport(self) -> LiveTransport:
        if self._transport is None:
            self._transport = GeminiLiveTransport(self.settings.gemini_api_key)
        return self._transport

    def snapshot(self) -> SessionStatusResponse:
        status = self._session.status() if self._session is not None else None
        return SessionStatusResponse.from_status(
            status,
            idle_message=STATUS_IDLE,
            active_devices=self.registry.active_count(),
        )

    async def start_session(self) -> VoiceSession:
        """Create and connect a new session once the previous one is fully released."""
        async with self._start_lock:
            previous = self._session
            if previous is not None:
                if previous.is_active:
                    raise SessionStateError(f"session {previous.session_id} is still {previous.phase.value}")
                if previous.phase is SessionPhase.CLOSED:
                    await previous.wait_closed()
            session = self._session_factory(
                registry=self.registry,
                dispatcher=self.dispatcher,
                transport=self._get_transport(),
                settings=self.settings,
                on_status=self._on_status,
            )
            self._session = session
        logger.info(f"[Session {session.session_id}] Starting voice session")
        await session.connect()
        return session

    async def stop_session(self) -> None:
        session = self._session
        if session is None or session.phase is SessionPhase.IDLE:
            return
        await session.disconnect()
        await session.wait_closed()

    def _on_status(self, status: SessionStatus) -> None:
        if not self.websockets:
            return
        payload = json.dumps({"type": "session_status", **self.snapshot().model_dump()})
        for websocket in list(self.websockets):
            task = asyncio.create_task(self._send_status(websocket, payload))
            self._status_tasks.add(task)
            task.add_done_callback(self._status_tasks.discard)

    async def _send_status(self, websocket: WebSocket, payload: str) -> None:
        try:
            await websocket.send_text(payload)
        except Exception as e:
            logger.warning("Dropping status subscriber after send failure: %s", e)
            self.websockets.discard(websocket)

    async def shutdown(self) -> None:
        await self.stop_session()


def create_app(manager: Optional[VoiceHomeManager] = None) -> FastAPI:
    """Instantiate and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.manager.shutdown()

    application = FastAPI(
        title="Voice Home Controller",
        description="Voice-driven control of household devices through a realtime conversational model.",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.state.manager = manager or VoiceHomeManager()
    application.include_router(devices.router)
    application.include_router(sessions.router)
    application.include_router(realtime.router)

    @application.get("/")
    async def root() -> dict[str, Any]:
        """Lightweight health endpoint for service discovery."""
        return {"service": "voicehome", "status": "ok"}

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
