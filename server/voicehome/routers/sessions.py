"""Voice session lifecycle endpoints."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ..models import schemas
from ..services.realtime_voice import HandshakeError, SessionStateError, SetupError

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("/", response_model=schemas.SessionStatusResponse)
async def start_session(request: Request) -> schemas.SessionStatusResponse:
    """Connect a new voice session and start listening to the microphone."""

    manager = request.app.state.manager
    try:
        await manager.start_session()
    except SessionStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except SetupError:
        raise HTTPException(status_code=503, detail=manager.snapshot().status)
    except HandshakeError:
        raise HTTPException(status_code=502, detail=manager.snapshot().status)
    return manager.snapshot()


@router.delete("/", response_model=schemas.SessionStatusResponse)
async def stop_session(request: Request) -> schemas.SessionStatusResponse:
    """Disconnect the active session; a no-op when nothing is running."""

    manager = request.app.state.manager
    await manager.stop_session()
    return manager.snapshot()


@router.get("/current", response_model=schemas.SessionStatusResponse)
async def get_session_status(request: Request) -> schemas.SessionStatusResponse:
    """Return the current state of the voice session."""

    return request.app.state.manager.snapshot()
