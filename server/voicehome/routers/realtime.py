"""Realtime status push for the control panel."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter(prefix="/realtime", tags=["realtime"])

logger = logging.getLogger(__name__)


@router.websocket("/events")
async def realtime_events(websocket: WebSocket) -> None:
    """Send the session status on connect and after every phase or status change.

    Clients may send ``{"type": "ping"}`` to receive a fresh snapshot.
    """

    manager = websocket.app.state.manager
    await websocket.accept()
    manager.websockets.add(websocket)
    try:
        await websocket.send_text(json.dumps({"type": "session_status", **manager.snapshot().model_dump()}))
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "error": "Invalid JSON."}))
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                await websocket.send_text(json.dumps({"type": "session_status", **manager.snapshot().model_dump()}))
            else:
                await websocket.send_text(
                    json.dumps({"type": "error", "error": f"Unknown message type: {kind}"})
                )
    except WebSocketDisconnect:
        logger.info("Status subscriber disconnected")
    finally:
        manager.websockets.discard(websocket)
