"""Direct device control endpoints used by the control panel."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ..models import schemas
from ..services.device_registry import UnknownDeviceError

router = APIRouter(prefix="/devices", tags=["devices"])


def _registry(request: Request):
    return request.app.state.manager.registry


@router.get("/", response_model=list[schemas.DeviceResponse])
async def list_devices(request: Request) -> list[schemas.DeviceResponse]:
    """Return every device in registry order."""

    return [schemas.DeviceResponse.from_device(device) for device in _registry(request).devices()]


@router.get("/{device_id}", response_model=schemas.DeviceResponse)
async def get_device(device_id: str, request: Request) -> schemas.DeviceResponse:
    try:
        device = _registry(request).get(device_id)
    except UnknownDeviceError:
        raise HTTPException(status_code=404, detail=f"Unknown device: {device_id}")
    return schemas.DeviceResponse.from_device(device)


@router.post("/{device_id}/toggle", response_model=schemas.DeviceResponse)
async def toggle_device(device_id: str, request: Request) -> schemas.DeviceResponse:
    try:
        device = _registry(request).toggle(device_id)
    except UnknownDeviceError:
        raise HTTPException(status_code=404, detail=f"Unknown device: {device_id}")
    return schemas.DeviceResponse.from_device(device)


@router.post("/{device_id}/power", response_model=schemas.DeviceResponse)
async def set_device_power(
    device_id: str, payload: schemas.PowerUpdateRequest, request: Request
) -> schemas.DeviceResponse:
    try:
        device = _registry(request).set_power(device_id, payload.on)
    except UnknownDeviceError:
        raise HTTPException(status_code=404, detail=f"Unknown device: {device_id}")
    return schemas.DeviceResponse.from_device(device)


@router.post("/{device_id}/value", response_model=schemas.DeviceResponse)
async def set_device_value(
    device_id: str, payload: schemas.ValueUpdateRequest, request: Request
) -> schemas.DeviceResponse:
    """Store a new brightness, temperature or openness value as given."""

    registry = _registry(request)
    try:
        current = registry.get(device_id)
    except UnknownDeviceError:
        raise HTTPException(status_code=404, detail=f"Unknown device: {device_id}")
    if not current.category.has_value:
        raise HTTPException(status_code=422, detail=f"{current.name} does not support a value")
    device = registry.set_value(device_id, payload.value)
    return schemas.DeviceResponse.from_device(device)
