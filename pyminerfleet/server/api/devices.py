"""
Device API Endpoints

All routes are prefixed with /api/devices (configured in main.py).

Routes:
    - GET    /api/devices/               -> List registered devices
    - POST   /api/devices/               -> Register a device
    - DELETE /api/devices/{id}           -> Unregister a device
    - GET    /api/devices/{id}/status    -> Cached device status
    - POST   /api/devices/fan-control    -> Configure fan control for a batch

Design Notes:
    - Passwords are accepted on registration but never returned
    - Status reads are served from the status cache unless force_refresh=true
    - Fan control is short-lived and runs synchronously; per-device failures
      are reported in the result body, not as an HTTP error
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pyminerfleet.manager import FleetManager
from pyminerfleet.models import BatchResult, DeviceRegistration, StatusSnapshot
from pyminerfleet.server.deps import get_manager

router = APIRouter()


class FanControlRequest(BaseModel):
    device_ids: List[str]
    mode: str = Field(description="auto or manual")
    fan_speed: Optional[int] = Field(default=None, description="Fan speed percentage for manual mode")
    min_fan_speed: Optional[int] = Field(default=None, description="Minimum fan speed for auto mode")
    max_fan_speed: Optional[int] = Field(default=None, description="Maximum fan speed for auto mode")
    validate_safety: bool = Field(default=True, alias="validate")

    model_config = {"populate_by_name": True}


@router.get("/", response_model=List[DeviceRegistration])
async def list_devices(manager: FleetManager = Depends(get_manager)):
    """List all registered devices (credentials omitted)."""
    return manager.list_devices()


@router.post("/", response_model=DeviceRegistration, status_code=201)
async def register_device(device: DeviceRegistration, replace: bool = False,
                          manager: FleetManager = Depends(get_manager)):
    """
    Register a device.

    Returns 400 if the id is already registered, unless replace=true.
    Replacing a device drops its cached status and session.
    """
    return await manager.register_device(device, replace=replace)


@router.delete("/{device_id}")
async def unregister_device(device_id: str, manager: FleetManager = Depends(get_manager)):
    """Unregister a device and release its connection, token and cached status."""
    await manager.unregister_device(device_id)
    return {"status": "unregistered", "device_id": device_id}


@router.get("/{device_id}/status", response_model=StatusSnapshot)
async def get_device_status(device_id: str, force_refresh: bool = False,
                            manager: FleetManager = Depends(get_manager)):
    """
    Get the status snapshot for a device.

    The snapshot is never older than the status cache TTL. force_refresh=true
    always contacts the device. Errors:
        - 404 unknown device
        - 401 device rejected the credentials
        - 502/504 device unreachable after retries
    """
    return await manager.get_status(device_id, force_refresh=force_refresh)


@router.post("/fan-control", response_model=BatchResult)
async def configure_fan_control(request: FanControlRequest, manager: FleetManager = Depends(get_manager)):
    """Configure fan mode and speed for up to 100 devices (minimum 30% for safety)."""
    return await manager.configure_fan_control(
        request.device_ids,
        request.mode,
        fan_speed=request.fan_speed,
        min_fan_speed=request.min_fan_speed,
        max_fan_speed=request.max_fan_speed,
        validate=request.validate_safety,
    )
