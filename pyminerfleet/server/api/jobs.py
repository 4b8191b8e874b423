"""
Job API Endpoints

All routes are prefixed with /api/jobs (configured in main.py).

Routes:
    - POST /api/jobs/autotuning   -> Start an autotuning job
    - POST /api/jobs/reboot       -> Start a reboot job
    - POST /api/jobs/baseline     -> Start a performance baseline job
    - POST /api/jobs/network      -> Start a network configuration job
    - GET  /api/jobs/{job_id}     -> Poll a job

Starting a job returns 202 with the pending job; poll it until its status is
completed or failed. Jobs cannot be cancelled once started.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pyminerfleet.exceptions import JobNotFoundError
from pyminerfleet.manager import FleetManager
from pyminerfleet.models import Job
from pyminerfleet.server.deps import get_manager

router = APIRouter()


class AutotuningRequest(BaseModel):
    device_ids: List[str]
    mode: str = Field(description="power, hashrate or efficiency")
    target_power: Optional[float] = Field(default=None, description="Watts, required for power mode")
    target_hashrate: Optional[float] = Field(default=None, description="TH/s, required for hashrate mode")
    validate_firmware: bool = Field(default=True, alias="validate")

    model_config = {"populate_by_name": True}


class RebootRequest(BaseModel):
    device_ids: List[str]


class BaselineRequest(BaseModel):
    device_id: str
    modes: List[str] = Field(default_factory=lambda: ["low", "medium", "high"])
    duration: int = Field(default=300, description="Seconds per mode (60-3600)")
    sample_interval: int = Field(default=30, description="Seconds between samples")


class NetworkRequest(BaseModel):
    device_ids: List[str]
    ip_address: Optional[str] = Field(default=None, description="CIDR, e.g. 192.168.1.100/24")
    gateway: Optional[str] = Field(default=None, description="Default gateway IPv4 address")
    hostname: Optional[str] = None
    validate_connectivity: bool = Field(default=True, description="Roll back if unreachable afterwards")


@router.post("/autotuning", response_model=Job, status_code=202)
async def start_autotuning(request: AutotuningRequest, manager: FleetManager = Depends(get_manager)):
    """Configure autotuning on each device in turn; failures are recorded per device."""
    return await manager.configure_autotuning(
        request.device_ids,
        request.mode,
        target_power=request.target_power,
        target_hashrate=request.target_hashrate,
        validate=request.validate_firmware,
    )


@router.post("/reboot", response_model=Job, status_code=202)
async def start_reboot(request: RebootRequest, manager: FleetManager = Depends(get_manager)):
    """Reboot each device in turn."""
    return await manager.reboot_devices(request.device_ids)


@router.post("/baseline", response_model=Job, status_code=202)
async def start_baseline(request: BaselineRequest, manager: FleetManager = Depends(get_manager)):
    """Measure one device at each power mode and recommend the most efficient one."""
    return await manager.run_performance_baseline(
        request.device_id,
        modes=request.modes,
        duration_s=request.duration,
        sample_interval_s=request.sample_interval,
    )


@router.post("/network", response_model=Job, status_code=202)
async def start_network(request: NetworkRequest, manager: FleetManager = Depends(get_manager)):
    """Change static address, gateway or hostname; unreachable devices are rolled back."""
    return await manager.configure_network(
        request.device_ids,
        ip_address=request.ip_address,
        gateway=request.gateway,
        hostname=request.hostname,
        validate_connectivity=request.validate_connectivity,
    )


@router.get("/{job_id}", response_model=Job)
async def get_job(job_id: str, manager: FleetManager = Depends(get_manager)):
    """Get the current state of a job."""
    job = await manager.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job
