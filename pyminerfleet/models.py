"""Pydantic models for devices, sessions, status snapshots, jobs and fleet summaries."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceRegistration(BaseModel):
    """A known device endpoint.

    The registry owns these records; every other component looks devices up
    by id and talks to them through the device key (host:port).

    Attributes:
        id: Unique identifier for the device (used in URLs and job metadata)
        name: Human-readable display name
        host: IP address or hostname of the device
        port: REST API port (80 unless TLS is enabled)
        username: Login user on the device (Braiins OS defaults to root)
        password: Login password, never serialized in responses
        tags: Free-form labels used by fleet filters
        tenant_id: Optional owner used by fleet filters
        use_tls: Talk https instead of http
    """
    id: str = Field(min_length=1)
    name: str = ""
    host: str = Field(min_length=1)
    port: int = Field(default=80, gt=0, le=65535)
    username: str = "root"
    password: str = Field(default="", exclude=True, repr=False)
    tags: List[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    use_tls: bool = False

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"


class DeviceSession(BaseModel):
    """A live authenticated handle to one device."""
    device_key: str
    token: str = Field(repr=False)
    issued_at: float
    expires_at: float
    timeout_s: float

    def is_valid(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


class Hashboard(BaseModel):
    id: str
    enabled: bool = True
    hashrate_ths: Optional[float] = None
    temperature_c: Optional[float] = None
    chips: Optional[int] = None


class DeviceStatus(BaseModel):
    """Normalized state of one device as read from its REST API.

    Units: hashrate in TH/s, temperature in Celsius (hottest chip),
    power in watts, efficiency in J/TH.
    """
    online: bool = True
    hostname: Optional[str] = None
    model: Optional[str] = None
    firmware: Optional[str] = None
    uptime_s: Optional[int] = None
    hashrate_ths: Optional[float] = None
    temperature_c: Optional[float] = None
    power_w: Optional[float] = None
    efficiency_jth: Optional[float] = None
    tuner_mode: Optional[str] = None
    power_target_w: Optional[float] = None
    hashboards: List[Hashboard] = Field(default_factory=list)


class StatusSnapshot(BaseModel):
    """Cached observed state of one device."""
    device_id: str
    payload: DeviceStatus
    fetched_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        return self.age(now) < self.ttl


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobProgress(BaseModel):
    total: int
    completed: int = 0
    failed: int = 0
    percentage: int = 0


class JobError(BaseModel):
    error: str
    suggestion: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    device_id: Optional[str] = None


class Job(BaseModel):
    """One asynchronous multi-step operation.

    Lifecycle:
        1. Created pending with zeroed progress
        2. First progress update moves it to running
        3. The driving task finishes it as completed or failed
        4. Terminal jobs are never mutated again
    """
    job_id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    errors: List[JobError] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    results: Optional[Dict[str, Any]] = None


class FleetFilter(BaseModel):
    tags: List[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    device_ids: List[str] = Field(default_factory=list)

    def matches(self, device: DeviceRegistration) -> bool:
        if self.device_ids and device.id not in self.device_ids:
            return False
        if self.tenant_id is not None and device.tenant_id != self.tenant_id:
            return False
        return all(tag in device.tags for tag in self.tags)

    def cache_key(self) -> str:
        return "|".join([
            ",".join(sorted(self.tags)),
            self.tenant_id or "",
            ",".join(sorted(self.device_ids)),
        ])


class DeviceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class FleetDeviceEntry(BaseModel):
    device_id: str
    name: str = ""
    state: DeviceState
    hashrate_ths: Optional[float] = None
    temperature_c: Optional[float] = None
    power_w: Optional[float] = None
    error: Optional[str] = None
    last_seen: Optional[float] = None


class FleetSummary(BaseModel):
    """Aggregated metrics across the (filtered) fleet.

    Aggregation Logic:
        - Only online devices contribute metrics
        - Hashrate and power are summed
        - Temperature and power are averaged over online devices that report them
        - Efficiency is total power over total hashrate (J/TH)
        - Unreachable devices are listed with their error instead of failing the call
    """
    total_devices: int = 0
    online: int = 0
    offline: int = 0
    unknown: int = 0
    total_hashrate_ths: float = 0.0
    total_power_w: float = 0.0
    avg_temperature_c: Optional[float] = None
    avg_power_w: Optional[float] = None
    efficiency_jth: Optional[float] = None
    devices: List[FleetDeviceEntry] = Field(default_factory=list)
    calculated_at: float = 0.0


class DeviceResult(BaseModel):
    device_id: str
    status: str  # "success" or "failed"
    error: Optional[str] = None
    suggestion: Optional[str] = None
    warning: Optional[str] = None
    applied_mode: Optional[str] = None
    applied_target: Optional[float] = None
    details: Optional[Dict[str, Any]] = None


class BatchResult(BaseModel):
    total: int
    successful: int
    failed: int
    warnings: List[str] = Field(default_factory=list)
    results: List[DeviceResult] = Field(default_factory=list)
