"""
Configuration Management for pyminerfleet

All settings come from environment variables (a .env file is loaded by the
command line entry point through python-dotenv).

Configuration Methods:

    1. Multi-Device Configuration (recommended for fleets):
        export MF_DEVICES='[
          {"id": "rack1-a", "host": "10.0.1.10", "password": "secret", "tags": ["rack1"]},
          {"id": "rack1-b", "host": "10.0.1.11", "password": "secret", "tags": ["rack1"]},
          {"id": "hosted-1", "host": "10.9.0.5", "tenant_id": "acme"}
        ]'

    2. Single Device Configuration:
        export MF_HOST=10.0.1.10
        export MF_PASSWORD=secret

Environment Variables:

    Device Settings:
        MF_DEVICES            - JSON list of devices (takes priority)
        MF_HOST               - Single device host (registered as "default")
        MF_PORT               - Single device REST port (default: 80)
        MF_USERNAME           - Single device login user (default: "root")
        MF_PASSWORD           - Single device login password (default: none)

    Cache Settings:
        MF_STATUS_CACHE_TTL   - Device status cache lifetime in seconds (default: 30)
        MF_FLEET_CACHE_TTL    - Fleet summary cache lifetime in seconds (default: 60)
        MF_JOB_TTL            - Job record retention in seconds (default: 86400)
        MF_REDIS_URL          - Redis URL for the shared store (default: in-memory)

    Network Robustness:
        MF_MAX_RETRIES        - Total attempts per remote call (default: 3)
        MF_INITIAL_BACKOFF_MS - First retry delay in milliseconds (default: 1000)
        MF_BACKOFF_MULTIPLIER - Retry delay growth factor (default: 2)
        MF_MAX_BACKOFF_MS     - Retry delay cap in milliseconds (default: 10000)
        MF_TIMEOUT            - Per-call timeout in seconds (default: 30)
        MF_TOKEN_MARGIN       - Seconds before token expiry to re-login (default: 60)
        MF_POOL_MAXSIZE       - HTTP connection pool size per device (default: 10)

    Server Settings:
        MF_BIND_ADDRESS       - Server bind address (default: "0.0.0.0")
        MF_PORT_HTTP          - Server port (default: 8680)
        MF_DEBUG              - Enable debug logging "yes"/"no" (default: "no")

Accessing Configuration:

    from pyminerfleet.config import Settings

    settings = Settings()
    policy = settings.retry_policy()
    for device in settings.devices:
        print(device.id, device.host)
"""
import json
import logging
import os
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from pyminerfleet.models import DeviceRegistration
from pyminerfleet.retry import RetryPolicy

log = logging.getLogger(__name__)


class DeviceConfig(BaseModel):
    """Configuration for a single device, as found in MF_DEVICES."""
    id: str
    name: str = ""
    host: str
    port: int = 80
    username: str = "root"
    password: str = ""
    tags: List[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    use_tls: bool = False

    def to_registration(self) -> DeviceRegistration:
        return DeviceRegistration(**self.model_dump())


class Settings(BaseSettings):
    """Application settings loaded from MF_* environment variables."""

    # Server configuration
    server_host: str = Field(default="0.0.0.0", alias="MF_BIND_ADDRESS")
    server_port: int = Field(default=8680, alias="MF_PORT_HTTP")
    debug: bool = Field(default=False, alias="MF_DEBUG")

    # Single device fallback
    host: Optional[str] = Field(default=None, alias="MF_HOST")
    port: int = Field(default=80, alias="MF_PORT")
    username: str = Field(default="root", alias="MF_USERNAME")
    password: Optional[str] = Field(default=None, alias="MF_PASSWORD")

    # Caching and storage
    status_cache_ttl: float = Field(default=30, alias="MF_STATUS_CACHE_TTL")
    fleet_cache_ttl: float = Field(default=60, alias="MF_FLEET_CACHE_TTL")
    job_ttl: int = Field(default=86400, alias="MF_JOB_TTL")
    redis_url: Optional[str] = Field(default=None, alias="MF_REDIS_URL")

    # Network robustness
    max_retries: int = Field(default=3, ge=1, alias="MF_MAX_RETRIES")
    initial_backoff_ms: int = Field(default=1000, ge=0, alias="MF_INITIAL_BACKOFF_MS")
    backoff_multiplier: float = Field(default=2, ge=1, alias="MF_BACKOFF_MULTIPLIER")
    max_backoff_ms: int = Field(default=10000, ge=0, alias="MF_MAX_BACKOFF_MS")
    timeout: float = Field(default=30, gt=0, alias="MF_TIMEOUT")
    token_margin: float = Field(default=60, ge=0, alias="MF_TOKEN_MARGIN")
    pool_maxsize: int = Field(default=10, alias="MF_POOL_MAXSIZE")

    # CORS configuration
    cors_origins: List[str] = Field(default=["*"], alias="CORS_ORIGINS")

    devices: List[DeviceConfig] = Field(default_factory=list)

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "populate_by_name": True,
    }

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.devices:
            self._initialize_devices()

    def _initialize_devices(self):
        """Initialize device configurations from environment variables."""
        devices_json = os.getenv("MF_DEVICES")
        if devices_json:
            try:
                self.devices = [DeviceConfig(**d) for d in json.loads(devices_json)]
                return
            except (ValueError, TypeError) as e:
                log.error(f"Error parsing MF_DEVICES: {e}")

        # Fall back to single device mode
        if self.host:
            self.devices = [
                DeviceConfig(
                    id="default",
                    name="Default Device",
                    host=self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password or "",
                )
            ]

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retries,
            initial_backoff_ms=self.initial_backoff_ms,
            multiplier=self.backoff_multiplier,
            max_backoff_ms=self.max_backoff_ms,
            timeout=self.timeout,
        )
