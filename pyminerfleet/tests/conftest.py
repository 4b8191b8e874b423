"""Pytest configuration and fixtures."""
import threading
from typing import Dict, List, Optional

import pytest

from pyminerfleet.exceptions import AuthenticationError, DeviceBusyError, DeviceConnectionError, ValidationError
from pyminerfleet.manager import FleetManager
from pyminerfleet.models import DeviceRegistration, DeviceStatus
from pyminerfleet.retry import RetryPolicy
from pyminerfleet.store import MemoryStore

PASSWORD = "secret"

# Hashrate (TH/s) a fake device reaches at each baseline power target
HASHRATE_AT = {2500: 85.0, 3000: 95.0, 3500: 100.0}


def make_status(**overrides) -> DeviceStatus:
    values = dict(
        online=True,
        hostname="miner",
        model="Antminer S19j Pro",
        firmware="24.03",
        uptime_s=3600,
        hashrate_ths=100.0,
        temperature_c=65.0,
        power_w=3000.0,
        efficiency_jth=30.0,
        tuner_mode="power",
        power_target_w=3000.0,
    )
    values.update(overrides)
    return DeviceStatus(**values)


class FakeDevice:
    """Scripted behavior of one device behind a FakeClient."""

    def __init__(self, status: Optional[DeviceStatus] = None, password: str = PASSWORD,
                 token_timeout: float = 3600):
        self.status = status or make_status()
        self.password = password
        self.token_timeout = token_timeout
        self.fail_connect = 0  # calls left to fail with a connectivity error; -1 fails forever
        self.fail_targets = set()  # power targets refused as busy
        self.logins = 0
        self.connect_attempts = 0
        self.calls: List[str] = []
        self.valid_tokens = set()
        self.power_target = self.status.power_target_w
        self.cooling = None
        self.rebooted = 0
        self.raise_on: Dict[str, Exception] = {}  # operation -> exception raised instead of running it
        self.network_config: Dict = {}
        self.network_changes: List[Dict] = []
        self.break_network = 0  # fail_connect value set by the next network change
        self._lock = threading.Lock()

    def connect(self, key: str):
        with self._lock:
            self.connect_attempts += 1
            if self.fail_connect == 0:
                return
            if self.fail_connect > 0:
                self.fail_connect -= 1
        raise DeviceConnectionError(key, "connection refused")

    def count(self, operation: str) -> int:
        return self.calls.count(operation)


class FakeClient:
    """Stands in for BosClient; runs on the gateway executor like the real one."""

    def __init__(self, device: FakeDevice, host: str, port: int, network: Optional["FakeNetwork"] = None):
        self.device = device
        self.host = host
        self.port = port
        self.key = f"{host}:{port}"
        self.network = network
        self.closed = False

    def _call(self, operation: str, token: str):
        self.device.connect(self.key)
        if token not in self.device.valid_tokens:
            raise AuthenticationError(self.key, "token expired")
        error = self.device.raise_on.get(operation)
        if error is not None:
            raise error
        self.device.calls.append(operation)

    def login(self, username, password):
        self.device.connect(self.key)
        if password != self.device.password:
            raise AuthenticationError(self.key, "invalid username or password")
        with self.device._lock:
            self.device.logins += 1
            token = f"token-{self.device.logins}"
        self.device.valid_tokens.add(token)
        return token, self.device.token_timeout

    def get_status(self, token):
        self._call("get_status", token)
        return self.device.status.model_copy()

    def set_power_target(self, token, watt):
        self._call("set_power_target", token)
        if watt <= 0:
            raise ValidationError("Power target must be positive")
        if watt in self.device.fail_targets:
            raise DeviceBusyError(f"Device {self.key} is busy")
        self.device.power_target = watt
        self.device.status = self.device.status.model_copy(update={
            "power_target_w": float(watt),
            "power_w": float(watt),
            "hashrate_ths": HASHRATE_AT.get(watt, self.device.status.hashrate_ths),
        })
        return {"watt": watt}

    def set_hashrate_target(self, token, terahash_per_second):
        self._call("set_hashrate_target", token)
        return {"terahash_per_second": terahash_per_second}

    def set_cooling_mode(self, token, mode, fan_speed=None, min_fan_speed=None, max_fan_speed=None):
        self._call("set_cooling_mode", token)
        self.device.cooling = (mode, fan_speed, min_fan_speed, max_fan_speed)
        return {}

    def get_network_config(self, token):
        self._call("get_network_config", token)
        return dict(self.device.network_config)

    def set_network_config(self, token, config):
        self._call("set_network_config", token)
        self.device.network_changes.append(config)
        current = self.device.network_config
        if "hostname" in config:
            current["hostname"] = config["hostname"]
        static = (config.get("protocol") or {}).get("static")
        if static:
            current["networks"] = [{"address": static["address"], "netmask": static["netmask"]}]
            current["default_gateway"] = static["gateway"]
            if static["address"] != self.host and self.network is not None:
                # Reachable at the new address from now on
                self.network.devices[f"{static['address']}:{self.port}"] = self.device
        if self.device.break_network:
            self.device.fail_connect = self.device.break_network
            self.device.break_network = 0
        return {}

    def reboot(self, token):
        self._call("reboot", token)
        self.device.rebooted += 1
        return {}

    def close(self):
        self.closed = True


class FakeClock:

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Non-blocking replacement for asyncio.sleep that records each delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FakeNetwork:
    """Fake devices keyed host:port plus the handles created for them."""

    def __init__(self):
        self.devices: Dict[str, FakeDevice] = {}
        self.handles: List[FakeClient] = []

    def add(self, host: str, port: int = 80, **kwargs) -> FakeDevice:
        device = self.devices[f"{host}:{port}"] = FakeDevice(**kwargs)
        device.network_config = {
            "hostname": "miner",
            "networks": [{"address": host, "netmask": "255.255.255.0"}],
            "default_gateway": "10.0.0.254",
            "dns_servers": ["10.0.0.254"],
        }
        return device

    def client_factory(self, host, port, use_tls=False, timeout=30, pool_maxsize=10):
        device = self.devices.get(f"{host}:{port}")
        if device is None:
            # Nothing answers at this address
            device = FakeDevice()
            device.fail_connect = -1
        client = FakeClient(device, host, port, network=self)
        self.handles.append(client)
        return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, initial_backoff_ms=1000, multiplier=2, max_backoff_ms=10000, timeout=5)


@pytest.fixture
def manager(network, clock, sleep, policy):
    """FleetManager wired to fake devices, a fake clock and a recording sleep."""
    return FleetManager(
        store=MemoryStore(clock=clock),
        policy=policy,
        status_ttl=30,
        fleet_ttl=60,
        client_factory=network.client_factory,
        sleep=sleep,
        clock=clock,
    )


@pytest.fixture
def add_device(manager, network):
    """Add a fake device and register it with the manager.

    Extra keyword arguments override fields of the device's DeviceStatus.
    """
    def add(device_id: str, host: str, tags=None, tenant_id=None, password: str = PASSWORD,
            token_timeout: float = 3600, **status) -> FakeDevice:
        fake = network.add(host, status=make_status(**status), password=password, token_timeout=token_timeout)
        manager.registry.register(DeviceRegistration(id=device_id, name=device_id.upper(), host=host,
                                                     password=PASSWORD, tags=tags or [], tenant_id=tenant_id))
        return fake

    return add


@pytest.fixture
def fleet3(add_device):
    """Three registered devices A, B and C."""
    return {
        "A": add_device("A", "10.0.0.1", tags=["rack1"], tenant_id="acme"),
        "B": add_device("B", "10.0.0.2", tags=["rack1"], tenant_id="acme"),
        "C": add_device("C", "10.0.0.3", tags=["rack2"], tenant_id="globex"),
    }
