import logging
from typing import Dict, List, Optional

from pyminerfleet.exceptions import DeviceNotFoundError, ValidationError
from pyminerfleet.models import DeviceRegistration, FleetFilter

log = logging.getLogger(__name__)


class DeviceRegistry:
    """Registered devices keyed by id."""

    def __init__(self):
        self.devices: Dict[str, DeviceRegistration] = {}

    def register(self, device: DeviceRegistration, replace: bool = False) -> DeviceRegistration:
        if device.id in self.devices and not replace:
            raise ValidationError(f"Device '{device.id}' is already registered", {"deviceId": device.id})
        self.devices[device.id] = device
        log.info(f"Registered device {device.id} ({device.key})")
        return device

    def unregister(self, device_id: str) -> DeviceRegistration:
        device = self.devices.pop(device_id, None)
        if device is None:
            raise DeviceNotFoundError(device_id)
        log.info(f"Unregistered device {device_id}")
        return device

    def get(self, device_id: str) -> DeviceRegistration:
        device = self.devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def list(self, fleet_filter: Optional[FleetFilter] = None) -> List[DeviceRegistration]:
        devices = sorted(self.devices.values(), key=lambda d: d.id)
        if fleet_filter is None:
            return devices
        return [d for d in devices if fleet_filter.matches(d)]

    def __contains__(self, device_id: str) -> bool:
        return device_id in self.devices

    def __len__(self):
        return len(self.devices)
