"""
API Routers

    devices.py - device registry, per-device status and fan control
        • Prefix: /api/devices
    fleet.py   - fleet summary
        • Prefix: /api/fleet
    jobs.py    - long-running operations and job polling
        • Prefix: /api/jobs

Every route takes the FleetManager through the get_manager dependency.
A FleetError raised by a route is rendered by the handler in main.py.
"""
from . import devices, fleet, jobs

__all__ = ["devices", "fleet", "jobs"]
