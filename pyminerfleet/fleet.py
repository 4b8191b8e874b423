"""
Fleet Aggregator - fleet-wide status from per-device snapshots.

Every device matching the filter is read through the Status Cache in
parallel. A device that cannot be read never fails the call; it is listed
with its state and error instead:

    online    reachable and the device reports itself running
    offline   connectivity, timeout or offline error, or not running
    unknown   authentication or any other failure

Only online devices contribute metrics. The summary is a pure function of
the entries: they are sorted by device id and sums use math.fsum, so the
completion order of the fan-out does not matter.
"""
import asyncio
import logging
import math
import time
from typing import Callable, List, Optional, Sequence, Set

from pyminerfleet.cache import StatusCache
from pyminerfleet.exceptions import DeviceConnectionError, DeviceOfflineError, DeviceTimeoutError
from pyminerfleet.models import (DeviceRegistration, DeviceState, FleetDeviceEntry, FleetFilter,
                                 FleetSummary)
from pyminerfleet.registry import DeviceRegistry
from pyminerfleet.store import KeyValueStore

log = logging.getLogger(__name__)

UNREACHABLE = (DeviceConnectionError, DeviceTimeoutError, DeviceOfflineError)


def fleet_key(fleet_filter: FleetFilter) -> str:
    return f"fleet:{fleet_filter.cache_key()}"


class FleetAggregator:

    def __init__(self, registry: DeviceRegistry, cache: StatusCache, store: KeyValueStore,
                 ttl: float = 60, clock: Callable[[], float] = time.time):
        self.registry = registry
        self.cache = cache
        self.store = store
        self.ttl = ttl
        self.clock = clock
        self._keys: Set[str] = set()

    async def get_fleet_status(self, fleet_filter: Optional[FleetFilter] = None,
                               force_refresh: bool = False) -> FleetSummary:
        fleet_filter = fleet_filter or FleetFilter()
        key = fleet_key(fleet_filter)
        if not force_refresh:
            raw = await self.store.get(key)
            if raw is not None:
                log.debug(f"Fleet summary cache hit for '{key}'")
                return FleetSummary.model_validate_json(raw)

        devices = self.registry.list(fleet_filter)
        entries = await asyncio.gather(*(self._device_entry(d, force_refresh) for d in devices))
        summary = summarize(entries, self.clock())
        await self.store.put(key, summary.model_dump_json(), ttl=self.ttl)
        self._keys.add(key)
        log.debug(f"Fleet summary: {summary.online} online, {summary.offline} offline, "
                  f"{summary.unknown} unknown of {summary.total_devices}")
        return summary

    async def invalidate(self):
        """Drop every cached fleet summary produced by this aggregator."""
        for key in list(self._keys):
            await self.store.delete(key)
            self._keys.discard(key)

    async def _device_entry(self, device: DeviceRegistration, force_refresh: bool) -> FleetDeviceEntry:
        try:
            snapshot = await self.cache.get_status(device.id, force_refresh=force_refresh)
        except UNREACHABLE as e:
            state, error = DeviceState.OFFLINE, str(e)
        except Exception as e:
            state, error = DeviceState.UNKNOWN, str(e)
        else:
            status = snapshot.payload
            if not status.online:
                return FleetDeviceEntry(device_id=device.id, name=device.name, state=DeviceState.OFFLINE,
                                        error="Device reports it is not running",
                                        last_seen=snapshot.fetched_at)
            return FleetDeviceEntry(
                device_id=device.id,
                name=device.name,
                state=DeviceState.ONLINE,
                hashrate_ths=status.hashrate_ths,
                temperature_c=status.temperature_c,
                power_w=status.power_w,
                last_seen=snapshot.fetched_at,
            )
        log.debug(f"Device {device.id} is {state.value}: {error}")
        return FleetDeviceEntry(device_id=device.id, name=device.name, state=state, error=error,
                                last_seen=await self._last_seen(device.id))

    async def _last_seen(self, device_id: str) -> Optional[float]:
        try:
            snapshot = await self.cache.peek(device_id)
        except Exception as e:
            log.debug(f"No last snapshot for {device_id}: {e}")
            return None
        return snapshot.fetched_at if snapshot is not None else None


def _mean(values: List[float]) -> Optional[float]:
    return math.fsum(values) / len(values) if values else None


def summarize(entries: Sequence[FleetDeviceEntry], calculated_at: float) -> FleetSummary:
    """Aggregate device entries into a FleetSummary."""
    entries = sorted(entries, key=lambda e: e.device_id)
    online = [e for e in entries if e.state == DeviceState.ONLINE]
    hashrates = [e.hashrate_ths for e in online if e.hashrate_ths is not None]
    powers = [e.power_w for e in online if e.power_w is not None]
    temps = [e.temperature_c for e in online if e.temperature_c is not None]

    total_hashrate = math.fsum(hashrates)
    total_power = math.fsum(powers)
    efficiency = total_power / total_hashrate if powers and total_hashrate > 0 else None

    return FleetSummary(
        total_devices=len(entries),
        online=len(online),
        offline=sum(1 for e in entries if e.state == DeviceState.OFFLINE),
        unknown=sum(1 for e in entries if e.state == DeviceState.UNKNOWN),
        total_hashrate_ths=total_hashrate,
        total_power_w=total_power,
        avg_temperature_c=_mean(temps),
        avg_power_w=_mean(powers),
        efficiency_jth=efficiency,
        devices=list(entries),
        calculated_at=calculated_at,
    )
