"""
Status Cache - time-bounded per-device status snapshots.

Read path:
    1. Snapshot in the store and younger than ttl -> returned, device untouched
    2. Otherwise fetched through the gateway, stored with a new fetched_at
    3. force_refresh skips step 1 and always fetches

Concurrent misses for one device share the first in-flight fetch. A forced
refresh always performs its own fetch, and a fill already in flight when it
starts no longer stores its result.

Snapshots are retained in the store past their ttl so the last observation
of a device (last_seen) stays available; they are never served once stale.
"""
import logging
import time
from typing import Callable, Dict, Optional

from pyminerfleet.api_lock import SingleFlight
from pyminerfleet.gateway import RemoteOperationGateway
from pyminerfleet.models import StatusSnapshot
from pyminerfleet.registry import DeviceRegistry
from pyminerfleet.store import KeyValueStore

log = logging.getLogger(__name__)

RETENTION = 86400


def status_key(device_id: str) -> str:
    return f"status:{device_id}"


class StatusCache:

    def __init__(self, registry: DeviceRegistry, gateway: RemoteOperationGateway, store: KeyValueStore,
                 ttl: float = 30, clock: Callable[[], float] = time.time, retention: float = RETENTION):
        self.registry = registry
        self.gateway = gateway
        self.store = store
        self.ttl = ttl
        self.clock = clock
        self.retention = max(retention, ttl)
        self._fills = SingleFlight()
        # Bumped by invalidate() and forced refreshes so a fetch started earlier cannot store its result
        self._generation: Dict[str, int] = {}

    async def get_status(self, device_id: str, force_refresh: bool = False) -> StatusSnapshot:
        device = self.registry.get(device_id)
        if not force_refresh:
            snapshot = await self.peek(device_id)
            if snapshot is not None and snapshot.is_fresh(self.clock()):
                log.debug(f"Status cache hit for {device_id} (age {snapshot.age(self.clock()):.1f}s)")
                return snapshot
            return await self._fills.do(device_id, lambda: self._fetch(device.id))
        log.debug(f"Forced status refresh for {device_id}")
        self._generation[device.id] = self._generation.get(device.id, 0) + 1
        return await self._fetch(device.id)

    async def peek(self, device_id: str) -> Optional[StatusSnapshot]:
        """Return the stored snapshot regardless of age, without fetching."""
        raw = await self.store.get(status_key(device_id))
        if raw is None:
            return None
        return StatusSnapshot.model_validate_json(raw)

    async def invalidate(self, device_id: str):
        self._generation[device_id] = self._generation.get(device_id, 0) + 1
        await self.store.delete(status_key(device_id))
        log.debug(f"Status cache invalidated for {device_id}")

    async def _fetch(self, device_id: str) -> StatusSnapshot:
        device = self.registry.get(device_id)
        generation = self._generation.get(device_id, 0)
        payload = await self.gateway.execute(device, "get_status")
        snapshot = StatusSnapshot(device_id=device_id, payload=payload, fetched_at=self.clock(), ttl=self.ttl)
        if self._generation.get(device_id, 0) == generation:
            await self.store.put(status_key(device_id), snapshot.model_dump_json(), ttl=self.retention)
        else:
            log.debug(f"Status for {device_id} invalidated during fetch - not stored")
        return snapshot
