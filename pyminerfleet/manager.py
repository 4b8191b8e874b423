"""
FleetManager - wires the registry, gateway, caches and jobs together.

Every component is constructed once here and passed by reference, so tests
can build independent managers with stub clients, fake clocks and a no-op
sleep:

    manager = FleetManager.from_settings(Settings())
    await manager.get_status("rack1-a")
    job = await manager.configure_autotuning(["rack1-a", "rack1-b"], "efficiency")
    await manager.get_job(job.job_id)
    await manager.shutdown()
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from pyminerfleet.bosapi.client import BosClient
from pyminerfleet.cache import StatusCache
from pyminerfleet.config import Settings
from pyminerfleet.fleet import FleetAggregator
from pyminerfleet.gateway import RemoteOperationGateway
from pyminerfleet.jobs import DEFAULT_JOB_TTL, JobOrchestrator, JobSupervisor
from pyminerfleet.models import (BatchResult, DeviceRegistration, FleetFilter, FleetSummary, Job,
                                 StatusSnapshot)
from pyminerfleet.operations import DeviceOperations
from pyminerfleet.registry import DeviceRegistry
from pyminerfleet.retry import RetryPolicy
from pyminerfleet.store import KeyValueStore, MemoryStore, create_store

log = logging.getLogger(__name__)


class FleetManager:

    def __init__(self, store: Optional[KeyValueStore] = None, policy: Optional[RetryPolicy] = None,
                 status_ttl: float = 30, fleet_ttl: float = 60, job_ttl: float = DEFAULT_JOB_TTL,
                 token_margin: float = 60, client_factory: Callable[..., Any] = BosClient,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.time, max_workers: int = 10, pool_maxsize: int = 10):
        self.store = store if store is not None else MemoryStore()
        self.registry = DeviceRegistry()
        self.gateway = RemoteOperationGateway(policy, client_factory=client_factory, sleep=sleep,
                                              max_workers=max_workers, pool_maxsize=pool_maxsize,
                                              token_margin=token_margin, clock=clock)
        self.cache = StatusCache(self.registry, self.gateway, self.store, ttl=status_ttl, clock=clock)
        self.fleet = FleetAggregator(self.registry, self.cache, self.store, ttl=fleet_ttl, clock=clock)
        self.jobs = JobOrchestrator(self.store, job_ttl=job_ttl)
        self.supervisor = JobSupervisor(self.jobs)
        self.operations = DeviceOperations(self.registry, self.gateway, self.cache, self.jobs,
                                           self.supervisor, fleet=self.fleet, sleep=sleep)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "FleetManager":
        num_devices = len(settings.devices)
        store = kwargs.pop("store", None)
        manager = cls(
            store=store if store is not None else create_store(settings),
            policy=settings.retry_policy(),
            status_ttl=settings.status_cache_ttl,
            fleet_ttl=settings.fleet_cache_ttl,
            job_ttl=settings.job_ttl,
            token_margin=settings.token_margin,
            max_workers=max(10, num_devices * 3),
            pool_maxsize=settings.pool_maxsize,
            **kwargs
        )
        for device in settings.devices:
            manager.registry.register(device.to_registration(), replace=True)
        log.info(f"Fleet manager ready - {num_devices} device(s) configured")
        return manager

    # Registry

    async def register_device(self, device: DeviceRegistration, replace: bool = False) -> DeviceRegistration:
        previous = self.registry.devices.get(device.id)
        self.registry.register(device, replace=replace)
        if previous is not None:
            await self._forget(previous)
        await self.fleet.invalidate()
        return device

    async def unregister_device(self, device_id: str) -> DeviceRegistration:
        device = self.registry.unregister(device_id)
        await self._forget(device)
        await self.fleet.invalidate()
        return device

    async def _forget(self, device: DeviceRegistration):
        # Other registrations may share the same endpoint
        shared = any(d.key == device.key for d in self.registry.devices.values())
        if not shared:
            await self.gateway.close(device)
            self.gateway.sessions.invalidate(device)
        await self.cache.invalidate(device.id)

    def list_devices(self, fleet_filter: Optional[FleetFilter] = None) -> List[DeviceRegistration]:
        return self.registry.list(fleet_filter)

    # Reads

    async def get_status(self, device_id: str, force_refresh: bool = False) -> StatusSnapshot:
        return await self.cache.get_status(device_id, force_refresh=force_refresh)

    async def get_fleet_status(self, fleet_filter: Optional[FleetFilter] = None,
                               force_refresh: bool = False) -> FleetSummary:
        return await self.fleet.get_fleet_status(fleet_filter, force_refresh=force_refresh)

    # Jobs

    async def create_job(self, job_type: str, total_units: int, metadata: Optional[dict] = None) -> Job:
        return await self.jobs.create_job(job_type, total_units, metadata)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.jobs.get_job(job_id)

    # Operations

    async def configure_fan_control(self, device_ids: Sequence[str], mode: str, **kwargs) -> BatchResult:
        return await self.operations.configure_fan_control(device_ids, mode, **kwargs)

    async def configure_autotuning(self, device_ids: Sequence[str], mode: str, **kwargs) -> Job:
        return await self.operations.configure_autotuning(device_ids, mode, **kwargs)

    async def reboot_devices(self, device_ids: Sequence[str]) -> Job:
        return await self.operations.reboot_devices(device_ids)

    async def configure_network(self, device_ids: Sequence[str], **kwargs) -> Job:
        return await self.operations.configure_network(device_ids, **kwargs)

    async def run_performance_baseline(self, device_id: str, **kwargs) -> Job:
        return await self.operations.run_performance_baseline(device_id, **kwargs)

    async def shutdown(self):
        await self.supervisor.shutdown()
        await self.gateway.close_all()
        await self.store.close()
        log.info("Fleet manager shutdown complete")
