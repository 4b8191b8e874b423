"""
Device operations built on the gateway, status cache and job orchestrator.

Short-lived operations run synchronously and return a BatchResult:

    configure_fan_control   cooling mode for a batch of devices

Long-running operations create a job, hand the body to the JobSupervisor
and return the pending job immediately:

    configure_autotuning      power / hashrate / efficiency target per device
    reboot_devices            reboot a batch of devices
    configure_network         static address, gateway or hostname, rolled back
                              when the device is unreachable afterwards
    run_performance_baseline  measure one device at several power targets

Batch jobs process devices one at a time. A device that fails is counted,
recorded with add_error and skipped; the job still completes. Only errors
outside the per-device work fail the job.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pyminerfleet.cache import StatusCache
from pyminerfleet.exceptions import DeviceOfflineError, FleetError, InternalError, ValidationError, wrap_error
from pyminerfleet.fleet import FleetAggregator
from pyminerfleet.gateway import RemoteOperationGateway
from pyminerfleet.jobs import JobOrchestrator, JobSupervisor
from pyminerfleet.models import BatchResult, DeviceRegistration, DeviceResult, Job
from pyminerfleet.registry import DeviceRegistry
from pyminerfleet.validators import (netmask_prefix, parse_cidr, validate_cidr, validate_device_ids,
                                     validate_fan_speed, validate_fan_speed_range, validate_hostname,
                                     validate_ipv4, validate_power_limit)

log = logging.getLogger(__name__)

FAN_MODES = ("auto", "manual")
AUTOTUNING_MODES = ("power", "hashrate", "efficiency")

# Efficiency mode runs at 80% of a nominal 3000 W rating
NOMINAL_POWER_W = 3000
EFFICIENCY_RATIO = 0.8

BASELINE_MODES = {"low": 2500, "medium": 3000, "high": 3500}
BASELINE_MIN_DURATION = 60
BASELINE_MAX_DURATION = 3600

AUTOTUNING_SUGGESTION = "Verify device is online and supports autotuning. Check the Braiins OS+ version."
REBOOT_SUGGESTION = "Verify device is online and reachable"
FAN_SUGGESTION = "Verify device is online and reachable, then retry the fan configuration"
NETWORK_SUGGESTION = "Verify the IP address is in the correct subnet and the gateway is reachable from it"
NETWORK_ROLLBACK_SUGGESTION = ("Device may be unreachable. Check the physical network connection or use a serial "
                               "console to restore network access")

# Seconds to let the device network settle after a configuration change
NETWORK_SETTLE_S = 3

UnitFn = Callable[[str], Awaitable[DeviceResult]]


def efficiency_target() -> float:
    return NOMINAL_POWER_W * EFFICIENCY_RATIO


def _failed(device_id: str, error: str, suggestion: Optional[str] = None) -> DeviceResult:
    return DeviceResult(device_id=device_id, status="failed", error=error, suggestion=suggestion)


class DeviceOperations:

    def __init__(self, registry: DeviceRegistry, gateway: RemoteOperationGateway, cache: StatusCache,
                 jobs: JobOrchestrator, supervisor: JobSupervisor, fleet: Optional[FleetAggregator] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.registry = registry
        self.gateway = gateway
        self.cache = cache
        self.jobs = jobs
        self.supervisor = supervisor
        self.fleet = fleet
        self.sleep = sleep

    async def _changed(self, device_id: str):
        await self.cache.invalidate(device_id)
        if self.fleet is not None:
            await self.fleet.invalidate()

    async def _online_device(self, device_id: str):
        device = self.registry.get(device_id)
        snapshot = await self.cache.get_status(device_id)
        if not snapshot.payload.online:
            raise DeviceOfflineError(device_id, "device reports it is not running")
        return device, snapshot

    # Fan control (synchronous batch)

    async def configure_fan_control(self, device_ids: Sequence[str], mode: str, fan_speed: Optional[int] = None,
                                    min_fan_speed: Optional[int] = None, max_fan_speed: Optional[int] = None,
                                    validate: bool = True) -> BatchResult:
        warnings = validate_device_ids(device_ids)
        if mode not in FAN_MODES:
            raise ValidationError(f"Fan mode must be one of: {', '.join(FAN_MODES)}", {"mode": mode})
        if mode == "manual":
            if fan_speed is None:
                raise ValidationError("fan_speed is required for manual mode")
            check = validate_fan_speed(fan_speed, allow_dangerous=not validate)
        else:
            if min_fan_speed is None or max_fan_speed is None:
                raise ValidationError("min_fan_speed and max_fan_speed are required for auto mode")
            check = validate_fan_speed_range(min_fan_speed, max_fan_speed, allow_dangerous=not validate)
        if not check.valid:
            raise ValidationError(check.error, suggestion="Fan speeds must be at least 30% for safety")
        if check.warning:
            log.warning(f"Safety warning for fan control: {check.warning}")

        async def apply(device_id: str) -> DeviceResult:
            try:
                device, _ = await self._online_device(device_id)
                await self.gateway.execute(device, "set_cooling_mode", mode, fan_speed=fan_speed,
                                           min_fan_speed=min_fan_speed, max_fan_speed=max_fan_speed)
            except FleetError as e:
                log.warning(f"Fan control failed for {device_id}: {e.message}")
                return _failed(device_id, e.message, e.suggestion or FAN_SUGGESTION)
            except Exception as e:
                log.error(f"Fan control failed for {device_id}: {e!r}")
                return _failed(device_id, wrap_error(e).message, FAN_SUGGESTION)
            await self._changed(device_id)
            log.info(f"Fan control configured for {device_id} ({mode})")
            return DeviceResult(device_id=device_id, status="success", warning=check.warning, applied_mode=mode)

        results = await asyncio.gather(*(apply(d) for d in device_ids))
        warnings += [f"{r.device_id}: {r.warning}" for r in results if r.warning]
        successful = sum(1 for r in results if r.status == "success")
        return BatchResult(total=len(results), successful=successful, failed=len(results) - successful,
                           warnings=warnings, results=list(results))

    # Batch jobs

    async def _start_batch_job(self, job_type: str, device_ids: Sequence[str], metadata: Dict[str, Any],
                               unit: UnitFn, suggestion: str) -> Job:
        warnings = validate_device_ids(device_ids)
        job = await self.jobs.create_job(job_type, len(device_ids),
                                         dict(metadata, device_ids=list(device_ids), warnings=warnings))
        self.supervisor.submit(job.job_id, self._run_batch(job.job_id, list(device_ids), unit, suggestion))
        return job

    async def _run_batch(self, job_id: str, device_ids: List[str], unit: UnitFn, suggestion: str):
        completed = failed = 0
        results: List[DeviceResult] = []
        for device_id in device_ids:
            try:
                result = await unit(device_id)
            except Exception as e:
                log.error(f"Job {job_id}: unexpected error on {device_id}: {e!r}")
                result = _failed(device_id, wrap_error(e).message, suggestion)
            results.append(result)
            if result.status == "success":
                completed += 1
                await self.jobs.update_progress(job_id, completed, failed)
            else:
                failed += 1
                await self.jobs.update_progress(job_id, completed, failed)
                await self.jobs.add_error(job_id, result.error or "Unknown error",
                                          suggestion=result.suggestion or suggestion, device_id=device_id)
        await self.jobs.set_results(job_id, {
            "successful": completed,
            "failed": failed,
            "results": [r.model_dump(exclude_none=True) for r in results],
        })
        await self.jobs.complete_job(job_id)

    async def configure_autotuning(self, device_ids: Sequence[str], mode: str,
                                   target_power: Optional[float] = None, target_hashrate: Optional[float] = None,
                                   validate: bool = True) -> Job:
        if mode not in AUTOTUNING_MODES:
            raise ValidationError(f"Mode must be one of: {', '.join(AUTOTUNING_MODES)}", {"mode": mode})
        if mode == "power":
            if not target_power:
                raise ValidationError('target_power is required when mode is "power"')
            check = validate_power_limit(target_power)
            if not check.valid:
                raise ValidationError(check.error, {"targetPower": target_power})
        if mode == "hashrate" and not (target_hashrate and target_hashrate > 0):
            raise ValidationError('target_hashrate is required when mode is "hashrate"')

        async def unit(device_id: str) -> DeviceResult:
            return await self._autotune(device_id, mode, target_power, target_hashrate, validate)

        metadata = {"mode": mode, "target_power": target_power, "target_hashrate": target_hashrate}
        return await self._start_batch_job("configure_autotuning", device_ids, metadata, unit, AUTOTUNING_SUGGESTION)

    async def _autotune(self, device_id: str, mode: str, target_power: Optional[float],
                        target_hashrate: Optional[float], validate: bool) -> DeviceResult:
        try:
            device, snapshot = await self._online_device(device_id)
            if validate and not snapshot.payload.firmware:
                return _failed(device_id, f"Cannot determine firmware version for device {device_id}",
                               AUTOTUNING_SUGGESTION)
            if mode == "hashrate":
                await self.gateway.execute(device, "set_hashrate_target", target_hashrate)
                target = target_hashrate
            else:
                target = target_power if mode == "power" else efficiency_target()
                await self.gateway.execute(device, "set_power_target", target)
        except FleetError as e:
            log.warning(f"Autotuning failed for {device_id}: {e.message}")
            return _failed(device_id, e.message, AUTOTUNING_SUGGESTION)
        await self._changed(device_id)
        log.info(f"Autotuning configured for {device_id}: {mode} mode, target {target}")
        return DeviceResult(device_id=device_id, status="success", applied_mode=mode, applied_target=target)

    async def reboot_devices(self, device_ids: Sequence[str]) -> Job:
        async def unit(device_id: str) -> DeviceResult:
            try:
                device = self.registry.get(device_id)
                await self.gateway.execute(device, "reboot")
            except FleetError as e:
                log.warning(f"Reboot failed for {device_id}: {e.message}")
                return _failed(device_id, e.message, REBOOT_SUGGESTION)
            await self._changed(device_id)
            log.info(f"Reboot requested for {device_id}")
            return DeviceResult(device_id=device_id, status="success")

        return await self._start_batch_job("reboot", device_ids, {}, unit, REBOOT_SUGGESTION)

    # Network configuration (job with connectivity check and rollback)

    async def configure_network(self, device_ids: Sequence[str], ip_address: Optional[str] = None,
                                gateway: Optional[str] = None, hostname: Optional[str] = None,
                                validate_connectivity: bool = True) -> Job:
        if ip_address is None and gateway is None and hostname is None:
            raise ValidationError("At least one network parameter must be provided "
                                  "(ip_address, gateway or hostname)")
        checks = []
        if ip_address is not None:
            checks.append(validate_cidr(ip_address))
        if gateway is not None:
            checks.append(validate_ipv4(gateway))
        if hostname is not None:
            checks.append(validate_hostname(hostname))
        for check in checks:
            if not check.valid:
                raise ValidationError(check.error)
        if len(device_ids) > 1 and (ip_address is not None or hostname is not None):
            raise ValidationError("ip_address and hostname can only be set on one device at a time",
                                  {"count": len(device_ids)})

        async def unit(device_id: str) -> DeviceResult:
            return await self._configure_network(device_id, ip_address, gateway, hostname, validate_connectivity)

        metadata = {"ip_address": ip_address, "gateway": gateway, "hostname": hostname,
                    "validate_connectivity": validate_connectivity}
        return await self._start_batch_job("configure_network", device_ids, metadata, unit, NETWORK_SUGGESTION)

    async def _configure_network(self, device_id: str, ip_address: Optional[str], gateway: Optional[str],
                                 hostname: Optional[str], validate_connectivity: bool) -> DeviceResult:
        try:
            device, _ = await self._online_device(device_id)
            current = await self.gateway.execute(device, "get_network_config")
            request = network_request(current, ip_address, gateway, hostname)
            log.info(f"Applying network configuration on {device_id}: {request}")
            await self.gateway.execute(device, "set_network_config", request)
        except FleetError as e:
            log.warning(f"Network configuration failed for {device_id}: {e.message}")
            return _failed(device_id, e.message, NETWORK_SUGGESTION)
        await self.sleep(NETWORK_SETTLE_S)

        target = device
        if ip_address is not None:
            target = device.model_copy(update={"host": parse_cidr(ip_address)[0]})
        details: Dict[str, Any] = {"previous_config": network_summary(current)}
        if validate_connectivity:
            try:
                updated = await self.gateway.execute(target, "get_network_config")
            except FleetError as e:
                return await self._rollback_network(device, target, current, e, details)
            details["new_config"] = network_summary(updated)

        if target.key != device.key:
            self.registry.register(target, replace=True)
            await self._release(device)
            log.info(f"Device {device_id} moved from {device.key} to {target.key}")
        await self._changed(device_id)
        log.info(f"Network configuration applied on {device_id}")
        return DeviceResult(device_id=device_id, status="success", details=details)

    async def _rollback_network(self, device: DeviceRegistration, target: DeviceRegistration,
                                current: Dict[str, Any], error: FleetError, details: Dict[str, Any]) -> DeviceResult:
        log.warning(f"Connectivity test failed for {device.id} at {target.key}, rolling back: {error.message}")
        details["connectivity_error"] = error.message
        if target.key != device.key:
            await self._release(target)
        try:
            await self.gateway.execute(device, "set_network_config", rollback_request(current))
        except FleetError as e:
            log.error(f"Network rollback failed for {device.id}: {e.message}")
            details["rollback_error"] = e.message
            return DeviceResult(device_id=device.id, status="failed",
                                error=f"Connectivity test failed and rollback also failed: {e.message}",
                                suggestion=NETWORK_ROLLBACK_SUGGESTION, details=details)
        await self._changed(device.id)
        details["rolled_back"] = True
        log.info(f"Network configuration on {device.id} rolled back")
        return DeviceResult(device_id=device.id, status="failed",
                            error=f"Connectivity test failed after network configuration: {error.message}. "
                                  f"Rolled back to previous configuration",
                            suggestion=NETWORK_SUGGESTION, details=details)

    async def _release(self, device: DeviceRegistration):
        # Keep the handle while another registration still uses the endpoint
        if not any(d.key == device.key for d in self.registry.devices.values()):
            await self.gateway.close(device)
            self.gateway.sessions.invalidate(device)

    # Performance baseline (multi-phase job)

    async def run_performance_baseline(self, device_id: str, modes: Sequence[str] = ("low", "medium", "high"),
                                       duration_s: int = 300, sample_interval_s: int = 30) -> Job:
        if not modes:
            raise ValidationError("At least one power mode is required")
        unknown = [m for m in modes if m not in BASELINE_MODES]
        if unknown:
            raise ValidationError(f"Power mode must be one of: {', '.join(BASELINE_MODES)}", {"modes": unknown})
        if len(set(modes)) != len(modes):
            raise ValidationError("Power modes must not repeat", {"modes": list(modes)})
        if not BASELINE_MIN_DURATION <= duration_s <= BASELINE_MAX_DURATION:
            raise ValidationError(f"Duration must be between {BASELINE_MIN_DURATION} and "
                                  f"{BASELINE_MAX_DURATION} seconds", {"duration": duration_s})
        if not 0 < sample_interval_s <= duration_s:
            raise ValidationError("Sample interval must be positive and no longer than the duration",
                                  {"sampleInterval": sample_interval_s})

        _, snapshot = await self._online_device(device_id)
        job = await self.jobs.create_job("performance_baseline", len(modes), {
            "device_id": device_id,
            "modes": list(modes),
            "duration": duration_s,
            "sample_interval": sample_interval_s,
            "estimated_duration": duration_s * len(modes),
        })
        body = self._run_baseline(job.job_id, device_id, list(modes), duration_s, sample_interval_s,
                                  snapshot.payload.power_target_w)
        self.supervisor.submit(job.job_id, body)
        return job

    async def _run_baseline(self, job_id: str, device_id: str, modes: List[str], duration_s: int,
                            sample_interval_s: int, original_target: Optional[float]):
        device = self.registry.get(device_id)
        samples = max(1, duration_s // sample_interval_s)
        mode_results: List[Dict[str, Any]] = []
        try:
            for index, mode in enumerate(modes):
                log.info(f"Baseline {job_id}: testing {mode} mode on {device_id} ({samples} samples)")
                await self.gateway.execute(device, "set_power_target", BASELINE_MODES[mode])
                await self._changed(device_id)
                mode_results.append(await self._collect(device_id, mode, samples, sample_interval_s))
                await self.jobs.update_progress(job_id, index + 1, 0)
        finally:
            if original_target:
                try:
                    await self.gateway.execute(device, "set_power_target", original_target)
                    await self._changed(device_id)
                except FleetError as e:
                    log.error(f"Unable to restore power target {original_target} W on {device_id}: {e.message}")

        current = _mode_for_target(original_target)
        best = min(mode_results, key=lambda r: r["metrics"]["efficiency"])
        await self.jobs.set_results(job_id, {
            "baseline": dict(best["metrics"], mode=best["mode"]),
            "recommendations": recommendations(mode_results, current),
            "detailed_metrics": mode_results,
            "original_power_target": original_target,
        })
        await self.jobs.complete_job(job_id)

    async def _collect(self, device_id: str, mode: str, samples: int, interval: float) -> Dict[str, Any]:
        hashrate: List[float] = []
        power: List[float] = []
        temperature: List[float] = []
        for _ in range(samples):
            await self.sleep(interval)
            status = (await self.cache.get_status(device_id, force_refresh=True)).payload
            if status.hashrate_ths is not None:
                hashrate.append(status.hashrate_ths)
            if status.power_w is not None:
                power.append(status.power_w)
            if status.temperature_c is not None:
                temperature.append(status.temperature_c)
        if not power or sum(hashrate) <= 0:
            raise InternalError(f"No hashrate or power samples collected for {mode} mode on {device_id}",
                                {"deviceId": device_id, "mode": mode})
        avg_hashrate = sum(hashrate) / len(hashrate)
        avg_power = sum(power) / len(power)
        return {
            "mode": mode,
            "samples": samples,
            "metrics": {
                "hashrate": avg_hashrate,
                "power": avg_power,
                "efficiency": avg_power / avg_hashrate,
                "temperature": sum(temperature) / len(temperature) if temperature else None,
            },
        }


def network_request(current: Dict[str, Any], ip_address: Optional[str], gateway: Optional[str],
                    hostname: Optional[str]) -> Dict[str, Any]:
    """Build the configuration body, filling unchanged static fields from the current config."""
    request: Dict[str, Any] = {}
    if hostname is not None:
        request["hostname"] = hostname
    if ip_address is not None or gateway is not None:
        primary = (current.get("networks") or [{}])[0]
        if ip_address is not None:
            address, netmask = parse_cidr(ip_address)
        else:
            address, netmask = primary.get("address"), primary.get("netmask")
        gateway = gateway or current.get("default_gateway")
        if not (address and netmask and gateway):
            raise ValidationError("Current static address is unknown, provide ip_address and gateway",
                                  {"current": current})
        request["protocol"] = {"static": {"address": address, "netmask": netmask, "gateway": gateway}}
    return request


def rollback_request(previous: Dict[str, Any]) -> Dict[str, Any]:
    networks = previous.get("networks") or []
    if not networks:
        raise InternalError("No network configuration available for rollback")
    primary = networks[0]
    return {
        "hostname": previous.get("hostname"),
        "protocol": {"static": {"address": primary.get("address"), "netmask": primary.get("netmask"),
                                "gateway": previous.get("default_gateway")}},
    }


def network_summary(config: Dict[str, Any]) -> Dict[str, Any]:
    networks = config.get("networks") or []
    ip_address = None
    if networks:
        ip_address = f"{networks[0]['address']}/{netmask_prefix(networks[0]['netmask'])}"
    return {
        "hostname": config.get("hostname"),
        "ip_address": ip_address,
        "gateway": config.get("default_gateway"),
        "dns_servers": config.get("dns_servers") or [],
    }


def _mode_for_target(target: Optional[float]) -> Optional[str]:
    for mode, watt in BASELINE_MODES.items():
        if target == watt:
            return mode
    return None


def recommendations(mode_results: List[Dict[str, Any]], current_mode: Optional[str]) -> List[str]:
    """Optimization advice from per-mode baseline metrics (lower J/TH is better)."""
    advice = []
    best = min(mode_results, key=lambda r: r["metrics"]["efficiency"])
    efficiency = best["metrics"]["efficiency"]
    if best["mode"] != current_mode:
        advice.append(f"Switch to {best['mode']} power mode for optimal efficiency ({efficiency:.1f} J/TH)")
    else:
        advice.append(f"Current {current_mode} power mode is optimal ({efficiency:.1f} J/TH)")

    temp = best["metrics"]["temperature"]
    if temp is None:
        advice.append("Temperature was not reported during the test.")
    elif temp > 80:
        advice.append(f"Temperature is high ({temp:.0f}°C). Consider improving cooling or reducing power limit.")
    elif temp > 70:
        advice.append(f"Temperature is moderate ({temp:.0f}°C). Monitor cooling system.")
    else:
        advice.append(f"Temperature is within safe range ({temp:.0f}°C).")

    efficiencies = [r["metrics"]["efficiency"] for r in mode_results]
    lowest, highest = min(efficiencies), max(efficiencies)
    if lowest > 0:
        gap = (highest - lowest) / lowest * 100
        if gap > 20:
            advice.append(f"Significant efficiency gain available ({gap:.0f}%) by optimizing power mode.")
    return advice
