# pyMinerFleet Module
# -*- coding: utf-8 -*-
"""
 Python module to orchestrate a fleet of Braiins OS mining devices

 For more information see README.md

 Features
    * Talks to each device over the Braiins OS public REST API
    * Caches login tokens per device and renews them before they expire
    * Re-uses http connections per device for reduced load and faster response times
    * Retries connectivity failures with exponential backoff
    * Caches device status (30s default) to avoid hammering devices
    * Fleet summary that tolerates unreachable devices
    * Tracks long-running operations as jobs that callers poll by id
    * In-memory or Redis storage for status snapshots and jobs

 Classes
    FleetManager(store, policy, status_ttl, fleet_ttl, job_ttl, token_margin,
        client_factory, sleep, clock, max_workers, pool_maxsize)

 Parameters
    store = MemoryStore()     # KeyValueStore for status, fleet and job records
    policy = RetryPolicy()    # Retry attempts, backoff and per-call timeout
    status_ttl = 30           # Device status cache lifetime in seconds
    fleet_ttl = 60            # Fleet summary cache lifetime in seconds
    job_ttl = 86400           # Job record retention in seconds
    token_margin = 60         # Re-login this many seconds before token expiry
    pool_maxsize = 10         # Pool max size for http connection re-use

 Functions
    register_device(device, replace)            # Add a DeviceRegistration
    unregister_device(device_id)                # Remove a device and its cached state
    get_status(device_id, force_refresh)        # Cached StatusSnapshot (fresh if forced)
    get_fleet_status(filter, force_refresh)     # FleetSummary across matching devices
    create_job(type, total_units, metadata)     # New pending Job
    get_job(job_id)                             # Job or None
    configure_fan_control(device_ids, mode, ..) # Synchronous batch, returns BatchResult
    configure_autotuning(device_ids, mode, ..)  # Job
    reboot_devices(device_ids)                  # Job
    configure_network(device_ids, ..)           # Job
    run_performance_baseline(device_id, ..)     # Job
    shutdown()                                  # Stop jobs, close connections and store

 Requirements
    This module requires the following modules: requests, pydantic, pydantic-settings, redis
    pip install requests pydantic pydantic-settings redis
"""
import logging
import sys

version_tuple = (0, 1, 0)
version = __version__ = '%d.%d.%d' % version_tuple

from pyminerfleet.config import DeviceConfig, Settings
from pyminerfleet.exceptions import (AuthenticationError, DeviceBusyError, DeviceConnectionError,
                                     DeviceNotFoundError, DeviceOfflineError, DeviceTimeoutError, FleetError,
                                     InternalError, JobNotFoundError, ValidationError)
from pyminerfleet.manager import FleetManager
from pyminerfleet.models import (BatchResult, DeviceRegistration, DeviceStatus, FleetFilter, FleetSummary, Job,
                                 JobStatus, StatusSnapshot)
from pyminerfleet.retry import RetryPolicy
from pyminerfleet.store import MemoryStore, RedisStore

log = logging.getLogger(__name__)
log.debug('%s version %s', __name__, __version__)
log.debug('Python %s on %s', sys.version, sys.platform)


def set_debug(toggle=True, color=True):
    """Enable verbose logging"""
    if toggle:
        if color:
            logging.basicConfig(format='\x1b[31;1m%(levelname)s:%(message)s\x1b[0m', level=logging.DEBUG)
        else:
            logging.basicConfig(format='%(levelname)s:%(message)s', level=logging.DEBUG)
        log.setLevel(logging.DEBUG)
        log.debug("%s [%s]\n" % (__name__, __version__))
    else:
        log.setLevel(logging.NOTSET)
