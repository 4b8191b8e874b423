"""
Remote Operation Gateway - executes device operations with retry and backoff.

Architecture:
    - One connection handle (BosClient) per device key, created lazily and reused
    - Blocking client calls run in a dedicated ThreadPoolExecutor wrapped in
      asyncio.wait_for, so the event loop is never blocked
    - Tokens come from the SessionManager; a refused token is dropped and the
      call is repeated once with a fresh login

Retry Classification:
    DeviceConnectionError, DeviceTimeoutError  retried with exponential backoff
    everything else                            surfaced immediately

    After max_attempts connectivity failures a DeviceConnectionError is raised
    carrying the last failure reason and the attempt count.

Usage:
    gateway = RemoteOperationGateway(RetryPolicy(max_attempts=3))
    status = await gateway.execute(device, "get_status")
    await gateway.execute(device, "set_power_target", 3000)
    await gateway.close_all()
"""
import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pyminerfleet.api_lock import KeyedLocks
from pyminerfleet.bosapi.client import BosClient
from pyminerfleet.exceptions import (AuthenticationError, DeviceConnectionError, DeviceTimeoutError,
                                     ValidationError)
from pyminerfleet.models import DeviceRegistration
from pyminerfleet.retry import RetryPolicy
from pyminerfleet.session import SessionManager

log = logging.getLogger(__name__)

RETRYABLE = (DeviceConnectionError, DeviceTimeoutError)


class RemoteOperationGateway:

    def __init__(self, policy: Optional[RetryPolicy] = None, sessions: Optional[SessionManager] = None,
                 client_factory: Callable[..., Any] = BosClient,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 max_workers: int = 10, pool_maxsize: int = 10, token_margin: float = 60.0,
                 clock: Callable[[], float] = time.time):
        self.policy = policy or RetryPolicy()
        self.client_factory = client_factory
        self.sleep = sleep
        self.pool_maxsize = pool_maxsize
        self.connections: Dict[str, Any] = {}
        self.sessions = sessions or SessionManager(self._login, margin=token_margin, clock=clock)
        self._handle_locks = KeyedLocks()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pyminerfleet")
        log.debug(f"Gateway thread pool initialized with {max_workers} workers")

    async def get_connection(self, device: DeviceRegistration) -> Any:
        """Return the connection handle for device, creating it once."""
        handle = self.connections.get(device.key)
        if handle is not None:
            return handle
        async with self._handle_locks.acquire(device.key):
            handle = self.connections.get(device.key)
            if handle is None:
                handle = self.client_factory(device.host, device.port, use_tls=device.use_tls,
                                             timeout=self.policy.timeout, pool_maxsize=self.pool_maxsize)
                self.connections[device.key] = handle
                log.info(f"Created connection handle for {device.key}")
        return handle

    async def execute(self, device: DeviceRegistration, operation: str, *args, **kwargs) -> Any:
        """Run operation on device, retrying connectivity failures."""
        attempts = self.policy.max_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._attempt(device, operation, args, kwargs)
            except RETRYABLE as e:
                last_error = e
                if attempt < attempts:
                    delay = self.policy.backoff(attempt)
                    log.warning(f"{operation} on {device.key} failed (attempt {attempt}/{attempts}): "
                                f"{e} - retrying in {delay:.2f}s")
                    await self.sleep(delay)
                else:
                    log.debug(f"{operation} on {device.key} failed (attempt {attempt}/{attempts}): {e}")
        log.error(f"{operation} on {device.key} failed after {attempts} attempts: {last_error}")
        raise DeviceConnectionError(device.key, str(last_error), attempts=attempts) from last_error

    async def _attempt(self, device: DeviceRegistration, operation: str, args: Tuple, kwargs: Dict) -> Any:
        client = await self.get_connection(device)
        method = getattr(client, operation, None)
        if operation.startswith("_") or operation in ("login", "close") or not callable(method):
            raise ValidationError(f"Unknown operation '{operation}'", {"operation": operation})
        token = await self.sessions.get_token(device)
        try:
            return await self._run(device, method, token, *args, **kwargs)
        except AuthenticationError:
            # Token refused - drop it and try a fresh login once
            log.debug(f"Token refused by {device.key} - logging in again")
            self.sessions.invalidate(device)
        token = await self.sessions.get_token(device)
        try:
            return await self._run(device, method, token, *args, **kwargs)
        except AuthenticationError:
            self.sessions.invalidate(device)
            raise

    async def _login(self, device: DeviceRegistration) -> Tuple[str, float]:
        client = await self.get_connection(device)
        return await self._run(device, client.login, device.username, device.password)

    async def _run(self, device: DeviceRegistration, fn: Callable, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs)),
                timeout=self.policy.timeout
            )
        except asyncio.TimeoutError:
            raise DeviceTimeoutError(device.key, self.policy.timeout)

    async def close(self, device: DeviceRegistration):
        handle = self.connections.pop(device.key, None)
        if handle is not None:
            handle.close()
            log.info(f"Closed connection handle for {device.key}")
        self._handle_locks.discard(device.key)

    async def close_all(self):
        for key in list(self.connections):
            handle = self.connections.pop(key)
            handle.close()
        self.sessions.clear()
        self._executor.shutdown(wait=False)
        log.info("Gateway shutdown complete")
