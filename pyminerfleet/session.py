"""
Session Manager - per-device authentication tokens.

Tokens are cached by device key (host:port) and reused while

    now < expires_at - margin

An expired or nearly expired session is discarded and a new login is made.
Concurrent callers for the same device while no valid token exists share a
single login exchange.
"""
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from pyminerfleet.api_lock import SingleFlight
from pyminerfleet.exceptions import (AuthenticationError, DeviceConnectionError, DeviceTimeoutError,
                                     FleetError)
from pyminerfleet.models import DeviceRegistration, DeviceSession

log = logging.getLogger(__name__)

LoginFn = Callable[[DeviceRegistration], Awaitable[Tuple[str, float]]]


class SessionManager:

    def __init__(self, login: LoginFn, margin: float = 60.0, clock: Callable[[], float] = time.time):
        self._login = login
        self.margin = margin
        self.clock = clock
        self.sessions: Dict[str, DeviceSession] = {}
        self._logins = SingleFlight()

    async def get_token(self, device: DeviceRegistration) -> str:
        """Return a usable token for device, logging in if needed."""
        session = self.sessions.get(device.key)
        if session is not None:
            if session.is_valid(self.clock(), self.margin):
                return session.token
            log.debug(f"Session for {device.key} expired - discarding")
            self.sessions.pop(device.key, None)
        session = await self._logins.do(device.key, lambda: self._authenticate(device))
        return session.token

    def get_session(self, device: DeviceRegistration) -> Optional[DeviceSession]:
        return self.sessions.get(device.key)

    def invalidate(self, device: DeviceRegistration):
        if self.sessions.pop(device.key, None) is not None:
            log.debug(f"Session for {device.key} invalidated")

    def clear(self):
        self.sessions.clear()

    async def _authenticate(self, device: DeviceRegistration) -> DeviceSession:
        try:
            token, timeout_s = await self._login(device)
        except (AuthenticationError, DeviceConnectionError, DeviceTimeoutError):
            raise
        except FleetError as e:
            raise AuthenticationError(device.key, e.message) from e
        now = self.clock()
        session = DeviceSession(device_key=device.key, token=token, issued_at=now,
                                expires_at=now + timeout_s, timeout_s=timeout_s)
        if timeout_s <= self.margin:
            # Usable for the call that requested it only
            log.warning(f"Token lifetime {timeout_s}s for {device.key} is within the "
                        f"{self.margin}s safety margin - not caching")
            return session
        self.sessions[device.key] = session
        log.info(f"Logged in to {device.key} - token valid for {timeout_s:.0f}s")
        return session
