"""Tests for the per-device session manager."""
import asyncio

import pytest

from pyminerfleet.exceptions import AuthenticationError, DeviceConnectionError, ValidationError
from pyminerfleet.models import DeviceRegistration
from pyminerfleet.session import SessionManager

DEVICE = DeviceRegistration(id="A", host="10.0.0.1", password="secret")


class CountingLogin:
    """Login stub returning numbered tokens."""

    def __init__(self, timeout_s=3600, error=None, delay_ticks=0):
        self.calls = 0
        self.timeout_s = timeout_s
        self.error = error
        self.delay_ticks = delay_ticks

    async def __call__(self, device):
        self.calls += 1
        for _ in range(self.delay_ticks):
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return f"token-{self.calls}", self.timeout_s


@pytest.mark.asyncio
async def test_token_reused_while_valid(clock):
    """Test that a cached token is returned without a second login."""
    login = CountingLogin()
    sessions = SessionManager(login, margin=60, clock=clock)

    assert await sessions.get_token(DEVICE) == "token-1"
    clock.advance(3000)
    assert await sessions.get_token(DEVICE) == "token-1"
    assert login.calls == 1


@pytest.mark.asyncio
async def test_relogin_at_expiry_minus_margin(clock):
    """Test that the token is not used at or past expires_at - margin."""
    login = CountingLogin(timeout_s=3600)
    sessions = SessionManager(login, margin=60, clock=clock)

    await sessions.get_token(DEVICE)
    clock.advance(3600 - 61)
    assert await sessions.get_token(DEVICE) == "token-1"
    clock.advance(1)
    assert await sessions.get_token(DEVICE) == "token-2"
    assert login.calls == 2


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_login(clock):
    """Test that concurrent callers without a token trigger exactly one login."""
    login = CountingLogin(delay_ticks=3)
    sessions = SessionManager(login, clock=clock)

    tokens = await asyncio.gather(*(sessions.get_token(DEVICE) for _ in range(5)))

    assert login.calls == 1
    assert set(tokens) == {"token-1"}


@pytest.mark.asyncio
async def test_failed_login_raises_and_caches_nothing(clock):
    """Test that a rejected login surfaces AuthenticationError and leaves no session."""
    login = CountingLogin(error=AuthenticationError(DEVICE.key, "invalid password"))
    sessions = SessionManager(login, clock=clock)

    with pytest.raises(AuthenticationError):
        await sessions.get_token(DEVICE)
    assert sessions.get_session(DEVICE) is None

    # The next call tries again rather than replaying the failure
    with pytest.raises(AuthenticationError):
        await sessions.get_token(DEVICE)
    assert login.calls == 2


@pytest.mark.asyncio
async def test_other_login_errors_become_authentication_errors(clock):
    """Test that a malformed login exchange is reported as an authentication failure."""
    login = CountingLogin(error=ValidationError("bad request"))
    sessions = SessionManager(login, clock=clock)

    with pytest.raises(AuthenticationError) as exc_info:
        await sessions.get_token(DEVICE)
    assert "bad request" in exc_info.value.message


@pytest.mark.asyncio
async def test_connection_errors_pass_through(clock):
    """Test that connectivity failures during login keep their type for the retry loop."""
    login = CountingLogin(error=DeviceConnectionError(DEVICE.key, "refused"))
    sessions = SessionManager(login, clock=clock)

    with pytest.raises(DeviceConnectionError):
        await sessions.get_token(DEVICE)


@pytest.mark.asyncio
async def test_invalidate_forces_new_login(clock):
    """Test that invalidate drops the cached session."""
    login = CountingLogin()
    sessions = SessionManager(login, clock=clock)

    await sessions.get_token(DEVICE)
    sessions.invalidate(DEVICE)
    assert sessions.get_session(DEVICE) is None
    assert await sessions.get_token(DEVICE) == "token-2"


@pytest.mark.asyncio
async def test_short_lived_token_not_cached(clock):
    """Test that a token living no longer than the margin is used once and not stored."""
    login = CountingLogin(timeout_s=30)
    sessions = SessionManager(login, margin=60, clock=clock)

    assert await sessions.get_token(DEVICE) == "token-1"
    assert sessions.get_session(DEVICE) is None
    assert await sessions.get_token(DEVICE) == "token-2"


@pytest.mark.asyncio
async def test_sessions_are_per_device(clock):
    """Test that devices on different endpoints get separate sessions."""
    login = CountingLogin()
    sessions = SessionManager(login, clock=clock)
    other = DeviceRegistration(id="B", host="10.0.0.2")

    await sessions.get_token(DEVICE)
    await sessions.get_token(other)

    assert login.calls == 2
    assert sessions.get_session(DEVICE).token != sessions.get_session(other).token
