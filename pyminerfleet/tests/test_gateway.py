"""Tests for the remote operation gateway (retry, backoff, connection reuse)."""
import asyncio
import time

import pytest

from pyminerfleet.exceptions import (AuthenticationError, DeviceConnectionError, DeviceOfflineError,
                                     ValidationError)
from pyminerfleet.gateway import RemoteOperationGateway
from pyminerfleet.models import DeviceRegistration
from pyminerfleet.retry import RetryPolicy

DEVICE = DeviceRegistration(id="A", host="10.0.0.1", password="secret")


@pytest.fixture
def gateway(network, sleep, clock, policy):
    return RemoteOperationGateway(policy, client_factory=network.client_factory, sleep=sleep, clock=clock)


def test_backoff_schedule():
    """Test exponential backoff capped at max_backoff_ms."""
    policy = RetryPolicy(max_attempts=6, initial_backoff_ms=1000, multiplier=2, max_backoff_ms=5000)
    assert policy.delays() == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert RetryPolicy().delays() == [1.0, 2.0]
    assert RetryPolicy.no_retry().delays() == []


def test_invalid_policy_rejected():
    """Test that nonsensical retry settings are refused."""
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(multiplier=0.5)


@pytest.mark.asyncio
async def test_execute_success(gateway, network):
    """Test a plain successful call logs in once and returns the result."""
    fake = network.add(DEVICE.host)

    status = await gateway.execute(DEVICE, "get_status")

    assert status.online is True
    assert fake.logins == 1
    assert fake.count("get_status") == 1


@pytest.mark.asyncio
async def test_connectivity_failure_exactly_max_attempts(gateway, network, sleep):
    """Test that a persistent connectivity failure is attempted exactly 3 times."""
    fake = network.add(DEVICE.host)
    fake.fail_connect = -1

    with pytest.raises(DeviceConnectionError) as exc_info:
        await gateway.execute(DEVICE, "get_status")

    assert fake.connect_attempts == 3
    assert sleep.delays == [1.0, 2.0]
    assert exc_info.value.details["attempts"] == 3
    assert "connection refused" in exc_info.value.message


@pytest.mark.asyncio
async def test_transient_failure_recovers(gateway, network, sleep):
    """Test that a call succeeding on the third attempt returns normally."""
    fake = network.add(DEVICE.host)
    fake.fail_connect = 2

    status = await gateway.execute(DEVICE, "get_status")

    assert status is not None
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_backoff_capped(network, sleep, clock):
    """Test that waits never exceed the configured maximum."""
    policy = RetryPolicy(max_attempts=5, initial_backoff_ms=1000, multiplier=2, max_backoff_ms=3000)
    gateway = RemoteOperationGateway(policy, client_factory=network.client_factory, sleep=sleep, clock=clock)
    network.add(DEVICE.host).fail_connect = -1

    with pytest.raises(DeviceConnectionError):
        await gateway.execute(DEVICE, "get_status")

    assert sleep.delays == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_authentication_failure_not_retried(gateway, network, sleep):
    """Test that a rejected password surfaces immediately without backoff."""
    fake = network.add(DEVICE.host, password="different")

    with pytest.raises(AuthenticationError):
        await gateway.execute(DEVICE, "get_status")

    assert sleep.delays == []
    assert fake.connect_attempts == 1


@pytest.mark.asyncio
async def test_validation_error_not_retried(gateway, network, sleep):
    """Test that a rejected request is not retried."""
    network.add(DEVICE.host)

    with pytest.raises(ValidationError):
        await gateway.execute(DEVICE, "set_power_target", -5)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_only_connectivity_errors_retried(gateway, network, sleep):
    """Test that a retryable flag alone does not make the gateway retry."""
    fake = network.add(DEVICE.host)
    fake.raise_on["reboot"] = DeviceOfflineError("A", "device reports it is not running")

    with pytest.raises(DeviceOfflineError) as exc_info:
        await gateway.execute(DEVICE, "reboot")

    assert exc_info.value.retryable
    assert sleep.delays == []
    assert fake.connect_attempts == 2


@pytest.mark.asyncio
async def test_unknown_operation_rejected(gateway, network):
    """Test that only public client operations can be executed."""
    network.add(DEVICE.host)

    for operation in ("does_not_exist", "_call", "login", "close"):
        with pytest.raises(ValidationError):
            await gateway.execute(DEVICE, operation)


@pytest.mark.asyncio
async def test_connection_handle_created_once(gateway, network):
    """Test that concurrent calls to one device share one connection handle."""
    network.add(DEVICE.host)
    other = DeviceRegistration(id="B", host="10.0.0.2", password="secret")
    network.add(other.host)

    await asyncio.gather(*(gateway.execute(DEVICE, "get_status") for _ in range(5)))
    await gateway.execute(other, "get_status")

    assert [h.key for h in network.handles] == ["10.0.0.1:80", "10.0.0.2:80"]


@pytest.mark.asyncio
async def test_concurrent_calls_share_login(gateway, network):
    """Test that concurrent calls without a session log in once."""
    fake = network.add(DEVICE.host)

    await asyncio.gather(*(gateway.execute(DEVICE, "get_status") for _ in range(5)))

    assert fake.logins == 1
    assert fake.count("get_status") == 5


@pytest.mark.asyncio
async def test_refused_token_triggers_single_relogin(gateway, network, sleep):
    """Test that a token refused by the device is replaced with a fresh login."""
    fake = network.add(DEVICE.host)
    await gateway.execute(DEVICE, "get_status")

    # Device restarted and forgot its tokens
    fake.valid_tokens.clear()
    await gateway.execute(DEVICE, "reboot")

    assert fake.logins == 2
    assert fake.rebooted == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_timeout_is_retried(network, sleep, clock):
    """Test that a call exceeding the per-call timeout counts as a retryable failure."""
    policy = RetryPolicy(max_attempts=2, initial_backoff_ms=10, timeout=0.05)
    gateway = RemoteOperationGateway(policy, client_factory=network.client_factory, sleep=sleep, clock=clock)
    network.add(DEVICE.host)
    client = await gateway.get_connection(DEVICE)
    client.slow = lambda token: time.sleep(0.2)

    with pytest.raises(DeviceConnectionError) as exc_info:
        await gateway.execute(DEVICE, "slow")

    assert exc_info.value.details["attempts"] == 2
    assert "timed out" in exc_info.value.message
    assert sleep.delays == [0.01]


@pytest.mark.asyncio
async def test_close_all(gateway, network):
    """Test that shutdown closes every handle and drops sessions."""
    network.add(DEVICE.host)
    await gateway.execute(DEVICE, "get_status")

    await gateway.close_all()

    assert gateway.connections == {}
    assert all(h.closed for h in network.handles)
    assert gateway.sessions.get_session(DEVICE) is None
