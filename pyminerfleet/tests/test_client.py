"""Tests for the Braiins OS REST client."""
from unittest.mock import Mock

import pytest
import requests

from pyminerfleet.bosapi import BosClient
from pyminerfleet.exceptions import (AuthenticationError, DeviceBusyError, DeviceConnectionError,
                                     DeviceTimeoutError, InternalError, ValidationError)

DETAILS = {
    "hostname": "miner-a",
    "status": 2,
    "miner_identity": {"model": "Antminer S19j Pro"},
    "bos_version": {"current": "24.03"},
    "system_uptime_s": 7200,
}
STATS = {
    "miner_stats": {"real_hashrate": {"last_5m": {"gigahash_per_second": 98500.0}}},
    "power_stats": {"approximated_consumption": {"watt": 3050}, "efficiency": {"joule_per_terahash": 31.0}},
}
BOARDS = {
    "hashboards": [
        {"id": "6", "enabled": True, "chips_count": 126, "highest_chip_temp": {"celsius": 71.0},
         "stats": {"hashrate": {"gigahash_per_second": 33000.0}}},
        {"id": "7", "enabled": True, "chips_count": 126, "highest_chip_temp": {"celsius": 74.5},
         "stats": {"hashrate": {"gigahash_per_second": 32500.0}}},
    ]
}
TUNER = {"mode_state": {"powertargetmodestate": {"current_target": {"watt": 3000}}}}


def response(status_code=200, body=None):
    """Mock requests.Response."""
    r = Mock()
    r.status_code = status_code
    r.content = b"{}" if body is not None else b""
    r.json.return_value = body
    r.text = ""
    r.reason = "Reason"
    return r


@pytest.fixture
def client():
    c = BosClient("10.0.0.1", timeout=5)
    c.session = Mock()
    return c


def test_login(client):
    """Test that login returns the token and its lifetime."""
    client.session.request.return_value = response(body={"token": "abc", "timeout_s": 1800})

    assert client.login("root", "secret") == ("abc", 1800.0)
    args, kwargs = client.session.request.call_args
    assert args == ("POST", "http://10.0.0.1:80/api/v1/auth/login")
    assert kwargs["json"] == {"username": "root", "password": "secret"}
    assert kwargs["timeout"] == 5


def test_login_default_lifetime(client):
    """Test the token lifetime assumed when the device does not report one."""
    client.session.request.return_value = response(body={"token": "abc"})
    assert client.login("root", "secret") == ("abc", 3600.0)


def test_login_rejected(client):
    """Test that bad credentials raise AuthenticationError."""
    client.session.request.return_value = response(401, {"message": "invalid credentials"})
    with pytest.raises(AuthenticationError) as exc_info:
        client.login("root", "wrong")
    assert "invalid credentials" in exc_info.value.message

    client.session.request.return_value = response(200, {})
    with pytest.raises(AuthenticationError):
        client.login("root", "secret")


@pytest.mark.parametrize("code,error", [
    (400, ValidationError),
    (401, AuthenticationError),
    (403, AuthenticationError),
    (404, ValidationError),
    (409, DeviceBusyError),
    (429, DeviceBusyError),
    (500, InternalError),
    (503, DeviceConnectionError),
])
def test_status_code_mapping(client, code, error):
    """Test HTTP failures map onto the error taxonomy."""
    client.session.request.return_value = response(code, {"message": "nope"})
    with pytest.raises(error):
        client.reboot("token")


def test_transport_errors(client):
    """Test that requests exceptions become retryable device errors."""
    client.session.request.side_effect = requests.exceptions.ConnectTimeout("slow")
    with pytest.raises(DeviceTimeoutError):
        client.reboot("token")

    client.session.request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(DeviceConnectionError):
        client.reboot("token")


@pytest.mark.parametrize("exc", [
    requests.exceptions.ChunkedEncodingError("connection reset"),
    requests.exceptions.ContentDecodingError("bad gzip"),
    requests.exceptions.TooManyRedirects("redirect loop"),
    requests.exceptions.InvalidURL("bad host"),
])
def test_other_request_errors(client, exc):
    """Test that any other requests failure becomes a DeviceConnectionError."""
    client.session.request.side_effect = exc
    with pytest.raises(DeviceConnectionError) as exc_info:
        client.get_status("token")
    assert exc.__class__.__name__ in exc_info.value.message
    assert exc_info.value.retryable


def test_get_status(client):
    """Test that the status endpoints are combined into one DeviceStatus."""
    bodies = {
        "/api/v1/miner/details": DETAILS,
        "/api/v1/miner/stats": STATS,
        "/api/v1/miner/hw/hashboards": BOARDS,
        "/api/v1/performance/tuner-state": TUNER,
    }
    client.session.request.side_effect = lambda method, url, **kw: response(
        body=bodies[url.replace(client.base_url, "")])

    status = client.get_status("token")

    assert status.online is True
    assert status.hostname == "miner-a"
    assert status.model == "Antminer S19j Pro"
    assert status.firmware == "24.03"
    assert status.uptime_s == 7200
    assert status.hashrate_ths == pytest.approx(98.5)
    assert status.temperature_c == 74.5
    assert status.power_w == 3050
    assert status.efficiency_jth == 31.0
    assert status.tuner_mode == "power"
    assert status.power_target_w == 3000
    assert [b.id for b in status.hashboards] == ["6", "7"]
    assert client.session.request.call_args.kwargs["headers"] == {"authorization": "token"}


def test_get_status_tolerates_missing_optional_data(client):
    """Test that unsupported optional endpoints do not fail a status read."""
    def request(method, url, **kw):
        if url.endswith("/miner/details"):
            return response(body=dict(DETAILS, status=1))
        return response(404, {"message": "not found"})

    client.session.request.side_effect = request

    status = client.get_status("token")

    assert status.online is False
    assert status.hashrate_ths is None
    assert status.hashboards == []


@pytest.mark.parametrize("boards", [
    {"hashboards": ["bad"]},
    {"hashboards": [{"id": "6", "chips_count": "many"}]},
])
def test_get_status_malformed_response(client, boards):
    """Test that a malformed status body raises InternalError."""
    bodies = {
        "/api/v1/miner/details": DETAILS,
        "/api/v1/miner/stats": STATS,
        "/api/v1/miner/hw/hashboards": boards,
        "/api/v1/performance/tuner-state": TUNER,
    }
    client.session.request.side_effect = lambda method, url, **kw: response(
        body=bodies[url.replace(client.base_url, "")])

    with pytest.raises(InternalError) as exc_info:
        client.get_status("token")
    assert "Malformed status response" in exc_info.value.message


def test_normalize_falls_back_to_hashboards():
    """Test hashrate and efficiency derived from hashboards when stats lack them."""
    stats = {"power_stats": {"approximated_consumption": {"watt": 1300}}}
    status = BosClient.normalize(DETAILS, stats, BOARDS, {})

    assert status.hashrate_ths == pytest.approx(65.5)
    assert status.efficiency_jth == pytest.approx(1300 / 65.5)
    assert status.tuner_mode is None


def test_set_power_target(client):
    """Test the power target request body."""
    client.session.request.return_value = response(body={"watt": 3200})

    client.set_power_target("token", 3200.0)

    args, kwargs = client.session.request.call_args
    assert args == ("PUT", "http://10.0.0.1:80/api/v1/performance/power-target")
    assert kwargs["json"] == {"watt": 3200}


def test_set_cooling_mode(client):
    """Test manual and automatic cooling request bodies."""
    client.session.request.return_value = response(body={})

    client.set_cooling_mode("token", "manual", fan_speed=60)
    assert client.session.request.call_args.kwargs["json"] == {"mode": {"manual": {"fan_speed_percent": 60}}}

    client.set_cooling_mode("token", "auto", min_fan_speed=40, max_fan_speed=90)
    assert client.session.request.call_args.kwargs["json"] == {
        "mode": {"auto": {"min_fan_speed_percent": 40, "max_fan_speed_percent": 90}}}

    with pytest.raises(ValidationError):
        client.set_cooling_mode("token", "immersion")


def test_close(client):
    """Test that close releases the session once."""
    session = client.session
    client.close()
    client.close()
    session.close.assert_called_once()


def test_network_config(client):
    """Test reading and writing the network configuration."""
    current = {"hostname": "miner-a", "networks": [{"address": "10.0.0.1", "netmask": "255.255.255.0"}],
               "default_gateway": "10.0.0.254", "dns_servers": ["10.0.0.254"]}
    client.session.request.return_value = response(body=current)

    assert client.get_network_config("token") == current
    args, _ = client.session.request.call_args
    assert args == ("GET", "http://10.0.0.1:80/api/v1/network/configuration")

    config = {"protocol": {"static": {"address": "10.0.0.50", "netmask": "255.255.255.0",
                                      "gateway": "10.0.0.254"}}}
    client.set_network_config("token", config)
    args, kwargs = client.session.request.call_args
    assert args == ("PUT", "http://10.0.0.1:80/api/v1/network/configuration")
    assert kwargs["json"] == config
