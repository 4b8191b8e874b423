import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from pydantic import ValidationError as ModelValidationError
from requests import Response

from pyminerfleet.exceptions import (AuthenticationError, DeviceBusyError, DeviceConnectionError,
                                     DeviceTimeoutError, InternalError, ValidationError)
from pyminerfleet.models import DeviceStatus, Hashboard

log = logging.getLogger(__name__)

# Braiins OS miner status codes (details.status)
STATUS_RUNNING = 2
STATUS_TUNING = 3
RUNNING_STATES = (STATUS_RUNNING, STATUS_TUNING)

COOLING_MODES = ("auto", "manual")


def _number(value: Any, *path: str) -> Optional[float]:
    # Walk nested dicts, e.g. _number(stats, "power_stats", "approximated_consumption", "watt")
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _terahash(rate: Any) -> Optional[float]:
    if not isinstance(rate, dict):
        return None
    ths = _number(rate, "terahash_per_second")
    if ths is not None:
        return ths
    ghs = _number(rate, "gigahash_per_second")
    if ghs is not None:
        return ghs / 1000.0
    return None


class BosClient:
    """
    Connection handle for one Braiins OS device (public REST API).

    Owns a requests.Session mounted with a pooled HTTPAdapter so keep-alive
    connections are reused across calls. Every method is blocking and is
    meant to run on the gateway's executor.
    """

    def __init__(self, host: str, port: int = 80, use_tls: bool = False, timeout: float = 30,
                 pool_maxsize: int = 10):
        self.host = host
        self.port = port
        self.timeout = timeout
        scheme = "https" if use_tls else "http"
        self.base_url = f"{scheme}://{host}:{port}"
        self.session = requests.Session()
        # noinspection PyUnresolvedReferences
        adapter = requests.adapters.HTTPAdapter(pool_maxsize=pool_maxsize)
        self.session.mount(f"{scheme}://", adapter)
        self.closed = False

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    def __repr__(self):
        return f"BosClient({self.key})"

    def _request(self, method: str, path: str, token: Optional[str] = None,
                 payload: Optional[dict] = None) -> Response:
        url = self.base_url + path
        headers = {"authorization": token} if token else {}
        log.debug(f" -- bosapi: {method} {url}")
        try:
            r = self.session.request(method, url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            log.debug(f"ERROR Timeout waiting for device API {url}")
            raise DeviceTimeoutError(self.key, self.timeout)
        except requests.exceptions.ConnectionError as exc:
            log.debug(f"ERROR Unable to connect to device at {url}")
            raise DeviceConnectionError(self.key, str(exc))
        except requests.exceptions.RequestException as exc:
            log.debug(f"ERROR Request to device API {url} failed: {exc.__class__.__name__}")
            raise DeviceConnectionError(self.key, f"{exc.__class__.__name__}: {exc}")
        self._check(r, path)
        return r

    def _check(self, r: Response, path: str):
        code = r.status_code
        if code < 400:
            return
        reason = self._reason(r)
        if code in (400, 422):
            raise ValidationError(f"{path} rejected by {self.key}: {reason}",
                                  {"device": self.key, "status": code})
        if code in (401, 403):
            raise AuthenticationError(self.key, reason)
        if code == 404:
            raise ValidationError(f"{path} not supported by firmware on {self.key}",
                                  {"device": self.key, "status": code})
        if code in (409, 423, 429):
            raise DeviceBusyError(f"Device {self.key} is busy: {reason}",
                                  {"device": self.key, "status": code})
        if code in (502, 503, 504):
            raise DeviceConnectionError(self.key, f"HTTP {code} {reason}")
        raise InternalError(f"Device {self.key} returned HTTP {code}: {reason}",
                            {"device": self.key, "status": code})

    @staticmethod
    def _reason(r: Response) -> str:
        try:
            body = r.json()
        except ValueError:
            return r.text or str(r.reason)
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return str(body)

    def _json(self, method: str, path: str, token: Optional[str] = None,
              payload: Optional[dict] = None) -> Dict[str, Any]:
        r = self._request(method, path, token, payload)
        if not r.content:
            return {}
        try:
            body = r.json()
        except ValueError:
            raise InternalError(f"Invalid JSON from {self.key}{path}", {"device": self.key})
        return body if isinstance(body, dict) else {"data": body}

    def _optional(self, path: str, token: str) -> Optional[Dict[str, Any]]:
        # Missing optional data must not fail a status read; auth errors still propagate
        try:
            return self._json("GET", path, token)
        except (ValidationError, DeviceBusyError, InternalError) as exc:
            log.debug(f"Optional data {path} unavailable on {self.key}: {exc}")
            return None

    # Operations

    def login(self, username: str, password: str) -> Tuple[str, float]:
        """Exchange credentials for a token; returns (token, timeout_s)."""
        try:
            body = self._json("POST", "/api/v1/auth/login", payload={"username": username, "password": password})
        except ValidationError as exc:
            raise AuthenticationError(self.key, exc.message)
        token = body.get("token")
        if not token:
            raise AuthenticationError(self.key, "no token in login response")
        timeout_s = _number(body, "timeout_s")
        return token, timeout_s if timeout_s is not None else 3600.0

    def get_status(self, token: str) -> DeviceStatus:
        details = self._json("GET", "/api/v1/miner/details", token)
        stats = self._optional("/api/v1/miner/stats", token) or {}
        boards = self._optional("/api/v1/miner/hw/hashboards", token) or {}
        tuner = self._optional("/api/v1/performance/tuner-state", token) or {}
        try:
            return self.normalize(details, stats, boards, tuner)
        except (ModelValidationError, AttributeError, TypeError, ValueError) as exc:
            raise InternalError(f"Malformed status response from {self.key}: {exc}",
                                {"device": self.key, "originalError": exc.__class__.__name__})

    def set_power_target(self, token: str, watt: float) -> Dict[str, Any]:
        if watt <= 0:
            raise ValidationError("Power target must be positive", {"watt": watt})
        return self._json("PUT", "/api/v1/performance/power-target", token, {"watt": int(watt)})

    def set_hashrate_target(self, token: str, terahash_per_second: float) -> Dict[str, Any]:
        if terahash_per_second <= 0:
            raise ValidationError("Hashrate target must be positive",
                                  {"terahash_per_second": terahash_per_second})
        return self._json("PUT", "/api/v1/performance/hashrate-target", token,
                          {"terahash_per_second": terahash_per_second})

    def set_cooling_mode(self, token: str, mode: str, fan_speed: Optional[int] = None,
                         min_fan_speed: Optional[int] = None, max_fan_speed: Optional[int] = None,
                         target_temperature: Optional[float] = None) -> Dict[str, Any]:
        if mode not in COOLING_MODES:
            raise ValidationError(f"Unsupported cooling mode '{mode}'", {"mode": mode})
        if mode == "manual":
            if fan_speed is None:
                raise ValidationError("fan_speed is required for manual mode")
            body: Dict[str, Any] = {"manual": {"fan_speed_percent": fan_speed}}
        else:
            auto: Dict[str, Any] = {}
            if target_temperature is not None:
                auto["target_temperature"] = {"celsius": target_temperature}
            if min_fan_speed is not None:
                auto["min_fan_speed_percent"] = min_fan_speed
            if max_fan_speed is not None:
                auto["max_fan_speed_percent"] = max_fan_speed
            body = {"auto": auto}
        return self._json("PUT", "/api/v1/cooling/mode", token, {"mode": body})

    def get_network_config(self, token: str) -> Dict[str, Any]:
        """Hostname, addresses (networks), default_gateway and dns_servers."""
        return self._json("GET", "/api/v1/network/configuration", token)

    def set_network_config(self, token: str, config: Dict[str, Any]) -> Dict[str, Any]:
        # {"hostname": ..., "protocol": {"static": {"address", "netmask", "gateway"}}}
        return self._json("PUT", "/api/v1/network/configuration", token, config)

    def reboot(self, token: str) -> Dict[str, Any]:
        return self._json("PUT", "/api/v1/actions/reboot", token)

    def close(self):
        if not self.closed:
            self.session.close()
            self.closed = True

    # Normalization

    @staticmethod
    def normalize(details: dict, stats: dict, boards: dict, tuner: dict) -> DeviceStatus:
        hashboards: List[Hashboard] = []
        for board in boards.get("hashboards") or []:
            hashboards.append(Hashboard(
                id=str(board.get("id", len(hashboards))),
                enabled=bool(board.get("enabled", True)),
                hashrate_ths=_terahash((board.get("stats") or {}).get("hashrate")),
                temperature_c=_number(board, "highest_chip_temp", "celsius"),
                chips=board.get("chips_count"),
            ))

        hashrate = _terahash(((stats.get("miner_stats") or {}).get("real_hashrate") or {}).get("last_5m"))
        if hashrate is None:
            board_rates = [b.hashrate_ths for b in hashboards if b.hashrate_ths is not None]
            hashrate = sum(board_rates) if board_rates else None

        temps = [b.temperature_c for b in hashboards if b.temperature_c is not None]
        power = _number(stats, "power_stats", "approximated_consumption", "watt")
        efficiency = _number(stats, "power_stats", "efficiency", "joule_per_terahash")
        if efficiency is None and power is not None and hashrate:
            efficiency = power / hashrate

        mode_state = tuner.get("mode_state") or {}
        tuner_mode = None
        power_target = None
        if "powertargetmodestate" in mode_state:
            tuner_mode = "power"
            power_target = _number(mode_state, "powertargetmodestate", "current_target", "watt")
        elif "hashratetargetmodestate" in mode_state:
            tuner_mode = "hashrate"

        uptime = details.get("system_uptime_s")
        return DeviceStatus(
            online=details.get("status", STATUS_RUNNING) in RUNNING_STATES,
            hostname=details.get("hostname"),
            model=(details.get("miner_identity") or {}).get("model"),
            firmware=(details.get("bos_version") or {}).get("current"),
            uptime_s=int(uptime) if isinstance(uptime, (int, float)) else None,
            hashrate_ths=hashrate,
            temperature_c=max(temps) if temps else None,
            power_w=power,
            efficiency_jth=efficiency,
            tuner_mode=tuner_mode,
            power_target_w=power_target,
            hashboards=hashboards,
        )
