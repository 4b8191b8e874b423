"""Safety validation for device operations.

Checks return a ValidationResult rather than raising so batch operations can
record a per-device failure and keep going. validate_device_ids() is the
exception: a malformed batch is rejected before any work starts.
"""
import ipaddress
import re
from collections import Counter
from typing import List, NamedTuple, Optional, Sequence, Tuple

from pyminerfleet.exceptions import ValidationError

MIN_FAN_SPEED = 30
WARNING_FAN_SPEED = 40
MIN_POWER_LIMIT = 0
MAX_POWER_LIMIT = 10000
MAX_BATCH_SIZE = 100

HOSTNAME_PATTERN = re.compile(r"[a-zA-Z0-9-]{1,63}")


class ValidationResult(NamedTuple):
    valid: bool
    error: Optional[str] = None
    warning: Optional[str] = None


def validate_fan_speed(fan_speed: int, allow_dangerous: bool = False) -> ValidationResult:
    if fan_speed < 0 or fan_speed > 100:
        return ValidationResult(False, "Fan speed must be between 0 and 100 percent")
    if fan_speed < MIN_FAN_SPEED:
        if allow_dangerous:
            return ValidationResult(True, warning=f"Fan speed {fan_speed}% is below safety minimum "
                                                  f"({MIN_FAN_SPEED}%). Monitor temperatures closely "
                                                  f"to prevent hardware damage.")
        return ValidationResult(False, f"Fan speed must be at least {MIN_FAN_SPEED}% to prevent overheating")
    if fan_speed < WARNING_FAN_SPEED:
        return ValidationResult(True, warning=f"Fan speed {fan_speed}% is low. Monitor temperatures closely.")
    return ValidationResult(True)


def validate_fan_speed_range(min_fan_speed: int, max_fan_speed: int,
                             allow_dangerous: bool = False) -> ValidationResult:
    low = validate_fan_speed(min_fan_speed, allow_dangerous)
    if not low.valid:
        return ValidationResult(False, f"Invalid min_fan_speed: {low.error}")
    # Any in-range maximum is acceptable
    high = validate_fan_speed(max_fan_speed, allow_dangerous=True)
    if not high.valid:
        return ValidationResult(False, f"Invalid max_fan_speed: {high.error}")
    if min_fan_speed > max_fan_speed:
        return ValidationResult(False, f"min_fan_speed ({min_fan_speed}%) must be less than or equal "
                                       f"to max_fan_speed ({max_fan_speed}%)")
    return ValidationResult(True, warning=low.warning)


def validate_power_limit(power_limit: float) -> ValidationResult:
    if power_limit < MIN_POWER_LIMIT:
        return ValidationResult(False, f"Power limit must be at least {MIN_POWER_LIMIT} watts")
    if power_limit > MAX_POWER_LIMIT:
        return ValidationResult(False, f"Power limit must not exceed {MAX_POWER_LIMIT} watts")
    return ValidationResult(True)


def validate_batch_size(count: int, max_batch_size: int = MAX_BATCH_SIZE) -> ValidationResult:
    if count < 1:
        return ValidationResult(False, "At least one device ID is required")
    if count > max_batch_size:
        return ValidationResult(False, f"Maximum {max_batch_size} devices per batch. Got {count}")
    if count > max_batch_size * 0.5:
        return ValidationResult(True, warning=f"Large batch size ({count} devices). "
                                              f"This operation may take several minutes.")
    return ValidationResult(True)


def validate_device_ids(device_ids: Sequence[str]) -> List[str]:
    """Check a batch of device ids; returns the warnings to report."""
    result = validate_batch_size(len(device_ids))
    if not result.valid:
        raise ValidationError(result.error, {"count": len(device_ids)})
    if any(not isinstance(d, str) or not d for d in device_ids):
        raise ValidationError("Device IDs must be non-empty strings")
    counts = Counter(device_ids)
    duplicates = sorted(d for d, n in counts.items() if n > 1)
    if duplicates:
        raise ValidationError(f"Duplicate device IDs in batch: {', '.join(duplicates)}",
                              {"duplicates": duplicates})
    return [result.warning] if result.warning else []


def validate_ipv4(address: str) -> ValidationResult:
    try:
        ipaddress.IPv4Address(address)
    except ValueError:
        return ValidationResult(False, f"Invalid IPv4 address '{address}' "
                                       f"(must be xxx.xxx.xxx.xxx with each octet 0-255)")
    return ValidationResult(True)


def validate_cidr(cidr: str) -> ValidationResult:
    """Check an address in CIDR notation, e.g. 192.168.1.100/24."""
    address, _, prefix = cidr.partition("/")
    if not prefix.isdigit() or not 1 <= int(prefix) <= 32 or not validate_ipv4(address).valid:
        return ValidationResult(False, f"Invalid CIDR address '{cidr}' "
                                       f"(must be xxx.xxx.xxx.xxx/yy with prefix 1-32)")
    return ValidationResult(True)


def validate_hostname(hostname: str) -> ValidationResult:
    if not HOSTNAME_PATTERN.fullmatch(hostname):
        return ValidationResult(False, "Hostname must be 1-63 letters, digits or hyphens")
    return ValidationResult(True)


def parse_cidr(cidr: str) -> Tuple[str, str]:
    """Split CIDR notation into (address, netmask)."""
    interface = ipaddress.IPv4Interface(cidr)
    return str(interface.ip), str(interface.netmask)


def netmask_prefix(netmask: str) -> int:
    return ipaddress.IPv4Network(f"0.0.0.0/{netmask}").prefixlen
