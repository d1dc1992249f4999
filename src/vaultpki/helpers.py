"""
Small helpers shared by the client, the models and the engines
"""

import re
from datetime import datetime

from vaultpki.exceptions import VaultInvocationError

TIME_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)([smhd])")
_DURATION_FULL = re.compile(r"^(?:\d+(?:\.\d+)?[smhd])+$")


def timestring_map(val, cast=None):
    """
    Turn a time string (like ``60m`` or Vault/Go-style ``1h30m``) into
    a number with seconds as a unit. Integers and floats are passed through.

    val
        The value to convert. ``None`` is returned unchanged.

    cast
        Optionally cast the result, e.g. to ``int``.
    """
    if val is None:
        return val
    if isinstance(val, bool):
        raise VaultInvocationError("Expected integer or time string, got a boolean")
    if isinstance(val, (int, float)):
        return cast(val) if cast else val
    if not isinstance(val, str):
        raise VaultInvocationError("Expected integer or time string")
    val = val.strip()
    try:
        ret = float(val)
    except ValueError:
        if not _DURATION_FULL.match(val):
            raise VaultInvocationError(f"Invalid time string format: {val}") from None
        ret = sum(float(num) * TIME_UNITS[unit] for num, unit in _DURATION_PART.findall(val))
    return cast(ret) if cast else ret


def iso_to_timestamp(iso_time):
    """
    Most endpoints respond with RFC3339-formatted strings, which can carry
    a variable number of sub-second digits. Convert them to an integer timestamp.
    """
    # drop subsecond precision, fromisoformat is picky about the number of digits
    iso_time = re.sub(r"\.[\d]+", "", iso_time)
    iso_time = re.sub(r"Z$", "+00:00", iso_time)
    return int(datetime.fromisoformat(iso_time).timestamp())


def normalize_mount(mount):
    """
    Strip leading/trailing slashes from a mount path and ensure it is usable.
    """
    if not isinstance(mount, str) or not mount.strip("/ "):
        raise VaultInvocationError(f"Invalid mount path: {mount!r}")
    return mount.strip().strip("/")


def serial_to_int(serial):
    """
    Parse a certificate serial number. Accepts integers, colon- or
    hyphen-separated hex (as reported by Vault) and plain hex strings.
    """
    if isinstance(serial, bool):
        raise VaultInvocationError("Serial number must not be a boolean")
    if isinstance(serial, int):
        if serial < 0:
            raise VaultInvocationError("Serial number must be non-negative")
        return serial
    if not isinstance(serial, str):
        raise VaultInvocationError(f"Serial number must be int or str, got {type(serial)}")
    cleaned = serial.strip().replace(":", "").replace("-", "")
    try:
        return int(cleaned, 16)
    except ValueError as err:
        raise VaultInvocationError(f"Invalid serial number: {serial}") from err


def format_serial(serial):
    """
    Render a serial number the way Vault reports it: lowercase hex octets
    separated by colons.
    """
    return _pretty_hex(f"{serial_to_int(serial):x}")


def _pretty_hex(hex_str):
    if len(hex_str) % 2 != 0:
        hex_str = "0" + hex_str
    return ":".join([hex_str[i : i + 2] for i in range(0, len(hex_str), 2)]).lower()
