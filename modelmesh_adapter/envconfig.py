"""Typed lookups of environment variables with strict parsing."""

from __future__ import annotations

import math
import os
import re
from collections.abc import Mapping
from datetime import timedelta

__all__ = [
    "EnvConfigError",
    "parse_duration",
    "get_env_string",
    "get_env_int",
    "get_env_int32",
    "get_env_float",
    "get_env_bool",
    "get_env_duration",
]


class EnvConfigError(ValueError):
    """An environment variable is set to a value that cannot be parsed."""

    def __init__(self, key: str, value: str, expected: str) -> None:
        super().__init__(
            f"Environment variable {key} must be {expected}, found value {value!r}"
        )
        self.key = key
        self.value = value


_INT_RE = re.compile(r"[+-]?[0-9]+")
_DECIMAL_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_SPECIAL_FLOAT_RE = re.compile(r"[+-]?inf(?:inity)?|nan", re.IGNORECASE)
_HEX_FLOAT_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+"
)

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_NANOSECOND = 1
_MICROSECOND = 1_000 * _NANOSECOND
_MILLISECOND = 1_000 * _MICROSECOND
_SECOND = 1_000 * _MILLISECOND
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE

_DURATION_UNITS = {
    "ns": _NANOSECOND,
    "us": _MICROSECOND,
    "\u00b5s": _MICROSECOND,
    "\u03bcs": _MICROSECOND,
    "ms": _MILLISECOND,
    "s": _SECOND,
    "m": _MINUTE,
    "h": _HOUR,
}
_DURATION_PART_RE = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_MAX_NANOS = 1 << 63


def _parse_int(text: str, bits: int) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    value = int(text)
    limit = 1 << (bits - 1)
    if not -limit <= value < limit:
        raise ValueError(f"integer {text!r} out of range for {bits} bits")
    return value


def _parse_float(text: str) -> float:
    if _SPECIAL_FLOAT_RE.fullmatch(text):
        return float(text)
    if _HEX_FLOAT_RE.fullmatch(text):
        value = float.fromhex(text)
    elif _DECIMAL_FLOAT_RE.fullmatch(text):
        value = float(text)
    else:
        raise ValueError(f"invalid number {text!r}")
    if math.isinf(value):
        raise ValueError(f"number {text!r} out of range")
    return value


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"300ms"``, ``"-1.5h"`` or ``"2h45m"``."""
    rest = text
    negative = False
    if rest[:1] in ("-", "+"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = 0
    while rest:
        match = _DURATION_PART_RE.match(rest)
        whole, fraction, unit = match.group(1), match.group(2), match.group(3)
        if not whole and not fraction:
            raise ValueError(f"invalid duration {text!r}")
        if not unit:
            raise ValueError(f"missing unit in duration {text!r}")
        scale = _DURATION_UNITS.get(unit)
        if scale is None:
            raise ValueError(f"unknown unit {unit!r} in duration {text!r}")
        amount = int(whole or "0") * scale
        if fraction:
            amount += int(fraction) * scale // (10 ** len(fraction))
        total += amount
        if total > _MAX_NANOS:
            raise ValueError(f"invalid duration {text!r}")
        rest = rest[match.end():]

    if negative:
        total = -total
    elif total > _MAX_NANOS - 1:
        raise ValueError(f"invalid duration {text!r}")
    return timedelta(microseconds=total / 1000)


def _lookup(key: str, environ: Mapping[str, str] | None) -> str | None:
    env = os.environ if environ is None else environ
    return env.get(key)


def get_env_string(key: str, default: str, environ: Mapping[str, str] | None = None) -> str:
    """Return the variable's value, or ``default`` if it is unset (an empty value is kept)."""
    value = _lookup(key, environ)
    return default if value is None else value


def get_env_int(key: str, default: int, environ: Mapping[str, str] | None = None) -> int:
    """Return the variable as a 64-bit integer, or ``default`` if it is unset."""
    value = _lookup(key, environ)
    if value is None:
        return default
    try:
        return _parse_int(value, 64)
    except ValueError as exc:
        raise EnvConfigError(key, value, "an int") from exc


def get_env_int32(key: str, default: int, environ: Mapping[str, str] | None = None) -> int:
    """Return the variable as a 32-bit integer, or ``default`` if it is unset."""
    value = _lookup(key, environ)
    if value is None:
        return default
    try:
        return _parse_int(value, 32)
    except ValueError as exc:
        raise EnvConfigError(key, value, "of type int32") from exc


def get_env_float(key: str, default: float, environ: Mapping[str, str] | None = None) -> float:
    """Return the variable as a float, or ``default`` if it is unset."""
    value = _lookup(key, environ)
    if value is None:
        return default
    try:
        return _parse_float(value)
    except ValueError as exc:
        raise EnvConfigError(key, value, "a number") from exc


def get_env_bool(key: str, default: bool, environ: Mapping[str, str] | None = None) -> bool:
    """Return the variable as a boolean, or ``default`` if it is unset."""
    value = _lookup(key, environ)
    if value is None:
        return default
    try:
        return _parse_bool(value)
    except ValueError as exc:
        raise EnvConfigError(key, value, "boolean") from exc


def get_env_duration(
    key: str, default: timedelta, environ: Mapping[str, str] | None = None
) -> timedelta:
    """Return the variable as a duration, or ``default`` if it is unset."""
    value = _lookup(key, environ)
    if value is None:
        return default
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise EnvConfigError(key, value, "a duration") from exc