"""Text and binary forms of SQL driver values used in recorded rows."""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

_FLOAT, _INT, _STRING, _BOOL, _TIME, _BYTES, _OTHER = range(1, 8)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})\Z"
)
_INT_RE = re.compile(r"[+-]?\d+")

_BOOLS = {
    "1": True,
    "t": True,
    "T": True,
    "TRUE": True,
    "true": True,
    "True": True,
    "0": False,
    "f": False,
    "F": False,
    "FALSE": False,
    "false": False,
    "False": False,
}


def _format_time(value: datetime) -> str:
    """Format a datetime as RFC 3339 with trailing fractional zeros removed."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"cannot parse {text!r} as a time")
    year, month, day, hour, minute, second, frac, zone = match.groups()
    micro = int((frac or "")[:6].ljust(6, "0"))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _tag(value: Any) -> int:
    if isinstance(value, bool):
        return _BOOL
    if isinstance(value, int):
        return _INT
    if isinstance(value, float):
        return _FLOAT
    if isinstance(value, str):
        return _STRING
    if isinstance(value, datetime):
        return _TIME
    if isinstance(value, (bytes, bytearray)):
        return _BYTES
    return _OTHER


def _to_json(value: Any, tag: int) -> str:
    if tag == _TIME:
        return json.dumps(_format_time(value))
    if tag == _BYTES:
        return json.dumps(base64.b64encode(bytes(value)).decode("ascii"))
    return json.dumps(value, allow_nan=False, separators=(",", ":"))


def encode_values(values: list[Any] | None) -> bytes:
    """Encode a row of driver values; None encodes to empty bytes."""
    if values is None:
        return b""
    parts = []
    for value in values:
        tag = _tag(value)
        raw = bytes([tag]) + _to_json(value, tag).encode("utf-8")
        parts.append(base64.b64encode(raw).decode("ascii"))
    return json.dumps(parts, separators=(",", ":")).encode("utf-8")


def _decode_item(raw: bytes) -> Any:
    if not raw:
        raise ValueError("failed to decode: empty value")
    tag = raw[0]
    if tag == _OTHER:
        return None
    if tag not in (_FLOAT, _INT, _STRING, _BOOL, _TIME, _BYTES):
        raise ValueError("failed to decode")
    payload = json.loads(raw[1:].decode("utf-8"))
    if tag == _FLOAT:
        if isinstance(payload, bool) or not isinstance(payload, (int, float)):
            raise ValueError(f"cannot decode {payload!r} as float64")
        return float(payload)
    if tag == _INT:
        if isinstance(payload, bool) or not isinstance(payload, int):
            raise ValueError(f"cannot decode {payload!r} as int64")
        return payload
    if tag == _STRING:
        if not isinstance(payload, str):
            raise ValueError(f"cannot decode {payload!r} as string")
        return payload
    if tag == _BOOL:
        if not isinstance(payload, bool):
            raise ValueError(f"cannot decode {payload!r} as bool")
        return payload
    if tag == _TIME:
        if not isinstance(payload, str):
            raise ValueError(f"cannot decode {payload!r} as time")
        return _parse_time(payload)
    if payload is None:
        return b""
    if not isinstance(payload, str):
        raise ValueError(f"cannot decode {payload!r} as bytes")
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"cannot decode bytes: {exc}") from exc


def decode_values(data: bytes | None) -> list[Any] | None:
    """Decode bytes made by encode_values; empty data decodes to None."""
    if not data:
        return None
    items = json.loads(data)
    if not isinstance(items, list):
        raise ValueError("failed to decode: expected a list")
    values = []
    for item in items:
        if not isinstance(item, str):
            raise ValueError("failed to decode: expected base64 text")
        try:
            raw = base64.b64decode(item, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"failed to decode: {exc}") from exc
        values.append(_decode_item(raw))
    return values


def type_name(value: Any) -> str:
    """Return the driver type name recorded for a value's column."""
    if value is None:
        return "<nil>"
    names = {
        _BOOL: "bool",
        _INT: "int64",
        _FLOAT: "float64",
        _STRING: "string",
        _TIME: "time.Time",
        _BYTES: "[]uint8",
    }
    tag = _tag(value)
    return names.get(tag, type(value).__name__)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return format(Decimal(repr(value)).normalize(), "f")


def value_to_str(value: Any) -> str:
    """Return the text under which a value is stored in a recorded row."""
    tag = _tag(value)
    if value is None:
        return "<nil>"
    if tag == _FLOAT:
        return _format_float(value)
    if tag == _INT:
        return str(value)
    if tag == _STRING:
        return value
    if tag == _BOOL:
        return "true" if value else "false"
    if tag == _TIME:
        return json.dumps(_format_time(value))
    if tag == _BYTES:
        return "[" + " ".join(str(byte) for byte in bytes(value)) + "]"
    return str(value)


def str_to_value(text: str, type_name: str) -> Any:
    """Rebuild a value from its stored text and its column's type name.

    Unknown type names give None; malformed numbers and booleans raise ValueError.
    """
    if text == "<nil>":
        return None
    if type_name == "float64":
        if text != text.strip() or "_" in text:
            raise ValueError(f"invalid float64 {text!r}")
        return float(text)
    if type_name == "int64":
        if not _INT_RE.fullmatch(text):
            raise ValueError(f"invalid int64 {text!r}")
        number = int(text)
        if not _INT64_MIN <= number <= _INT64_MAX:
            raise ValueError(f"int64 {text!r} out of range")
        return number
    if type_name == "string":
        return text
    if type_name == "bool":
        try:
            return _BOOLS[text]
        except KeyError:
            raise ValueError(f"invalid bool {text!r}") from None
    if type_name == "time.Time":
        try:
            payload = json.loads(text)
            if not isinstance(payload, str):
                return ZERO_TIME
            return _parse_time(payload)
        except ValueError:
            return ZERO_TIME
    if type_name == "[]uint8":
        result = bytearray()
        for part in text.strip("[]").split(" "):
            try:
                number = int(part)
            except ValueError:
                number = 0
            result.append(number & 0xFF)
        return bytes(result)
    return None