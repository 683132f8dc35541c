"""Serialization helpers shared between the memory and postgres stores."""

from __future__ import annotations

import dataclasses
import json
import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar

from accountguard.storage import models
from accountguard.storage.models import DeviceFingerprint, GeoLocation

T = TypeVar("T")

_HINTS_CACHE: Dict[type, Dict[str, Any]] = {}


def _hints(cls: type) -> Dict[str, Any]:
    hints = _HINTS_CACHE.get(cls)
    if hints is None:
        hints = typing.get_type_hints(cls, vars(models))
        _HINTS_CACHE[cls] = hints
    return hints


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return encode_record(value)
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def encode_record(record: Any) -> Dict[str, Any]:
    """Dataclass -> JSON-safe dict (datetimes as ISO strings, enums by value)."""
    return {
        f.name: encode_value(getattr(record, f.name)) for f in dataclasses.fields(record)
    }


def _unwrap_optional(hint: Any) -> Any:
    if typing.get_origin(hint) is typing.Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _decode_value(hint: Any, raw: Any) -> Any:
    if raw is None:
        return None
    hint = _unwrap_optional(hint)
    if hint is datetime:
        return ensure_utc(raw if isinstance(raw, datetime) else datetime.fromisoformat(raw))
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(raw)
    if isinstance(hint, type) and dataclasses.is_dataclass(hint):
        return decode_record(hint, raw) if isinstance(raw, dict) else raw
    return raw


def decode_record(cls: Type[T], data: Dict[str, Any]) -> T:
    hints = _hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            kwargs[f.name] = _decode_value(hints.get(f.name), data[f.name])
    return cls(**kwargs)


def parse_json(raw: Any) -> Optional[Dict]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def fingerprint_to_json(fingerprint: Optional[DeviceFingerprint]) -> Optional[str]:
    return json.dumps(encode_record(fingerprint)) if fingerprint else None


def fingerprint_from_json(raw: Any) -> Optional[DeviceFingerprint]:
    data = parse_json(raw)
    return decode_record(DeviceFingerprint, data) if data else None


def location_from_row(country: Optional[str], city: Optional[str]) -> Optional[GeoLocation]:
    return GeoLocation(country=country, city=city) if country else None
