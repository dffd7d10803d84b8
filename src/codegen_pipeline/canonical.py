from __future__ import annotations

import dataclasses
import math
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Convert report values (dataclasses, models, enums, timestamps) into JSON primitives.

    Raises:
        TypeError: If a value has no JSON representation.
    """
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, float):
        # Canonical JSON has no encoding for NaN or infinities.
        if not math.isfinite(value):
            raise TypeError(f"Cannot serialize non-finite float to canonical JSON: {value!r}")
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize(item) for item in value]
        return sorted(items, key=repr) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return value.as_posix()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON so reports diff byte-for-byte."""
    return rfc8785.dumps(_normalize(value)).decode("utf-8")
