"""JSON encoding of free-form event payloads."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

_SCALARS = (str, int, float, bool)


def json_safe(value: Any) -> Any:
    """
    Reduce ``value`` to plain JSON types.

    Mappings and sequences are walked recursively; enums collapse to their
    value, paths to strings and naive datetimes are treated as UTC. Anything
    unrecognised is stored as its ``str()``.
    """
    if value is None or isinstance(value, _SCALARS):
        return value.value if isinstance(value, Enum) else value
    if isinstance(value, Enum):
        return json_safe(value.value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    if isinstance(value, datetime):
        aware = value if value.tzinfo else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat()
    if isinstance(value, Path):
        return value.as_posix()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)


__all__ = ["json_safe"]
