"""Canonical JSON (RFC 8785) and fingerprints for archived runs."""

from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

JsonValue = bool | int | float | str | None | list[Any] | dict[str, Any]


def _jsonable(value: Any) -> JsonValue:
    """Reduce models, enums, timestamps and sets to what rfc8785 accepts.

    Sets become sorted lists, so ``blocked_by`` order never changes a
    fingerprint.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseModel):
        return _jsonable(value.model_dump(mode="python"))
    if isinstance(value, Enum):
        return _jsonable(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return [_jsonable(item) for item in sorted(value, key=str)]
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    raise TypeError(f"{type(value).__name__} has no canonical JSON form")


def to_canonical_json(value: Any) -> str:
    return rfc8785.dumps(_jsonable(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of ``to_canonical_json(value)``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
