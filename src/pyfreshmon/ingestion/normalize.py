"""Normalization helpers.

Centralizes lenient parsing of loosely typed device payloads and the
flat-then-nested field lookup used by every classification topic.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

DEFAULT_DEVICE_KEY = "default"

# Key some upstream encoders wrap the whole payload in.
NESTED_KEY = "message"


class PayloadShape(StrEnum):
    """Where a field was found in the payload."""

    FLAT = "flat"
    NESTED = "nested"


# Lookup priority: the flat form wins when both are present.
_LOOKUP_ORDER: tuple[PayloadShape, ...] = (PayloadShape.FLAT, PayloadShape.NESTED)


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _layer(payload: Any, shape: PayloadShape) -> Mapping[str, Any] | None:
    if not isinstance(payload, Mapping):
        return None
    if shape == PayloadShape.FLAT:
        return payload
    nested = payload.get(NESTED_KEY)
    return nested if isinstance(nested, Mapping) else None


def lookup_field(payload: Any, name: str) -> tuple[Any, PayloadShape] | None:
    """Find *name* at the top level, else one level under ``message``.

    A ``None`` value counts as absent, so ``{"fresh": None, "message":
    {"fresh": "S"}}`` resolves to the nested ``"S"``.
    """
    for shape in _LOOKUP_ORDER:
        layer = _layer(payload, shape)
        if layer is None:
            continue
        value = layer.get(name)
        if value is not None:
            return value, shape
    return None


def field_value(payload: Any, name: str) -> Any:
    found = lookup_field(payload, name)
    return found[0] if found is not None else None


def device_key(payload: Any) -> str:
    """Logical device key: ``deviceId`` (flat, then nested) or ``"default"``.

    Unlike :func:`lookup_field`, any falsy id (``""``, ``0``) counts as
    absent, so an empty top-level id falls through to the nested one.
    """
    for shape in _LOOKUP_ORDER:
        layer = _layer(payload, shape)
        if layer is None:
            continue
        value = layer.get("deviceId")
        if not value:
            continue
        key = safe_str(value)
        if key:
            return key
    return DEFAULT_DEVICE_KEY
