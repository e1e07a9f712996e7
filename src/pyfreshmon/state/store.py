"""In-memory live state owned by the telemetry engine.

The engine is the only writer. Every reader gets a deep copy so a
multi-threaded host (HTTP workers) can never observe a half-applied update.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

from pyfreshmon.state.events import ClassificationCategory, LiveCacheView


class LiveCacheReader(Protocol):
    """Read-only access to the live cache (HTTP layer, dashboards)."""

    def snapshot(self) -> LiveCacheView: ...


def _merge_patch(target: dict[str, Any], patch: Mapping[str, Any]) -> None:
    """Shallow merge: keys in the patch overwrite, everything else is kept."""
    if not patch:
        return
    for key, value in patch.items():
        target[str(key)] = copy.deepcopy(value)


class LastValueTable:
    """Most recently persisted code per (category, device key)."""

    def __init__(self) -> None:
        self._codes: dict[ClassificationCategory, dict[str, str]] = {
            category: {} for category in ClassificationCategory
        }

    def get(self, category: ClassificationCategory, device_key: str) -> str | None:
        return self._codes[category].get(device_key)

    def remember(self, category: ClassificationCategory, device_key: str, code: str) -> None:
        self._codes[category][device_key] = code

    def clear(self) -> None:
        for codes in self._codes.values():
            codes.clear()

    def as_dict(self) -> dict[str, dict[str, str]]:
        return {category.value: dict(codes) for category, codes in self._codes.items()}


class LiveStateStore:
    """Device state cache: live sensor snapshot, latest codes, session start."""

    def __init__(self) -> None:
        self._sensor: dict[str, Any] = {}
        self._codes: dict[ClassificationCategory, str | None] = {
            category: None for category in ClassificationCategory
        }
        self._session_started_at: datetime | None = None
        self.last_values = LastValueTable()

    def update_sensor(self, fields: Mapping[str, Any]) -> None:
        """Merge *fields* into the sensor snapshot (last write wins per key)."""
        _merge_patch(self._sensor, fields)

    def clear_sensor(self) -> None:
        self._sensor.clear()

    def set_code(self, category: ClassificationCategory, code: str) -> None:
        self._codes[category] = code

    def get_code(self, category: ClassificationCategory) -> str | None:
        return self._codes[category]

    def last_code(self, category: ClassificationCategory, device_key: str) -> str | None:
        """Last persisted code for *device_key*, or ``None`` if never persisted."""
        return self.last_values.get(category, device_key)

    def remember_code(self, category: ClassificationCategory, device_key: str, code: str) -> None:
        self.last_values.remember(category, device_key, code)

    def clear_change_tracking(self) -> None:
        self.last_values.clear()

    @property
    def session_started_at(self) -> datetime | None:
        return self._session_started_at

    @session_started_at.setter
    def session_started_at(self, value: datetime | None) -> None:
        self._session_started_at = value

    def snapshot(self) -> LiveCacheView:
        """Return an immutable point-in-time copy of the live cache."""
        return LiveCacheView(
            sensor=copy.deepcopy(self._sensor),
            freshness_code=self._codes[ClassificationCategory.FRESHNESS],
            preservation_code=self._codes[ClassificationCategory.PRESERVATION],
            session_started_at=self._session_started_at,
        )
