"""Records and read-only views produced by the telemetry core.

Only the engine creates these objects. Everything outside the core (HTTP
layer, persistence sinks, session exporters) receives them frozen.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class ClassificationCategory(StrEnum):
    FRESHNESS = "freshness"
    PRESERVATION = "preservation"


class SessionState(StrEnum):
    IDLE = "idle"
    ACTIVE = "active"


class ClassificationRecord(BaseModel):
    """A persisted classification transition."""

    model_config = ConfigDict(frozen=True)

    category: ClassificationCategory
    code: str = Field(..., description="Classification code, e.g. 'S' or 'SB'")
    value: float | None = Field(default=None, description="Fuzzy score reported with the code, if any.")
    observed_at: datetime = Field(default_factory=utcnow)
    device_key: str = "default"

    @field_validator("code")
    @classmethod
    def _non_empty_code(cls, value: str) -> str:
        code = value.strip()
        if not code:
            raise ValueError("code must be non-empty")
        return code

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class ClassificationObservation(BaseModel):
    """Every classification seen during a session, changed or not."""

    model_config = ConfigDict(frozen=True)

    category: ClassificationCategory
    code: str
    value: float | None = None
    observed_at: datetime
    device_key: str = "default"
    changed: bool = False


class LiveCacheView(BaseModel):
    """Point-in-time copy of the live cache."""

    model_config = ConfigDict(frozen=True)

    sensor: dict[str, Any] = Field(default_factory=dict)
    freshness_code: str | None = None
    preservation_code: str | None = None
    session_started_at: datetime | None = None

    def code_for(self, category: ClassificationCategory) -> str | None:
        if category == ClassificationCategory.FRESHNESS:
            return self.freshness_code
        return self.preservation_code
