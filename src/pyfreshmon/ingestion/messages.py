"""Message classification and typed payload decoders.

Topic routing decides what *kind* of message arrived; the decoders below turn
the loosely typed payload into typed values. Payloads arrive in two shapes,
``{"fresh": "S"}`` and ``{"message": {"fresh": "S"}}``; both decode
identically, with the flat form taking priority.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from pyfreshmon.ingestion.normalize import device_key, field_value, safe_float, safe_str
from pyfreshmon.state.events import ClassificationCategory, utcnow

_SENTINELS = frozenset({"", "--", "NaN", "nan"})


class MessageKind(StrEnum):
    SENSOR_READING = "sensor-reading"
    FRESHNESS = "freshness"
    PRESERVATION = "preservation"
    UNRECOGNIZED = "unrecognized"


# Names of the events pushed to live subscribers.
EVENT_SENSOR_DATA = "sensorData"
EVENT_FRESHNESS = "freshness"
EVENT_PRESERVATION = "preservation"
EVENT_SESSION_STATUS = "sessionStatus"

_CATEGORY_BY_KIND: dict[MessageKind, ClassificationCategory] = {
    MessageKind.FRESHNESS: ClassificationCategory.FRESHNESS,
    MessageKind.PRESERVATION: ClassificationCategory.PRESERVATION,
}

_EVENT_BY_KIND: dict[MessageKind, str] = {
    MessageKind.SENSOR_READING: EVENT_SENSOR_DATA,
    MessageKind.FRESHNESS: EVENT_FRESHNESS,
    MessageKind.PRESERVATION: EVENT_PRESERVATION,
}

# Payload field names per category: (code field, value field).
_CLASSIFICATION_FIELDS: dict[ClassificationCategory, tuple[str, str]] = {
    ClassificationCategory.FRESHNESS: ("fresh", "freshValue"),
    ClassificationCategory.PRESERVATION: ("preservation", "preservationValue"),
}


def category_for(kind: MessageKind) -> ClassificationCategory | None:
    return _CATEGORY_BY_KIND.get(kind)


def event_name_for(kind: MessageKind) -> str | None:
    return _EVENT_BY_KIND.get(kind)


@dataclass(frozen=True)
class TopicRouter:
    """Map topics to message kinds; topics must match verbatim."""

    device_prefix: str = "stm32"
    app_prefix: str = "capstone/e03"

    @property
    def sensor_topic(self) -> str:
        return f"{self.device_prefix}/sensor/data"

    @property
    def freshness_topic(self) -> str:
        return f"{self.app_prefix}/fish"

    @property
    def preservation_topic(self) -> str:
        return f"{self.app_prefix}/preservation"

    def classify(self, topic: str) -> MessageKind:
        if topic == self.sensor_topic:
            return MessageKind.SENSOR_READING
        if topic == self.freshness_topic:
            return MessageKind.FRESHNESS
        if topic == self.preservation_topic:
            return MessageKind.PRESERVATION
        return MessageKind.UNRECOGNIZED


class SensorReading(BaseModel):
    """Normalized sensor reading kept in the session history.

    The live cache stores the payload keys verbatim; this model is the typed
    projection (``T``/``temperature`` and ``RH``/``humidity`` both accepted).
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    ammonia_ppm: float | None = Field(default=None, validation_alias=AliasChoices("mq135_ppm", "ammonia_ppm"))
    methane_ppm: float | None = Field(default=None, validation_alias=AliasChoices("mq2_ppm", "methane_ppm"))
    temperature: float | None = Field(default=None, validation_alias=AliasChoices("T", "temperature"))
    humidity: float | None = Field(default=None, validation_alias=AliasChoices("RH", "humidity"))
    ph: float | None = Field(default=None, validation_alias=AliasChoices("pH", "ph"))
    observed_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        """Drop sentinels and non-numeric readings so the default (None) is used."""
        if not isinstance(values, dict):
            return values
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if key == "observed_at":
                cleaned[key] = value
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            number = safe_float(value)
            if number is not None:
                cleaned[key] = number
        return cleaned

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.ammonia_ppm, self.methane_ppm, self.temperature, self.humidity, self.ph)
        )


@dataclass(frozen=True)
class ClassificationPayload:
    """Decoded classification message. ``code`` is ``None`` when absent."""

    category: ClassificationCategory
    code: str | None
    value: float | None
    device_key: str


def decode_classification(category: ClassificationCategory, payload: Any) -> ClassificationPayload:
    """Extract code, value and device key for *category* from *payload*."""
    code_field, value_field = _CLASSIFICATION_FIELDS[category]
    return ClassificationPayload(
        category=category,
        code=safe_str(field_value(payload, code_field)),
        value=safe_float(field_value(payload, value_field)),
        device_key=device_key(payload),
    )
