from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pyfreshmon.broadcast import Broadcaster
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.engine import TelemetryEngine
from pyfreshmon.ingestion.messages import MessageKind
from pyfreshmon.persistence import InMemoryClassificationSink
from pyfreshmon.state.events import ClassificationCategory, ClassificationRecord

SENSOR = "stm32/sensor/data"
FISH = "capstone/e03/fish"
PRESERVATION = "capstone/e03/preservation"


def _ticking_clock(start: datetime | None = None) -> Callable[[], datetime]:
    base = start or datetime(2026, 1, 1, tzinfo=UTC)
    ticks = itertools.count()
    return lambda: base + timedelta(seconds=next(ticks))


class RecordingBroadcaster(Broadcaster):
    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[str, Any]] = []

    def publish(self, event_name: str, payload: Any) -> None:
        self.published.append((event_name, payload))
        super().publish(event_name, payload)

    def names(self) -> list[str]:
        return [name for name, _payload in self.published]


class FailingSink:
    def __init__(self) -> None:
        self.calls = 0

    def save_classification(self, record: ClassificationRecord) -> None:
        self.calls += 1
        raise ConnectionError("database unavailable")


def _engine(
    sink: Any | None = None,
    broadcaster: Broadcaster | None = None,
    **kwargs: Any,
) -> TelemetryEngine:
    return TelemetryEngine(
        sink=sink if sink is not None else InMemoryClassificationSink(),
        broadcaster=broadcaster,
        clock=_ticking_clock(),
        **kwargs,
    )


def test_freshness_sequence_persists_only_transitions() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    for code in ["A", "A", "B", "B", "B", "A"]:
        engine.on_message(FISH, {"fresh": code})

    assert [record.code for record in sink.records] == ["A", "B", "A"]
    assert all(record.category == ClassificationCategory.FRESHNESS for record in sink.records)
    timestamps = [record.observed_at for record in sink.records]
    assert timestamps == sorted(timestamps)


def test_first_observation_is_always_persisted_with_value() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(PRESERVATION, {"preservation": "SB", "preservationValue": "0.91"})

    assert len(sink.records) == 1
    record = sink.records[0]
    assert record.category == ClassificationCategory.PRESERVATION
    assert record.code == "SB"
    assert record.value == pytest.approx(0.91)
    assert record.device_key == "default"


def test_nested_and_flat_payloads_extract_the_same_code() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(FISH, {"message": {"fresh": "S"}})
    engine.on_message(FISH, {"fresh": "S"})

    # Same code for the same device: the flat message is not a transition.
    assert [record.code for record in sink.records] == ["S"]
    assert engine.snapshot().freshness_code == "S"


def test_flat_code_wins_over_nested_code() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(FISH, {"fresh": "KS", "message": {"fresh": "S"}})

    assert sink.records[0].code == "KS"


def test_devices_are_tracked_independently() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(FISH, {"fresh": "S", "deviceId": "tank-1"})
    engine.on_message(FISH, {"message": {"fresh": "S", "deviceId": "tank-2"}})
    engine.on_message(FISH, {"fresh": "S", "deviceId": "tank-1"})

    assert [(record.device_key, record.code) for record in sink.records] == [("tank-1", "S"), ("tank-2", "S")]


def test_categories_are_tracked_independently_for_the_same_device() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(FISH, {"fresh": "B"})
    engine.on_message(PRESERVATION, {"preservation": "B"})

    assert [(record.category, record.code) for record in sink.records] == [
        (ClassificationCategory.FRESHNESS, "B"),
        (ClassificationCategory.PRESERVATION, "B"),
    ]


def test_message_without_code_is_broadcast_but_not_persisted() -> None:
    sink = InMemoryClassificationSink()
    broadcaster = RecordingBroadcaster()
    engine = _engine(sink, broadcaster)

    engine.on_message(FISH, {"freshValue": 0.4})
    engine.on_message(FISH, "not json at all")

    assert broadcaster.names() == ["freshness", "freshness"]
    assert broadcaster.published[1][1] == {"topic": FISH, "message": "not json at all"}
    assert sink.records == []
    assert engine.snapshot().freshness_code is None
    assert engine.last_persisted_codes()["freshness"] == {}


def test_unchanged_classification_is_still_broadcast() -> None:
    broadcaster = RecordingBroadcaster()
    engine = _engine(broadcaster=broadcaster)

    engine.on_message(FISH, {"fresh": "S"})
    engine.on_message(FISH, {"fresh": "S"})

    assert broadcaster.names() == ["freshness", "freshness"]
    assert broadcaster.published[0][1] == {"topic": FISH, "message": {"fresh": "S"}}


def test_unknown_topic_is_ignored() -> None:
    sink = FailingSink()
    broadcaster = RecordingBroadcaster()
    engine = _engine(sink, broadcaster)

    kind = engine.on_message("unknown/topic", {"fresh": "S", "mq135_ppm": 1.0})

    assert kind == MessageKind.UNRECOGNIZED
    assert broadcaster.published == []
    assert sink.calls == 0
    assert engine.snapshot().sensor == {}


def test_failing_sink_does_not_prevent_broadcast(caplog: pytest.LogCaptureFixture) -> None:
    sink = FailingSink()
    broadcaster = RecordingBroadcaster()
    engine = _engine(sink, broadcaster)

    with caplog.at_level(logging.ERROR):
        engine.on_message(FISH, {"fresh": "A"})
        engine.on_message(FISH, {"fresh": "B"})

    assert broadcaster.names() == ["freshness", "freshness"]
    assert sink.calls == 2
    assert engine.snapshot().freshness_code == "B"
    assert "Save freshness (default) failed" in caplog.text


def test_failed_write_still_updates_change_tracking() -> None:
    sink = FailingSink()
    engine = _engine(sink)

    engine.on_message(FISH, {"fresh": "A"})
    engine.on_message(FISH, {"fresh": "A"})

    # Writes are not retried: the repeated code is not a new transition.
    assert sink.calls == 1


def test_sensor_reading_merges_and_broadcasts() -> None:
    broadcaster = RecordingBroadcaster()
    engine = _engine(broadcaster=broadcaster)

    engine.on_message(SENSOR, {"mq135_ppm": 12.5})
    engine.on_message(SENSOR, {"T": 30})

    assert engine.snapshot().sensor == {"mq135_ppm": 12.5, "T": 30}
    # The session starts before the first reading is relayed.
    assert broadcaster.names() == ["sessionStatus", "sensorData", "sensorData"]
    assert broadcaster.published[2][1] == {"topic": SENSOR, "message": {"T": 30}}


def test_sensor_reading_is_never_persisted() -> None:
    sink = FailingSink()
    engine = _engine(sink)

    engine.on_message(SENSOR, {"mq135_ppm": 12.5, "fresh": "S"})

    assert sink.calls == 0


def test_sensor_readings_are_recorded_in_session_history() -> None:
    engine = _engine()

    engine.on_message(SENSOR, {"mq135_ppm": 12.5, "mq2_ppm": "450.2", "temperature": 25.3, "RH": 65.1})
    engine.on_message(SENSOR, {"deviceId": "tank-1"})

    assert engine.session.history.reading_count == 1


def test_opaque_sensor_payload_is_relayed_without_starting_a_session() -> None:
    broadcaster = RecordingBroadcaster()
    engine = _engine(broadcaster=broadcaster)

    engine.on_message(SENSOR, b"sensor warming up")

    assert broadcaster.names() == ["sensorData"]
    assert broadcaster.published[0][1]["message"] == "sensor warming up"
    assert engine.snapshot().session_started_at is None


def test_bytes_payload_is_decoded() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(FISH, b'{"fresh": "SS"}')

    assert sink.records[0].code == "SS"


def test_from_config_uses_configured_topics() -> None:
    config = FreshmonConfig(device_prefix="esp32", app_prefix="lab/unit7")
    sink = InMemoryClassificationSink()
    engine = TelemetryEngine.from_config(config, sink=sink)

    assert engine.on_message("esp32/sensor/data", {"T": 1}) == MessageKind.SENSOR_READING
    assert engine.on_message("lab/unit7/fish", {"fresh": "S"}) == MessageKind.FRESHNESS
    assert engine.on_message(FISH, {"fresh": "B"}) == MessageKind.UNRECOGNIZED
    assert [record.code for record in sink.records] == ["S"]


def test_transport_connect_flag() -> None:
    engine = _engine()

    engine.on_connect()
    assert engine.transport_connected is True

    engine.on_disconnect()
    assert engine.transport_connected is False


class _GatedSink:
    def __init__(self) -> None:
        self.saved: list[ClassificationRecord] = []
        self.release = asyncio.Event()

    async def save_classification(self, record: ClassificationRecord) -> None:
        await self.release.wait()
        self.saved.append(record)


@pytest.mark.asyncio
async def test_async_sink_writes_do_not_block_ingestion() -> None:
    sink = _GatedSink()
    broadcaster = RecordingBroadcaster()
    engine = _engine(sink, broadcaster)

    engine.on_message(FISH, {"fresh": "A"})
    engine.on_message(FISH, {"fresh": "B"})

    assert broadcaster.names() == ["freshness", "freshness"]
    assert sink.saved == []
    assert engine.pending_writes == 2

    sink.release.set()
    await engine.drain()

    assert [record.code for record in sink.saved] == ["A", "B"]
    assert engine.pending_writes == 0


class _AsyncFailingSink:
    async def save_classification(self, record: ClassificationRecord) -> None:
        await asyncio.sleep(0)
        raise ConnectionError("write timed out")


@pytest.mark.asyncio
async def test_async_sink_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    broadcaster = RecordingBroadcaster()
    engine = _engine(_AsyncFailingSink(), broadcaster)

    with caplog.at_level(logging.ERROR):
        engine.on_message(FISH, {"fresh": "A"})
        engine.on_message(FISH, {"fresh": "B"})
        await engine.drain()
        # Let the done-callbacks run.
        await asyncio.sleep(0)

    assert broadcaster.names() == ["freshness", "freshness"]
    assert "write timed out" in caplog.text


def test_oversized_classification_value_is_dropped_but_code_persisted() -> None:
    sink = InMemoryClassificationSink()
    engine = _engine(sink)

    engine.on_message(FISH, {"fresh": "S", "freshValue": 10**400})

    assert [(record.code, record.value) for record in sink.records] == [("S", None)]
    assert engine.snapshot().freshness_code == "S"


def test_oversized_sensor_value_does_not_break_ingestion() -> None:
    broadcaster = RecordingBroadcaster()
    engine = _engine(broadcaster=broadcaster)

    engine.on_message(SENSOR, {"T": 10**400, "RH": 61.0})
    engine.on_message(SENSOR, {"T": 10**400})

    assert broadcaster.names() == ["sessionStatus", "sensorData", "sensorData"]
    assert engine.snapshot().sensor["RH"] == 61.0
    assert engine.session.history.reading_count == 1
