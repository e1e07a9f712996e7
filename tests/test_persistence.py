from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from pyfreshmon.engine import TelemetryEngine
from pyfreshmon.exceptions import FreshmonPersistenceError
from pyfreshmon.persistence import ClassificationQuery, InMemoryClassificationSink, SqliteClassificationSink
from pyfreshmon.state.events import ClassificationCategory, ClassificationRecord

_T0 = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)


def _record(category: ClassificationCategory, code: str, minutes: int, device: str = "default") -> ClassificationRecord:
    return ClassificationRecord(
        category=category,
        code=code,
        value=0.5,
        observed_at=_T0 + timedelta(minutes=minutes),
        device_key=device,
    )


def test_in_memory_sink_filters_by_category_and_range() -> None:
    sink = InMemoryClassificationSink()
    sink.save_classification(_record(ClassificationCategory.FRESHNESS, "B", 10))
    sink.save_classification(_record(ClassificationCategory.FRESHNESS, "S", 0))
    sink.save_classification(_record(ClassificationCategory.PRESERVATION, "SB", 5))

    fresh = sink.list_classifications(ClassificationCategory.FRESHNESS)
    window = sink.list_classifications(start=_T0 + timedelta(minutes=1), end=_T0 + timedelta(minutes=9))

    assert [record.code for record in fresh] == ["S", "B"]
    assert [record.code for record in window] == ["SB"]
    assert isinstance(sink, ClassificationQuery)


def test_sqlite_sink_requires_start(tmp_path: Path) -> None:
    sink = SqliteClassificationSink(str(tmp_path / "fresh.db"))

    with pytest.raises(FreshmonPersistenceError):
        sink.insert(_record(ClassificationCategory.FRESHNESS, "S", 0))


def test_sqlite_sink_round_trips_records(tmp_path: Path) -> None:
    sink = SqliteClassificationSink(str(tmp_path / "data" / "fresh.db"))
    sink.start()
    try:
        sink.insert(_record(ClassificationCategory.PRESERVATION, "SB", 3, device="tank-2"))
        sink.insert(_record(ClassificationCategory.FRESHNESS, "S", 1))
        sink.insert(_record(ClassificationCategory.FRESHNESS, "KS", 7))

        everything = sink.list_classifications()
        fresh_late = sink.list_classifications(ClassificationCategory.FRESHNESS, start=_T0 + timedelta(minutes=5))
    finally:
        sink.stop()

    assert [(record.category.value, record.code) for record in everything] == [
        ("freshness", "S"),
        ("preservation", "SB"),
        ("freshness", "KS"),
    ]
    assert everything[1].device_key == "tank-2"
    assert everything[1].value == 0.5
    assert everything[1].observed_at == _T0 + timedelta(minutes=3)
    assert [record.code for record in fresh_late] == ["KS"]


@pytest.mark.asyncio
async def test_engine_writes_transitions_to_sqlite(tmp_path: Path) -> None:
    sink = SqliteClassificationSink(str(tmp_path / "fresh.db"))
    sink.start()
    try:
        engine = TelemetryEngine(sink=sink)
        for code in ["S", "S", "KS", "KS", "B"]:
            engine.on_message("capstone/e03/fish", {"fresh": code})
        await engine.drain()

        stored = sink.list_classifications(ClassificationCategory.FRESHNESS)
    finally:
        sink.stop()

    assert [record.code for record in stored] == ["S", "KS", "B"]
