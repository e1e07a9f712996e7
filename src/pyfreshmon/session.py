"""Monitoring session lifecycle.

A session starts with the first sensor reading received while idle and ends
when the transport reports a disconnect. Classification messages never start
or end a session.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from pyfreshmon._background import BackgroundTasks
from pyfreshmon.broadcast import Broadcaster, session_status_payload
from pyfreshmon.ingestion.messages import EVENT_SESSION_STATUS, SensorReading
from pyfreshmon.state.events import ClassificationObservation, SessionState, utcnow
from pyfreshmon.state.store import LiveStateStore

_logger = logging.getLogger(__name__)

#: Default cap on readings kept per session (one reading per second ≈ 2.7h).
DEFAULT_HISTORY_LIMIT: int = 10_000


class SessionSummary(BaseModel):
    """Everything recorded during one monitoring session.

    Parameters
    ----------
    started_at : datetime
        When the first sensor reading of the session arrived.
    ended_at : datetime
        When the transport reported the disconnect.
    sensor_readings : list of SensorReading
        Normalized readings, oldest first (bounded by the history limit).
    classifications : list of ClassificationObservation
        Every classification message with a code, changed or not.
    """

    model_config = ConfigDict(frozen=True)

    started_at: datetime
    ended_at: datetime
    sensor_readings: list[SensorReading] = Field(default_factory=list)
    classifications: list[ClassificationObservation] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.ended_at - self.started_at).total_seconds())


class SessionExporter(Protocol):
    """Receives the session history when a session ends (e.g. writes reports)."""

    def export_session(self, summary: SessionSummary) -> None | Awaitable[None]: ...


class SessionHistory:
    """Bounded in-memory history of the running session."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._readings: deque[SensorReading] = deque(maxlen=limit)
        self._classifications: deque[ClassificationObservation] = deque(maxlen=limit)

    def record_reading(self, reading: SensorReading) -> None:
        self._readings.append(reading)

    def record_classification(self, observation: ClassificationObservation) -> None:
        self._classifications.append(observation)

    @property
    def reading_count(self) -> int:
        return len(self._readings)

    @property
    def classification_count(self) -> int:
        return len(self._classifications)

    def summarize(self, started_at: datetime, ended_at: datetime) -> SessionSummary:
        return SessionSummary(
            started_at=started_at,
            ended_at=ended_at,
            sensor_readings=list(self._readings),
            classifications=list(self._classifications),
        )

    def clear(self) -> None:
        self._readings.clear()
        self._classifications.clear()


class SessionTracker:
    """Two-state (idle/active) session machine.

    Both transitions are re-entrant: :meth:`start` while active and
    :meth:`end` while idle are no-ops that return ``False``.
    """

    def __init__(
        self,
        *,
        store: LiveStateStore,
        broadcaster: Broadcaster,
        exporter: SessionExporter | None = None,
        tasks: BackgroundTasks | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        reset_change_tracking: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._exporter = exporter
        self._tasks = tasks or BackgroundTasks(logger=_logger)
        self._reset_change_tracking = reset_change_tracking
        self._clock = clock
        self.history = SessionHistory(history_limit)

    @property
    def state(self) -> SessionState:
        if self._store.session_started_at is None:
            return SessionState.IDLE
        return SessionState.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def started_at(self) -> datetime | None:
        return self._store.session_started_at

    def start(self, now: datetime | None = None) -> bool:
        """Idle -> active. Returns ``True`` if a new session was started."""
        if self.is_active:
            return False
        started_at = now or self._clock()
        self._store.session_started_at = started_at
        _logger.info("Monitoring session started at %s", started_at.isoformat())
        self._broadcaster.publish(EVENT_SESSION_STATUS, session_status_payload(started_at))
        return True

    def end(self, now: datetime | None = None) -> bool:
        """Active -> idle. Returns ``True`` if a running session was ended."""
        started_at = self._store.session_started_at
        if started_at is None:
            return False

        ended_at = now or self._clock()
        summary = self.history.summarize(started_at, ended_at)
        _logger.info(
            "Monitoring session ended after %.0fs (readings=%s classifications=%s)",
            summary.duration_seconds,
            len(summary.sensor_readings),
            len(summary.classifications),
        )
        if self._exporter is not None:
            self._tasks.run(self._exporter.export_session, summary, what="Session export")

        self.history.clear()
        self._store.clear_sensor()
        self._store.session_started_at = None
        if self._reset_change_tracking:
            self._store.clear_change_tracking()

        self._broadcaster.publish(EVENT_SESSION_STATUS, session_status_payload(None))
        return True
