"""Change-gated ingestion engine.

:class:`TelemetryEngine` is the message handler every transport talks to. For
each ``(topic, payload)`` pair it:

- classifies the message by topic,
- updates the live state store,
- decides whether a classification record must be persisted (only when the
  code changes for a device),
- always republishes the message to live subscribers.

All state lives on the instance; two engines never share anything.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pyfreshmon._background import BackgroundTasks
from pyfreshmon._redact import redact_for_log
from pyfreshmon.broadcast import Broadcaster
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.ingestion.decode import decode_payload
from pyfreshmon.ingestion.messages import (
    MessageKind,
    SensorReading,
    TopicRouter,
    category_for,
    decode_classification,
    event_name_for,
)
from pyfreshmon.persistence import PersistenceSink
from pyfreshmon.session import DEFAULT_HISTORY_LIMIT, SessionExporter, SessionTracker
from pyfreshmon.state.events import (
    ClassificationCategory,
    ClassificationObservation,
    ClassificationRecord,
    LiveCacheView,
    utcnow,
)
from pyfreshmon.state.policy import is_transition
from pyfreshmon.state.store import LiveStateStore

_logger = logging.getLogger(__name__)


class TelemetryEngine:
    """Ingestion/relay/dedup core.

    Usage::

        engine = TelemetryEngine(sink=InMemoryClassificationSink())
        engine.on_message("stm32/sensor/data", {"mq135_ppm": 12.5})
        engine.on_message("capstone/e03/fish", {"fresh": "S", "freshValue": 0.82})
        view = engine.snapshot()
    """

    def __init__(
        self,
        *,
        sink: PersistenceSink,
        broadcaster: Broadcaster | None = None,
        exporter: SessionExporter | None = None,
        router: TopicRouter | None = None,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        reset_change_tracking: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._sink = sink
        self._router = router or TopicRouter()
        self._clock = clock
        self._logger = logger or _logger
        self._tasks = BackgroundTasks(logger=self._logger)
        self._store = LiveStateStore()
        self._broadcaster = broadcaster or Broadcaster()
        self._broadcaster.bind_session_clock(lambda: self._store.session_started_at)
        self._session = SessionTracker(
            store=self._store,
            broadcaster=self._broadcaster,
            exporter=exporter,
            tasks=self._tasks,
            history_limit=history_limit,
            reset_change_tracking=reset_change_tracking,
            clock=clock,
        )
        self._transport_connected = False

    @classmethod
    def from_config(
        cls,
        config: FreshmonConfig,
        *,
        sink: PersistenceSink,
        broadcaster: Broadcaster | None = None,
        exporter: SessionExporter | None = None,
    ) -> TelemetryEngine:
        return cls(
            sink=sink,
            broadcaster=broadcaster,
            exporter=exporter,
            router=TopicRouter(device_prefix=config.device_prefix, app_prefix=config.app_prefix),
            history_limit=config.history_limit,
            reset_change_tracking=config.reset_change_tracking_on_session_end,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def session(self) -> SessionTracker:
        return self._session

    @property
    def router(self) -> TopicRouter:
        return self._router

    @property
    def transport_connected(self) -> bool:
        return self._transport_connected

    @property
    def pending_writes(self) -> int:
        return self._tasks.pending

    def snapshot(self) -> LiveCacheView:
        """Point-in-time copy of the live cache."""
        return self._store.snapshot()

    def last_persisted_codes(self) -> dict[str, dict[str, str]]:
        return self._store.last_values.as_dict()

    async def drain(self) -> None:
        """Wait for in-flight persistence writes and session exports."""
        await self._tasks.drain()

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def on_connect(self) -> None:
        self._transport_connected = True
        self._logger.info("Transport connected")

    def on_disconnect(self) -> None:
        """Transport went away: end the running session, if any."""
        self._transport_connected = False
        self._logger.warning("Transport disconnected")
        self._session.end(self._clock())

    def on_message(self, topic: str, payload: Any) -> MessageKind:
        """Process one inbound message to completion."""
        if isinstance(payload, (bytes, bytearray)):
            payload = decode_payload(payload)

        kind = self._router.classify(topic)
        self._logger.debug("Message received topic=%s kind=%s payload=%s", topic, kind, redact_for_log(payload))

        if kind == MessageKind.SENSOR_READING:
            self._handle_sensor(topic, payload)
        elif kind == MessageKind.UNRECOGNIZED:
            self._logger.warning("Unknown topic: %s", topic)
        else:
            category = category_for(kind)
            assert category is not None  # noqa: S101
            self._handle_classification(kind, category, topic, payload)
        return kind

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_sensor(self, topic: str, payload: Any) -> None:
        event_name = event_name_for(MessageKind.SENSOR_READING)
        assert event_name is not None  # noqa: S101

        if not isinstance(payload, Mapping):
            # Opaque text on the sensor topic: relay it, but it carries no
            # fields to merge and does not count as session activity.
            self._logger.debug("Sensor payload is not structured; relaying only")
            self._broadcaster.publish(event_name, {"topic": topic, "message": payload})
            return

        now = self._clock()
        self._store.update_sensor(payload)
        self._session.start(now)
        self._broadcaster.publish(event_name, {"topic": topic, "message": payload})

        reading = SensorReading.model_validate({**payload, "observed_at": now})
        if not reading.is_empty:
            self._session.history.record_reading(reading)

    def _handle_classification(
        self,
        kind: MessageKind,
        category: ClassificationCategory,
        topic: str,
        payload: Any,
    ) -> None:
        event_name = event_name_for(kind)
        assert event_name is not None  # noqa: S101

        # Live subscribers always get the raw message, with or without a code.
        self._broadcaster.publish(event_name, {"topic": topic, "message": payload})

        decoded = decode_classification(category, payload)
        if decoded.code is None:
            self._logger.debug("%s message without code; broadcast only", category.value)
            return

        self._store.set_code(category, decoded.code)

        now = self._clock()
        last = self._store.last_code(category, decoded.device_key)
        changed = is_transition(last, decoded.code)
        self._session.history.record_classification(
            ClassificationObservation(
                category=category,
                code=decoded.code,
                value=decoded.value,
                observed_at=now,
                device_key=decoded.device_key,
                changed=changed,
            )
        )

        if not changed:
            self._logger.debug(
                "%s unchanged (%s): %s (skip save)",
                category.value,
                decoded.device_key,
                decoded.code,
            )
            return

        self._store.remember_code(category, decoded.device_key, decoded.code)
        record = ClassificationRecord(
            category=category,
            code=decoded.code,
            value=decoded.value,
            observed_at=now,
            device_key=decoded.device_key,
        )
        self._tasks.run(
            self._sink.save_classification,
            record,
            what=f"Save {category.value} ({decoded.device_key})",
        )
        self._logger.info(
            "%s changed (%s): %s -> %s",
            category.value,
            decoded.device_key,
            last,
            decoded.code,
        )
