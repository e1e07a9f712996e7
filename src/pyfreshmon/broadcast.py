"""Live fan-out of telemetry events to subscribers.

Delivery is at-most-once per publish to whoever is subscribed at that moment.
There is no backlog: a subscriber that joins late only gets a synthesized
``sessionStatus`` event so it can resynchronize without waiting for traffic.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pyfreshmon.ingestion.messages import EVENT_SESSION_STATUS

_logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


def session_status_payload(started_at: datetime | None) -> dict[str, Any]:
    """Payload of the ``sessionStatus`` event."""
    return {
        "active": started_at is not None,
        "startedAt": started_at.isoformat() if started_at is not None else None,
    }


class Broadcaster:
    """Synchronous publish/subscribe hub.

    Listeners are called in subscription order from the thread that publishes
    (the event loop), so every listener sees events in publish order.
    """

    def __init__(self, *, session_started_at: Callable[[], datetime | None] | None = None) -> None:
        self._listeners: dict[int, Listener] = {}
        self._next_id = 0
        self._session_started_at = session_started_at

    def bind_session_clock(self, getter: Callable[[], datetime | None]) -> None:
        """Set the callback used to build the greeting ``sessionStatus`` event."""
        self._session_started_at = getter

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* and return a callable that unsubscribes it."""
        listener_id = self._next_id
        self._next_id += 1
        self._listeners[listener_id] = listener
        _logger.debug("Subscriber %s connected (total=%s)", listener_id, len(self._listeners))

        started_at = self._session_started_at() if self._session_started_at is not None else None
        self._deliver(listener_id, listener, EVENT_SESSION_STATUS, session_status_payload(started_at))

        def _unsubscribe() -> None:
            if self._listeners.pop(listener_id, None) is not None:
                _logger.debug("Subscriber %s disconnected (total=%s)", listener_id, len(self._listeners))

        return _unsubscribe

    def publish(self, event_name: str, payload: Any) -> None:
        """Deliver one event to every current subscriber."""
        for listener_id, listener in list(self._listeners.items()):
            self._deliver(listener_id, listener, event_name, payload)

    # Collaborator-facing name.
    emit = publish

    def _deliver(self, listener_id: int, listener: Listener, event_name: str, payload: Any) -> None:
        try:
            listener(event_name, payload)
        except Exception:
            _logger.warning("Subscriber %s failed on event %s", listener_id, event_name, exc_info=True)


class QueueSubscriber:
    """Buffer broadcast events in an :class:`asyncio.Queue` for async consumers.

    Usage::

        subscriber = QueueSubscriber()
        subscriber.attach(broadcaster)
        try:
            while True:
                event_name, payload = await subscriber.get()
                ...
        finally:
            subscriber.detach()
    """

    def __init__(self, *, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._unsubscribe: Callable[[], None] | None = None
        self.dropped = 0

    def attach(self, broadcaster: Broadcaster) -> None:
        self.detach()
        self._unsubscribe = broadcaster.subscribe(self)

    def detach(self) -> None:
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            unsubscribe()

    def __call__(self, event_name: str, payload: Any) -> None:
        try:
            self._queue.put_nowait((event_name, payload))
        except asyncio.QueueFull:
            # Slow consumer: drop rather than block the producer.
            self.dropped += 1
            _logger.warning("Subscriber queue full; dropped event %s (dropped=%s)", event_name, self.dropped)

    async def get(self) -> tuple[str, Any]:
        return await self._queue.get()

    def get_nowait(self) -> tuple[str, Any]:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()
