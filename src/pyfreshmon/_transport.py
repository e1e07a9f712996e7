"""Transport-facing interfaces shared by the MQTT and serial adapters."""

from __future__ import annotations

from typing import Any, Protocol


class TransportListener(Protocol):
    """Callbacks a transport invokes, one method per event.

    Adapters call these on the event loop thread, one at a time, so the
    listener never needs its own locking.
    """

    def on_connect(self) -> None: ...

    def on_disconnect(self) -> None: ...

    def on_message(self, topic: str, payload: Any) -> Any: ...


class MessagePublisher(Protocol):
    """Outbound side of a transport (used by ``POST /api/publish``)."""

    def publish(self, topic: str, message: Any) -> None: ...


def parse_broker_url(url: str) -> tuple[str, int, bool]:
    """Split a broker URL into ``(host, port, use_tls)``.

    Accepts ``mqtt://host:port``, ``mqtts://host``, ``tcp://host`` or a bare
    ``host[:port]``. Default port is 1883, or 8883 for ``mqtts``/``ssl``.
    """
    value = url.strip()
    if not value:
        raise ValueError("Broker URL is empty")

    scheme = ""
    if "://" in value:
        scheme, value = value.split("://", 1)
        scheme = scheme.lower()
    if "/" in value:
        value = value.split("/", 1)[0]
    if "@" in value:
        value = value.rsplit("@", 1)[1]

    use_tls = scheme in {"mqtts", "ssl", "tls"}
    default_port = 8883 if use_tls else 1883

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port), use_tls
    return value, default_port, use_tls
