"""Internal MQTT runtime: threaded paho-mqtt client feeding the event loop."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyfreshmon._transport import TransportListener, parse_broker_url
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.exceptions import FreshmonTransportError
from pyfreshmon.ingestion.decode import decode_payload


@dataclass(frozen=True)
class MqttSettings:
    """Broker connection details."""

    host: str
    port: int
    use_tls: bool
    topics: tuple[str, ...]
    username: str | None = None
    password: str | None = None
    keepalive: int = 60
    client_id: str | None = None

    @classmethod
    def from_config(cls, config: FreshmonConfig) -> MqttSettings:
        host, port, use_tls = parse_broker_url(config.mqtt_url)
        return cls(
            host=host,
            port=port,
            use_tls=use_tls,
            topics=config.subscriptions,
            username=config.mqtt_username,
            password=config.mqtt_password,
            keepalive=config.mqtt_keepalive,
        )


def encode_message(message: Any) -> str:
    """Strings are sent verbatim; anything else is JSON-encoded."""
    if isinstance(message, str):
        return message
    return json.dumps(message, separators=(",", ":"))


class MqttRuntime:
    """Threaded paho-mqtt runtime that forwards transport events onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        listener: TransportListener,
        settings: MqttSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._listener = listener
        self._settings = settings
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _dispatch(self, callback: Any, *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed during shutdown.
            self._logger.debug("MQTT event dropped; event loop is closed")

    def start(self) -> None:
        """Connect and start the background network loop."""
        self.stop()
        settings = self._settings
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s tls=%s topics=%s",
            settings.host,
            settings.port,
            settings.use_tls,
            settings.topics,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id or "",
        )
        client.enable_logger(self._logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        if settings.use_tls:
            client.tls_set()
        client.reconnect_delay_set(min_delay=1, max_delay=30)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.info("Connected to MQTT broker at %s:%s", settings.host, settings.port)
            self._connected = True
            for topic in settings.topics:
                c.subscribe(topic, qos=0)
                self._logger.info("Subscribed to topic: %s", topic)
            self._dispatch(self._listener.on_connect)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                payload = decode_payload(msg.payload)
            except Exception:
                self._logger.debug("MQTT payload decode failure topic=%s", msg.topic, exc_info=True)
                return
            self._dispatch(self._listener.on_message, msg.topic, payload)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            was_connected = self._connected
            self._connected = False
            if self._running:
                self._logger.warning("MQTT offline: %s", reason_code)
            if was_connected:
                self._dispatch(self._listener.on_disconnect)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect_async(settings.host, settings.port, keepalive=settings.keepalive)
            client.loop_start()
        except (OSError, ValueError) as exc:
            raise FreshmonTransportError(
                f"MQTT connect to {settings.host}:{settings.port} failed: {exc}",
                transport="mqtt",
            ) from exc

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def publish(self, topic: str, message: Any) -> None:
        """Publish *message* to *topic* (QoS 0)."""
        client = self._client
        if client is None:
            raise FreshmonTransportError("MQTT client not initialized", transport="mqtt")
        payload = encode_message(message)
        info = client.publish(topic, payload, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise FreshmonTransportError(f"Publish to {topic} failed: rc={info.rc}", transport="mqtt")
        self._logger.debug("Published to %s: %s", topic, payload)

    def stop(self) -> None:
        """Stop and disconnect the current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
