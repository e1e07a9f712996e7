"""Service configuration for pyfreshmon."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyfreshmon.exceptions import FreshmonConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, cast: type[int] | type[float]) -> int | float:
    try:
        return cast(value)
    except ValueError as exc:
        raise FreshmonConfigError(f"{env_key} must be a number, got {value!r}") from exc


def _split_topics(value: str) -> tuple[str, ...]:
    return tuple(topic.strip() for topic in value.split(",") if topic.strip())


@dataclasses.dataclass(frozen=True)
class FreshmonConfig:
    """Service configuration.

    Parameters
    ----------
    transport : str
        Physical transport delivering telemetry: ``"mqtt"`` or ``"serial"``.
    mqtt_url : str
        Broker URL, e.g. ``mqtt://localhost:1883``. ``mqtts://`` enables TLS.
    mqtt_username : str or None
        Optional broker username.
    mqtt_password : str or None
        Optional broker password.
    mqtt_sub_topics : tuple of str
        Topics subscribed on every (re)connect. When empty, the three
        topics derived from the prefixes below are used.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    serial_port : str
        Serial device path for the serial transport.
    serial_baud_rate : int
        Serial line speed.
    device_prefix : str
        Prefix of the sensor topic (``<device_prefix>/sensor/data``).
    app_prefix : str
        Prefix of the classification topics (``<app_prefix>/fish`` and
        ``<app_prefix>/preservation``).
    http_host : str
        Bind address of the HTTP/WebSocket surface.
    http_port : int
        Bind port of the HTTP/WebSocket surface.
    db_path : str or None
        SQLite file for classification records. ``None`` keeps records
        in memory only.
    history_limit : int
        Maximum number of sensor readings (and, separately, classification
        observations) kept in the per-session history.
    reset_change_tracking_on_session_end : bool
        Forget the last persisted code per device when a session ends, so
        the first classification of the next session is always persisted.
    """

    transport: str = "mqtt"
    mqtt_url: str = "mqtt://localhost:1883"
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_sub_topics: tuple[str, ...] = ()
    mqtt_keepalive: int = 60
    serial_port: str = "/dev/ttyUSB0"
    serial_baud_rate: int = 115200
    device_prefix: str = "stm32"
    app_prefix: str = "capstone/e03"
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    db_path: str | None = None
    history_limit: int = 10_000
    reset_change_tracking_on_session_end: bool = False

    def __post_init__(self) -> None:
        if self.transport not in {"mqtt", "serial"}:
            raise FreshmonConfigError(f"Unknown transport {self.transport!r} (expected 'mqtt' or 'serial')")
        if self.history_limit <= 0:
            raise FreshmonConfigError("history_limit must be positive")

    @property
    def sensor_topic(self) -> str:
        return f"{self.device_prefix}/sensor/data"

    @property
    def freshness_topic(self) -> str:
        return f"{self.app_prefix}/fish"

    @property
    def preservation_topic(self) -> str:
        return f"{self.app_prefix}/preservation"

    @property
    def subscriptions(self) -> tuple[str, ...]:
        """Topics to subscribe to on the bus."""
        if self.mqtt_sub_topics:
            return self.mqtt_sub_topics
        return (self.sensor_topic, self.freshness_topic, self.preservation_topic)

    @classmethod
    def from_env(cls, **overrides: Any) -> FreshmonConfig:
        """Create configuration from ``FRESHMON_*`` environment variables.

        Explicit keyword arguments override environment values.

        Raises
        ------
        FreshmonConfigError
            If a numeric variable cannot be parsed or a value is invalid.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "FRESHMON_TRANSPORT": "transport",
            "FRESHMON_MQTT_URL": "mqtt_url",
            "FRESHMON_MQTT_USERNAME": "mqtt_username",
            "FRESHMON_MQTT_PASSWORD": "mqtt_password",
            "FRESHMON_SERIAL_PORT": "serial_port",
            "FRESHMON_DEVICE_PREFIX": "device_prefix",
            "FRESHMON_APP_PREFIX": "app_prefix",
            "FRESHMON_HTTP_HOST": "http_host",
            "FRESHMON_DB_PATH": "db_path",
        }
        _ENV_INT_MAP = {
            "FRESHMON_MQTT_KEEPALIVE": "mqtt_keepalive",
            "FRESHMON_SERIAL_BAUD_RATE": "serial_baud_rate",
            "FRESHMON_HTTP_PORT": "http_port",
            "FRESHMON_HISTORY_LIMIT": "history_limit",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip():
                config_kwargs[field_name] = val.strip()

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val.strip(), int)

        topics_env = env.get("FRESHMON_MQTT_SUB_TOPICS")
        if topics_env is not None and "mqtt_sub_topics" not in overrides:
            config_kwargs["mqtt_sub_topics"] = _split_topics(topics_env)

        if "reset_change_tracking_on_session_end" not in overrides:
            config_kwargs["reset_change_tracking_on_session_end"] = _env_bool(
                env.get("FRESHMON_RESET_TRACKING_ON_SESSION_END"),
                False,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
