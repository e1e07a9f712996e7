"""Internal serial-line runtime: pyserial reader thread feeding the event loop.

The microcontroller writes one message per ``\\r\\n``-terminated line::

    TOPIC:<topic>|<json>

Any other line is treated as firmware debug output.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any

import serial
import serial.tools.list_ports

from pyfreshmon._transport import TransportListener
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.exceptions import FreshmonTransportError
from pyfreshmon.ingestion.decode import parse_serial_line

LINE_DELIMITER = b"\r\n"


@dataclass(frozen=True)
class SerialSettings:
    port: str
    baud_rate: int = 115200
    read_timeout: float = 1.0

    @classmethod
    def from_config(cls, config: FreshmonConfig) -> SerialSettings:
        return cls(port=config.serial_port, baud_rate=config.serial_baud_rate)


def list_ports() -> list[dict[str, str]]:
    """Available serial ports (useful when picking ``FRESHMON_SERIAL_PORT``)."""
    return [
        {"device": info.device, "manufacturer": info.manufacturer or "Unknown"}
        for info in serial.tools.list_ports.comports()
    ]


class LineBuffer:
    """Accumulate raw reads and yield complete text lines."""

    def __init__(self, delimiter: bytes = LINE_DELIMITER) -> None:
        self._delimiter = delimiter
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += chunk
        *lines, self._pending = self._pending.split(self._delimiter)
        return [line.decode("utf-8", errors="replace") for line in lines]


class SerialRuntime:
    """Reads the serial port on a background thread.

    Opening the port fires ``on_connect``; closing it (explicitly or because
    the device went away) fires ``on_disconnect``. Reconnection is left to
    the caller.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        listener: TransportListener,
        settings: SerialSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._listener = listener
        self._settings = settings
        self._logger = logger or logging.getLogger(__name__)
        self._port: serial.Serial | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def is_open(self) -> bool:
        port = self._port
        return port is not None and port.is_open

    def _dispatch(self, callback: Any, *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            self._logger.debug("Serial event dropped; event loop is closed")

    def start(self) -> None:
        """Open the port and start the reader thread."""
        self.stop()
        settings = self._settings
        self._logger.info("Attempting to connect to serial port: %s @ %s baud", settings.port, settings.baud_rate)
        try:
            port = serial.Serial(port=settings.port, baudrate=settings.baud_rate, timeout=settings.read_timeout)
        except serial.SerialException as exc:
            raise FreshmonTransportError(
                f"Failed to open serial port {settings.port}: {exc}",
                transport="serial",
            ) from exc

        self._port = port
        self._stop_event.clear()
        self._logger.info("Serial port opened: %s @ %s baud", settings.port, settings.baud_rate)
        self._dispatch(self._listener.on_connect)

        self._thread = threading.Thread(target=self._run, args=(port,), daemon=True, name="freshmon-serial")
        self._thread.start()

    def _run(self, port: serial.Serial) -> None:
        buffer = LineBuffer()
        try:
            while not self._stop_event.is_set():
                chunk = port.read(port.in_waiting or 1)
                if not chunk:
                    continue
                for line in buffer.feed(chunk):
                    self._handle_line(line)
        except (serial.SerialException, OSError):
            if not self._stop_event.is_set():
                self._logger.warning("Serial port error", exc_info=True)
        finally:
            try:
                port.close()
            except (serial.SerialException, OSError):
                self._logger.debug("Serial close failed", exc_info=True)
            self._logger.warning("Serial port closed")
            self._dispatch(self._listener.on_disconnect)

    def _handle_line(self, line: str) -> None:
        # A bad line must not stop the reader; only port errors end the loop.
        try:
            parsed = parse_serial_line(line)
        except Exception:
            self._logger.warning("Dropping unparseable serial line: %.64r", line, exc_info=True)
            return
        if parsed is None:
            return
        topic, payload = parsed
        self._dispatch(self._listener.on_message, topic, payload)

    def publish(self, topic: str, message: Any) -> None:
        raise FreshmonTransportError("Publishing is not supported on the serial transport", transport="serial")

    def stop(self) -> None:
        """Stop the reader thread; the port is closed by the thread itself."""
        thread = self._thread
        self._thread = None
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout=self._settings.read_timeout + 1.0)
        self._port = None
