"""Raw transport payload decoding.

Both transports deliver ``(topic, payload)`` pairs. The bus hands over raw
bytes; the serial line carries ``TOPIC:<topic>|<json>`` text lines. Either
way the payload is parsed as JSON when possible and otherwise kept as
opaque text, so a malformed message never stops ingestion.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pyfreshmon.exceptions import FreshmonDecodeError

_logger = logging.getLogger(__name__)

SERIAL_TOPIC_PREFIX = "TOPIC:"
SERIAL_SEPARATOR = "|"


def decode_json_strict(text: str) -> Any:
    """Parse *text* as JSON or raise :class:`FreshmonDecodeError`."""
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError) as exc:
        raise FreshmonDecodeError(f"Payload is not JSON: {text[:64]!r}") from exc


def decode_payload(raw: bytes | str) -> Any:
    """Decode a bus payload: structured data when possible, else text."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    try:
        return decode_json_strict(text)
    except FreshmonDecodeError:
        _logger.debug("Payload kept as opaque text: %.64r", text)
        return text.strip()


def parse_serial_line(line: str) -> tuple[str, Any] | None:
    """Parse one serial line into ``(topic, payload)``.

    Returns ``None`` for debug chatter, malformed framing, or invalid JSON.

    Example line::

        TOPIC:stm32/sensor/data|{"mq135_ppm":150.5,"mq2_ppm":450.2,"T":25.3,"RH":65.1}
    """
    stripped = line.strip()
    if not stripped.startswith(SERIAL_TOPIC_PREFIX):
        if stripped:
            _logger.debug("Serial debug output: %s", stripped)
        return None

    parts = stripped[len(SERIAL_TOPIC_PREFIX) :].split(SERIAL_SEPARATOR)
    if len(parts) != 2:
        _logger.debug("Serial line has unexpected framing: %s", stripped)
        return None

    topic = parts[0].strip()
    body = parts[1].strip()
    if not topic:
        return None

    try:
        payload = decode_json_strict(body)
    except FreshmonDecodeError:
        _logger.warning("Failed to parse JSON from serial data: %s", body)
        return None
    return topic, payload
