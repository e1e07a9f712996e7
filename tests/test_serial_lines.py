from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from pyfreshmon._serial import LineBuffer, SerialRuntime, SerialSettings
from pyfreshmon.exceptions import FreshmonTransportError
from pyfreshmon.ingestion.decode import parse_serial_line


def test_line_buffer_splits_on_crlf_and_keeps_partial_tail() -> None:
    buffer = LineBuffer()

    assert buffer.feed(b"TOPIC:a|{}\r\nTOPIC:b|") == ["TOPIC:a|{}"]
    assert buffer.feed(b'{"x": 1}\r\n') == ['TOPIC:b|{"x": 1}']
    assert buffer.feed(b"") == []


def test_parse_serial_line_sensor_frame() -> None:
    line = 'TOPIC:stm32/sensor/data|{"mq135_ppm":150.5,"mq2_ppm":450.2,"T":25.3,"RH":65.1}'

    assert parse_serial_line(line) == (
        "stm32/sensor/data",
        {"mq135_ppm": 150.5, "mq2_ppm": 450.2, "T": 25.3, "RH": 65.1},
    )


def test_parse_serial_line_trims_whitespace() -> None:
    assert parse_serial_line('  TOPIC: capstone/e03/fish | {"fresh":"S"}  ') == (
        "capstone/e03/fish",
        {"fresh": "S"},
    )


@pytest.mark.parametrize(
    "line",
    [
        "",
        "ADC init ok",
        "TOPIC:no-separator",
        "TOPIC:a|b|c",
        'TOPIC:|{"fresh":"S"}',
    ],
)
def test_parse_serial_line_ignores_debug_and_bad_framing(line: str) -> None:
    assert parse_serial_line(line) is None


def test_parse_serial_line_logs_bad_json(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        assert parse_serial_line("TOPIC:capstone/e03/fish|{fresh:S}") is None

    assert "Failed to parse JSON from serial data" in caplog.text


class _Listener:
    def on_connect(self) -> None:
        pass

    def on_disconnect(self) -> None:
        pass

    def on_message(self, topic: str, payload: Any) -> None:
        pass


def test_serial_runtime_publish_is_not_supported() -> None:
    loop = asyncio.new_event_loop()
    try:
        runtime = SerialRuntime(loop=loop, listener=_Listener(), settings=SerialSettings(port="/dev/null"))
        with pytest.raises(FreshmonTransportError) as excinfo:
            runtime.publish("capstone/e03/fish", {"fresh": "S"})
    finally:
        loop.close()

    assert excinfo.value.transport == "serial"
