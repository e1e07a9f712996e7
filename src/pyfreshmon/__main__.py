"""Command-line entry point.

Usage::

    python -m pyfreshmon                          # settings from FRESHMON_* env vars
    python -m pyfreshmon --transport serial       # read the STM32 serial line instead of MQTT
    python -m pyfreshmon --db ./data/freshmon.db  # persist classifications to SQLite
    python -m pyfreshmon --list-ports             # show serial ports and exit
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from pyfreshmon._redact import redact_for_log
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.exceptions import FreshmonConfigError

_LOG = logging.getLogger("pyfreshmon")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pyfreshmon",
        description="Fish storage telemetry backend (MQTT/serial ingestion, live relay, change-gated persistence).",
    )
    parser.add_argument("--transport", choices=("mqtt", "serial"), help="Override FRESHMON_TRANSPORT")
    parser.add_argument("--mqtt-url", help="Override FRESHMON_MQTT_URL")
    parser.add_argument("--serial-port", help="Override FRESHMON_SERIAL_PORT")
    parser.add_argument("--host", help="HTTP bind address (FRESHMON_HTTP_HOST)")
    parser.add_argument("--port", type=int, help="HTTP bind port (FRESHMON_HTTP_PORT)")
    parser.add_argument("--db", help="SQLite file for classification records (FRESHMON_DB_PATH)")
    parser.add_argument("--list-ports", action="store_true", help="List serial ports and exit")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    return parser


def config_from_args(args: argparse.Namespace) -> FreshmonConfig:
    overrides: dict[str, Any] = {}
    for arg_name, field_name in (
        ("transport", "transport"),
        ("mqtt_url", "mqtt_url"),
        ("serial_port", "serial_port"),
        ("host", "http_host"),
        ("port", "http_port"),
        ("db", "db_path"),
    ):
        value = getattr(args, arg_name)
        if value is not None:
            overrides[field_name] = value
    return FreshmonConfig.from_env(**overrides)


async def _serve(config: FreshmonConfig) -> None:
    from pyfreshmon.service import MonitorService

    async with MonitorService(config) as service:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, service.close)
        await service.wait_closed()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_ports:
        from pyfreshmon._serial import list_ports

        for port in list_ports():
            print(f"{port['device']} ({port['manufacturer']})")
        return 0

    try:
        config = config_from_args(args)
    except FreshmonConfigError as exc:
        _LOG.error("Invalid configuration: %s", exc)
        return 2

    _LOG.debug("Configuration: %s", redact_for_log(config))
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_serve(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
