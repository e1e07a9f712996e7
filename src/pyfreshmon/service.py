"""Service wiring: config -> sink -> engine -> transport -> web surface."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import web

from pyfreshmon._mqtt import MqttRuntime, MqttSettings
from pyfreshmon._serial import SerialRuntime, SerialSettings
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.engine import TelemetryEngine
from pyfreshmon.exceptions import FreshmonTransportError
from pyfreshmon.persistence import (
    ClassificationQuery,
    InMemoryClassificationSink,
    PersistenceSink,
    SqliteClassificationSink,
)
from pyfreshmon.server import create_app
from pyfreshmon.session import SessionExporter

_logger = logging.getLogger(__name__)


class MonitorService:
    """Runs the telemetry engine with its transport and HTTP surface.

    Usage::

        async with MonitorService(FreshmonConfig.from_env()) as service:
            await service.wait_closed()
    """

    def __init__(
        self,
        config: FreshmonConfig,
        *,
        sink: PersistenceSink | None = None,
        exporter: SessionExporter | None = None,
    ) -> None:
        self._config = config
        self._external_sink = sink is not None
        self._sink: PersistenceSink | None = sink
        self._exporter = exporter
        self._engine: TelemetryEngine | None = None
        self._runtime: MqttRuntime | SerialRuntime | None = None
        self._runner: web.AppRunner | None = None
        self._closed = asyncio.Event()

    @property
    def engine(self) -> TelemetryEngine:
        if self._engine is None:
            raise RuntimeError("Service not started. Use 'async with MonitorService(...) as service:'")
        return self._engine

    def _build_sink(self) -> PersistenceSink:
        if self._config.db_path:
            sink = SqliteClassificationSink(self._config.db_path)
            sink.start()
            return sink
        _logger.warning("No database configured; classification records are kept in memory only")
        return InMemoryClassificationSink()

    def _build_runtime(self, loop: asyncio.AbstractEventLoop, engine: TelemetryEngine) -> MqttRuntime | SerialRuntime:
        if self._config.transport == "serial":
            return SerialRuntime(loop=loop, listener=engine, settings=SerialSettings.from_config(self._config))
        return MqttRuntime(loop=loop, listener=engine, settings=MqttSettings.from_config(self._config))

    async def __aenter__(self) -> MonitorService:
        loop = asyncio.get_running_loop()
        if self._sink is None:
            self._sink = self._build_sink()
        engine = TelemetryEngine.from_config(self._config, sink=self._sink, exporter=self._exporter)
        self._engine = engine

        runtime = self._build_runtime(loop, engine)
        try:
            await loop.run_in_executor(None, runtime.start)
        except FreshmonTransportError as exc:
            # Not fatal: HTTP keeps serving the (empty) live cache.
            _logger.error("Transport start failed: %s", exc)
        self._runtime = runtime

        app = create_app(
            engine,
            query=self._sink if isinstance(self._sink, ClassificationQuery) else None,
            publisher=runtime,
        )
        runner = web.AppRunner(app)
        try:
            await runner.setup()
            self._runner = runner
            site = web.TCPSite(runner, self._config.http_host, self._config.http_port)
            await site.start()
        except BaseException:
            _logger.error("HTTP surface failed to start on %s:%s", self._config.http_host, self._config.http_port)
            await self.__aexit__(None, None, None)
            raise
        _logger.info("Backend running on %s:%s", self._config.http_host, self._config.http_port)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        loop = asyncio.get_running_loop()
        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            try:
                await loop.run_in_executor(None, runtime.stop)
            except Exception:
                _logger.debug("Transport stop failed", exc_info=True)

        # Let the disconnect callback scheduled by the transport run.
        await asyncio.sleep(0)

        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()

        if self._engine is not None:
            await self._engine.drain()

        if not self._external_sink and isinstance(self._sink, SqliteClassificationSink):
            self._sink.stop()
        self._closed.set()

    def close(self) -> None:
        """Ask :meth:`wait_closed` to return."""
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()
