"""HTTP and WebSocket surface.

Thin glue over the engine: read-only snapshots of the live cache, a query
endpoint over persisted classifications, a publish passthrough to the bus,
and a WebSocket that relays every broadcast event.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import UTC, datetime
from typing import Any

from aiohttp import WSMsgType, web

from pyfreshmon._transport import MessagePublisher
from pyfreshmon.broadcast import QueueSubscriber
from pyfreshmon.engine import TelemetryEngine
from pyfreshmon.exceptions import FreshmonTransportError
from pyfreshmon.persistence import ClassificationQuery
from pyfreshmon.state.events import ClassificationCategory

_logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", TelemetryEngine)
QUERY_KEY = web.AppKey("query", object)
PUBLISHER_KEY = web.AppKey("publisher", object)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _json(data: Any, *, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def _parse_datetime(value: str | None, name: str) -> datetime | None:
    if value is None or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=_dumps({"error": f"Invalid {name}: {value}"}),
            content_type="application/json",
        ) from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


async def handle_index(_request: web.Request) -> web.Response:
    return _json({"message": "pyfreshmon backend is running"})


async def handle_live(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    view = engine.snapshot()
    body = view.model_dump(mode="json")
    body["transport_connected"] = engine.transport_connected
    body["session_state"] = engine.session.state.value
    return _json(body)


async def handle_classifications(request: web.Request) -> web.Response:
    query = request.app.get(QUERY_KEY)
    if not isinstance(query, ClassificationQuery):
        return _json({"error": "Classification history is not available"}, status=501)

    category: ClassificationCategory | None = None
    raw_category = request.query.get("category")
    if raw_category:
        try:
            category = ClassificationCategory(raw_category.strip().lower())
        except ValueError:
            return _json({"error": f"Unknown category: {raw_category}"}, status=400)

    start = _parse_datetime(request.query.get("start"), "start")
    end = _parse_datetime(request.query.get("end"), "end")

    loop = asyncio.get_running_loop()
    records = await loop.run_in_executor(None, query.list_classifications, category, start, end)
    return _json(
        {
            "count": len(records),
            "items": [record.model_dump(mode="json") for record in records],
        }
    )


async def handle_publish(request: web.Request) -> web.Response:
    publisher: MessagePublisher | None = request.app.get(PUBLISHER_KEY)  # type: ignore[assignment]
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        body = None
    if not isinstance(body, dict):
        body = {}

    topic = body.get("topic")
    message = body.get("message")
    if not topic or not message:
        return _json({"error": "Missing topic or message"}, status=400)
    if publisher is None:
        return _json({"error": "Publishing is not available"}, status=501)

    try:
        publisher.publish(str(topic), message)
    except FreshmonTransportError:
        _logger.error("Publish error", exc_info=True)
        return _json({"error": "Failed to publish message"}, status=500)
    return _json({"success": True, "topic": topic, "message": message})


async def _pump(ws: web.WebSocketResponse, subscriber: QueueSubscriber) -> None:
    while not ws.closed:
        event_name, payload = await subscriber.get()
        await ws.send_str(_dumps({"event": event_name, "data": payload}))


async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
    engine = request.app[ENGINE_KEY]
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    subscriber = QueueSubscriber()
    subscriber.attach(engine.broadcaster)
    _logger.info("Socket connected: %s", request.remote)
    sender = asyncio.create_task(_pump(ws, subscriber))
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                _logger.debug("Socket error: %s", ws.exception())
                break
    finally:
        subscriber.detach()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, ConnectionResetError):
            await sender
        _logger.info("Socket disconnected: %s", request.remote)
    return ws


def create_app(
    engine: TelemetryEngine,
    *,
    query: ClassificationQuery | None = None,
    publisher: MessagePublisher | None = None,
) -> web.Application:
    """Build the aiohttp application around *engine*."""
    app = web.Application()
    app[ENGINE_KEY] = engine
    if query is not None:
        app[QUERY_KEY] = query
    if publisher is not None:
        app[PUBLISHER_KEY] = publisher

    app.router.add_get("/api", handle_index)
    app.router.add_get("/api/", handle_index)
    app.router.add_get("/api/live", handle_live)
    app.router.add_get("/api/classifications", handle_classifications)
    app.router.add_post("/api/publish", handle_publish)
    app.router.add_get("/ws", handle_websocket)
    return app
