"""Fire-and-forget execution of collaborator side effects.

Persistence sinks and session exporters may be plain callables or coroutine
functions. The engine must never wait on them nor see their exceptions, so
both kinds go through :class:`BackgroundTasks`, which logs failures and keeps
strong references to in-flight tasks until they finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

_logger = logging.getLogger(__name__)


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class BackgroundTasks:
    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _logger
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def run(self, fn: Callable[..., Any], *args: Any, what: str) -> asyncio.Task[Any] | None:
        """Call ``fn(*args)``; schedule the result if it is awaitable.

        Returns the scheduled task, or ``None`` when the call completed
        synchronously (successfully or not).
        """
        try:
            result = fn(*args)
        except Exception:
            self._logger.error("%s failed", what, exc_info=True)
            return None

        if not inspect.isawaitable(result):
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous host without a loop: finish the write in place.
            try:
                asyncio.run(_await(result))
            except Exception:
                self._logger.error("%s failed", what, exc_info=True)
            return None

        task = loop.create_task(_await(result))
        self._pending.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._pending.discard(t)
            if t.cancelled():
                self._logger.warning("%s cancelled", what)
                return
            exc = t.exception()
            if exc is not None:
                self._logger.error("%s failed: %s", what, exc, exc_info=exc)

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait until every scheduled side effect has finished."""
        while self._pending:
            await asyncio.wait(set(self._pending))
