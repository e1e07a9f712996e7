"""Classification persistence sinks.

The engine hands every classification *transition* to a sink. Sinks may be
synchronous or return an awaitable; either way the engine never waits for
them and only logs their failures.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import threading
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from pyfreshmon.exceptions import FreshmonPersistenceError
from pyfreshmon.state.events import ClassificationCategory, ClassificationRecord

_logger = logging.getLogger(__name__)


class PersistenceSink(Protocol):
    def save_classification(self, record: ClassificationRecord) -> None | Awaitable[None]: ...


@runtime_checkable
class ClassificationQuery(Protocol):
    """Optional read side used by the HTTP surface."""

    def list_classifications(
        self,
        category: ClassificationCategory | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ClassificationRecord]: ...


def _in_range(record: ClassificationRecord, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and record.observed_at < start:
        return False
    return not (end is not None and record.observed_at > end)


class InMemoryClassificationSink:
    """List-backed sink; records live for the lifetime of the process."""

    def __init__(self) -> None:
        self._records: list[ClassificationRecord] = []

    @property
    def records(self) -> list[ClassificationRecord]:
        return list(self._records)

    def save_classification(self, record: ClassificationRecord) -> None:
        self._records.append(record)

    def list_classifications(
        self,
        category: ClassificationCategory | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ClassificationRecord]:
        matching = [
            record
            for record in self._records
            if (category is None or record.category == category) and _in_range(record, start, end)
        ]
        return sorted(matching, key=lambda record: record.observed_at)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS classifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    device_key TEXT NOT NULL,
    code TEXT NOT NULL,
    value REAL,
    observed_at TEXT NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_classifications_cat_ts ON classifications (category, observed_at)"


def _ts_to_str(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


class SqliteClassificationSink:
    """SQLite-backed sink.

    Writes run on the default executor so the event loop is never blocked by
    disk I/O. Timestamps are stored as UTC ISO-8601 strings, which sort
    lexicographically in time order.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    def start(self) -> None:
        with self._lock:
            if self._conn is not None:
                return

            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 3000")
            with conn:
                conn.execute(_SCHEMA)
                conn.execute(_INDEX)
            self._conn = conn
            _logger.debug("SQLite sink opened at %s", self.db_path)

    def stop(self) -> None:
        with self._lock:
            conn = self._conn
            self._conn = None
            if conn is not None:
                conn.close()

    def _require_conn_locked(self) -> sqlite3.Connection:
        if self._conn is None:
            raise FreshmonPersistenceError("SQLite sink not started")
        return self._conn

    def insert(self, record: ClassificationRecord) -> None:
        """Synchronously insert *record*."""
        with self._lock:
            conn = self._require_conn_locked()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO classifications (category, device_key, code, value, observed_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (
                            record.category.value,
                            record.device_key,
                            record.code,
                            record.value,
                            _ts_to_str(record.observed_at),
                        ),
                    )
            except sqlite3.Error as exc:
                raise FreshmonPersistenceError(
                    f"Save {record.category.value} failed: {exc}",
                    category=record.category.value,
                ) from exc

    async def save_classification(self, record: ClassificationRecord) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.insert, record)

    def list_classifications(
        self,
        category: ClassificationCategory | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ClassificationRecord]:
        clauses: list[str] = []
        params: list[str] = []
        if category is not None:
            clauses.append("category = ?")
            params.append(category.value)
        if start is not None:
            clauses.append("observed_at >= ?")
            params.append(_ts_to_str(start))
        if end is not None:
            clauses.append("observed_at <= ?")
            params.append(_ts_to_str(end))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            conn = self._require_conn_locked()
            rows = conn.execute(
                f"SELECT category, device_key, code, value, observed_at FROM classifications{where} "  # noqa: S608
                "ORDER BY observed_at ASC, id ASC",
                params,
            ).fetchall()

        return [
            ClassificationRecord(
                category=ClassificationCategory(row["category"]),
                device_key=row["device_key"],
                code=row["code"],
                value=row["value"],
                observed_at=datetime.fromisoformat(row["observed_at"]),
            )
            for row in rows
        ]
