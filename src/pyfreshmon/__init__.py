"""pyfreshmon - telemetry ingestion core for fish storage monitoring."""

from importlib.metadata import PackageNotFoundError, version

from pyfreshmon.broadcast import Broadcaster, QueueSubscriber
from pyfreshmon.config import FreshmonConfig
from pyfreshmon.engine import TelemetryEngine
from pyfreshmon.exceptions import (
    FreshmonConfigError,
    FreshmonDecodeError,
    FreshmonError,
    FreshmonPersistenceError,
    FreshmonTransportError,
)
from pyfreshmon.ingestion.messages import MessageKind, SensorReading, TopicRouter
from pyfreshmon.persistence import InMemoryClassificationSink, PersistenceSink, SqliteClassificationSink
from pyfreshmon.session import SessionExporter, SessionSummary, SessionTracker
from pyfreshmon.state.events import (
    ClassificationCategory,
    ClassificationObservation,
    ClassificationRecord,
    LiveCacheView,
    SessionState,
)
from pyfreshmon.state.store import LiveCacheReader

try:
    __version__ = version("pyfreshmon")
except PackageNotFoundError:
    __version__ = "0+local"

__all__ = [
    "__version__",
    "Broadcaster",
    "ClassificationCategory",
    "ClassificationObservation",
    "ClassificationRecord",
    "FreshmonConfig",
    "FreshmonConfigError",
    "FreshmonDecodeError",
    "FreshmonError",
    "FreshmonPersistenceError",
    "FreshmonTransportError",
    "InMemoryClassificationSink",
    "LiveCacheReader",
    "LiveCacheView",
    "MessageKind",
    "PersistenceSink",
    "QueueSubscriber",
    "SensorReading",
    "SessionExporter",
    "SessionState",
    "SessionSummary",
    "SessionTracker",
    "SqliteClassificationSink",
    "TelemetryEngine",
    "TopicRouter",
]
