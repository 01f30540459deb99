"""Producer side of the log pipe: capture, change detection and batching delivery."""

from .capture import CaptureFilters, ExceptionHooks
from .changes import ChangeSet, SnapshotEntry, SnapshotTracker, diff
from .config import ConfigStore, MonitorConfig, TransportConfig
from .monitor import StorageMonitor
from .pipe import LogPipe
from .storage import CookieJarSource, IndexedDBInfoSource, MemoryStorage
from .transport import HttpTransport
from .types import TelemetryItem, TelemetryKind

__all__ = [
    "CaptureFilters",
    "ChangeSet",
    "ConfigStore",
    "CookieJarSource",
    "ExceptionHooks",
    "HttpTransport",
    "IndexedDBInfoSource",
    "LogPipe",
    "MemoryStorage",
    "MonitorConfig",
    "SnapshotEntry",
    "SnapshotTracker",
    "StorageMonitor",
    "TelemetryItem",
    "TelemetryKind",
    "TransportConfig",
    "diff",
]
