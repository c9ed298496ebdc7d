"""Change detection and durable delivery for file synchronization.

Architecture:
    FileChangeMonitor → batches of ChangeRecord → consumer → ResilientApiClient
                                                          ↘ OffloadQueue

Components:
- **IgnoreMatcher**: Compiles default, global, project and caller ignore rules
- **ChangeClassifier**: Binary detection and content hashing per file
- **FileChangeMonitor**: Debounced, batched, hash-deduplicated directory watch
- **OffloadQueue**: Priority-ordered, JSON-persisted work queue with bounded retry
- **CircuitBreaker** / backoff helpers: Timing policy used by the API client
"""

from synclink.client.sync.classifier import (
    BINARY_EXTENSIONS,
    ChangeClassifier,
    Classification,
    is_binary_file,
    looks_binary,
)
from synclink.client.sync.ignore import (
    DEFAULT_IGNORE_PATTERNS,
    GITIGNORE_NAME,
    PROJECT_IGNORE_NAME,
    IgnoreMatcher,
    parse_ignore_lines,
    read_ignore_file,
)
from synclink.client.sync.queue import OffloadQueue
from synclink.client.sync.retry import (
    CircuitBreaker,
    CircuitState,
    compute_backoff,
    parse_retry_after,
)
from synclink.client.sync.types import (
    BatchState,
    ChangeKind,
    ChangeRecord,
    IgnoreParseError,
    MonitorEvent,
    MonitorEventType,
    MonitorListener,
    MonitorState,
    MonitorStatus,
    QueueExhaustedError,
    QueueItem,
    QueuePausedError,
    QueueProcessor,
    QueueStatus,
    SyncError,
)
from synclink.client.sync.watcher import FileChangeMonitor

__all__ = [
    # Classification
    "BINARY_EXTENSIONS",
    "ChangeClassifier",
    "Classification",
    "is_binary_file",
    "looks_binary",
    # Ignore rules
    "DEFAULT_IGNORE_PATTERNS",
    "GITIGNORE_NAME",
    "PROJECT_IGNORE_NAME",
    "IgnoreMatcher",
    "parse_ignore_lines",
    "read_ignore_file",
    # Queue
    "OffloadQueue",
    # Retry
    "CircuitBreaker",
    "CircuitState",
    "compute_backoff",
    "parse_retry_after",
    # Types
    "BatchState",
    "ChangeKind",
    "ChangeRecord",
    "IgnoreParseError",
    "MonitorEvent",
    "MonitorEventType",
    "MonitorListener",
    "MonitorState",
    "MonitorStatus",
    "QueueExhaustedError",
    "QueueItem",
    "QueuePausedError",
    "QueueProcessor",
    "QueueStatus",
    "SyncError",
    # Watcher
    "FileChangeMonitor",
]
