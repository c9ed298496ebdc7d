"""Shared types and dataclasses for the sync pipeline.

This module provides:
- SyncError, IgnoreParseError, QueueExhaustedError: Exception classes
- ChangeKind, ChangeRecord: Change detection output
- MonitorState, BatchState, MonitorEventType, MonitorEvent, MonitorStatus:
  FileChangeMonitor state and notifications
- QueueStatus, QueueItem: Offline queue records
- Type aliases for callbacks
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class SyncError(Exception):
    """Base exception for sync errors."""


class IgnoreParseError(SyncError):
    """An ignore file exists but could not be read or decoded."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot parse ignore file {path}: {reason}")


class QueueExhaustedError(SyncError):
    """A queue item failed max_retries times and was marked failed."""

    def __init__(self, item_id: str, attempts: int, cause: BaseException) -> None:
        self.item_id = item_id
        self.attempts = attempts
        super().__init__(f"{cause} (gave up after {attempts} attempts)")


class QueuePausedError(SyncError):
    """Raised by a processor when delivery cannot happen right now.

    The item goes back to pending without using up a retry, and the
    current process_queue() run stops after its batch.
    """


# === Change detection ===


class ChangeKind(Enum):
    """Kind of change for a path, used for raw events and emitted records."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class ChangeRecord:
    """A settled, content-addressed change for one path.

    Attributes:
        path: POSIX path relative to the watched root.
        kind: What happened to the path.
        content: Raw file bytes (None for removals and streamed large files).
        content_hash: SHA-256 of the content (None for removals).
        is_binary: Whether the file was classified as binary.
    """

    path: str
    kind: ChangeKind
    content: bytes | None = None
    content_hash: str | None = None
    is_binary: bool = False

    @property
    def text(self) -> str | None:
        """Decoded content for text files."""
        if self.content is None or self.is_binary:
            return None
        return self.content.decode("utf-8", errors="replace")


class MonitorState(Enum):
    """Lifecycle of a FileChangeMonitor."""

    STOPPED = "stopped"
    STARTING = "starting"
    WATCHING = "watching"
    PAUSED = "paused"
    STOPPING = "stopping"


class BatchState(Enum):
    """Scheduling state of the monitor's batch pass."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


class MonitorEventType(Enum):
    """Notifications emitted by FileChangeMonitor."""

    READY = "ready"
    BATCH = "batch"
    ERROR = "error"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"


@dataclass
class MonitorEvent:
    """A monitor notification. `records` is set for BATCH, `error` for ERROR."""

    type: MonitorEventType
    records: list[ChangeRecord] = field(default_factory=list)
    error: BaseException | None = None


@dataclass
class MonitorStatus:
    """Snapshot of a monitor's state."""

    active: bool
    paused: bool
    root: str
    ignore_patterns: list[str]
    queue_size: int
    cached_files: int


MonitorListener = Callable[[MonitorEvent], None]


# === Offline queue ===


class QueueStatus(Enum):
    """Processing status of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


@dataclass
class QueueItem(Generic[T]):
    """A unit of durable work in an OffloadQueue.

    Attributes:
        id: Unique identifier.
        type: Caller-defined tag (e.g., "sync").
        payload: The work itself.
        enqueued_at: Unix timestamp of enqueue.
        priority: Higher runs first.
        retry_count: Failed attempts so far.
        status: Processing status.
        last_error: Message of the last failure that marked the item failed.
        seq: Insertion sequence within its queue; orders equal priorities.
    """

    type: str
    payload: T
    priority: int = 1
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0
    status: QueueStatus = QueueStatus.PENDING
    last_error: str | None = None
    seq: int = 0

    def to_dict(self, encode: Callable[[T], Any] | None = None) -> dict[str, Any]:
        """Serialize for persistence."""
        return {
            "id": self.id,
            "type": self.type,
            "payload": encode(self.payload) if encode else self.payload,
            "enqueued_at": self.enqueued_at,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "status": self.status.value,
            "last_error": self.last_error,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        decode: Callable[[Any], T] | None = None,
    ) -> QueueItem[T]:
        """Create from a persisted dictionary."""
        return cls(
            id=data["id"],
            type=data["type"],
            payload=decode(data["payload"]) if decode else data["payload"],
            enqueued_at=float(data["enqueued_at"]),
            priority=int(data["priority"]),
            retry_count=int(data.get("retry_count", 0)),
            status=QueueStatus(data.get("status", QueueStatus.PENDING.value)),
            last_error=data.get("last_error"),
            seq=int(data.get("seq", 0)),
        )


QueueProcessor = Callable[[QueueItem[T]], None]
