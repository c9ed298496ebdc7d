"""Durable offline work queue.

This module provides:
- OffloadQueue: Priority-ordered queue of QueueItem with bounded retries

Ordering when processing:
- Pending items before everything else
- Higher priority first
- Equal priorities in insertion order (a per-queue sequence number)

Persistence (JSON):
    Each named queue is one JSON file holding the full ordered item list.
    The file is rewritten wholesale (write to a temp file, then replace)
    after every structural change, after every processed batch, and on a
    periodic timer. A missing or unreadable file means an empty queue.

    Items that were PROCESSING when the process died are loaded back as
    PENDING so they run again. Processors must therefore be idempotent.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Generic, TypeVar

from synclink.client.sync.types import (
    QueueExhaustedError,
    QueueItem,
    QueuePausedError,
    QueueProcessor,
    QueueStatus,
)
from synclink.core.config import QueueConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _sort_key(item: QueueItem[Any]) -> tuple[bool, int, int]:
    return (item.status is not QueueStatus.PENDING, -item.priority, item.seq)


class OffloadQueue(Generic[T]):
    """Thread-safe durable queue processed in concurrent batches.

    Usage:
        queue: OffloadQueue[dict] = OffloadQueue("sync", QueueConfig())
        queue.set_processor(upload)
        queue.enqueue("sync", {"path": "a.txt"}, priority=5)
        queue.process_queue()
        queue.dispose()
    """

    def __init__(
        self,
        name: str,
        config: QueueConfig | None = None,
        encode: Callable[[T], Any] | None = None,
        decode: Callable[[Any], T] | None = None,
    ) -> None:
        """Initialize the queue and load any persisted items.

        Args:
            name: Queue name; the file is <storage_dir>/<name>.json.
            config: Storage location, batch size, retry and snapshot settings.
            encode: Converts a payload to JSON-compatible data (default: as-is).
            decode: Converts persisted data back to a payload (default: as-is).
        """
        self._config = config or QueueConfig()
        self._name = name
        self._encode = encode
        self._decode = decode

        self._storage_dir = Path(self._config.storage_dir)
        self._queue_file = self._storage_dir / f"{name}.json"
        self._storage_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._items: list[QueueItem[T]] = []
        self._processor: QueueProcessor[T] | None = None
        self._processing = False
        self._paused = False
        self._disposed = False
        self._persist_timer: threading.Timer | None = None

        self._load()
        self._seq = itertools.count(max((item.seq for item in self._items), default=-1) + 1)
        self._schedule_persistence()

    @property
    def name(self) -> str:
        """Queue name."""
        return self._name

    @property
    def queue_file(self) -> Path:
        """Path of the persistence file."""
        return self._queue_file

    @property
    def is_processing(self) -> bool:
        """Check if a process_queue() run is in progress."""
        return self._processing

    # === Persistence ===

    def _load(self) -> None:
        """Load items from disk. Any problem means starting empty."""
        if not self._queue_file.exists():
            return
        try:
            raw = json.loads(self._queue_file.read_text(encoding="utf-8"))
            items = [QueueItem.from_dict(entry, self._decode) for entry in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load queue from %s: %s", self._queue_file, e)
            return

        for item in items:
            if item.status is QueueStatus.PROCESSING:
                item.status = QueueStatus.PENDING
        self._items = items
        logger.debug("Loaded %d items from queue file %s", len(items), self._queue_file)

    def _save(self) -> None:
        """Write a full snapshot of the queue."""
        with self._lock:
            data = [item.to_dict(self._encode) for item in self._items]
        tmp_file = self._queue_file.with_suffix(".json.tmp")
        try:
            tmp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_file, self._queue_file)
            logger.debug("Saved %d items to queue file %s", len(data), self._queue_file)
        except OSError as e:
            logger.error("Failed to save queue to %s: %s", self._queue_file, e)

    def _schedule_persistence(self) -> None:
        if self._disposed:
            return
        self._persist_timer = threading.Timer(self._config.persist_interval, self._periodic_save)
        self._persist_timer.daemon = True
        self._persist_timer.start()

    def _periodic_save(self) -> None:
        self._save()
        with self._lock:
            self._schedule_persistence()

    # === Mutations ===

    def enqueue(self, item_type: str, payload: T, priority: int = 1) -> QueueItem[T]:
        """Add an item and persist immediately.

        Args:
            item_type: Caller-defined tag.
            payload: Work payload.
            priority: Higher numbers are processed first.

        Returns:
            The new pending item.
        """
        with self._lock:
            item = QueueItem(
                type=item_type, payload=payload, priority=priority, seq=next(self._seq)
            )
            self._items.append(item)
        logger.debug("Enqueued item %s of type %s with priority %d", item.id, item_type, priority)
        self._save()
        return item

    def remove_item(self, item_id: str) -> bool:
        """Remove an item by id. Returns False if not found."""
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.id != item_id]
            removed = len(self._items) < before
        if removed:
            logger.debug("Removed item %s from queue", item_id)
            self._save()
        return removed

    def clear(self) -> None:
        """Remove every item."""
        with self._lock:
            self._items = []
        logger.debug("Cleared all items from queue")
        self._save()

    def clear_failed(self) -> int:
        """Remove failed items. Returns how many were removed."""
        with self._lock:
            before = len(self._items)
            self._items = [i for i in self._items if i.status is not QueueStatus.FAILED]
            removed = before - len(self._items)
        if removed:
            logger.debug("Cleared %d failed items from queue", removed)
            self._save()
        return removed

    def retry_item(self, item_id: str) -> bool:
        """Reset a failed item to pending. Returns False if not found or not failed."""
        with self._lock:
            item = self._find(item_id)
            if item is None or item.status is not QueueStatus.FAILED:
                return False
            item.status = QueueStatus.PENDING
            item.last_error = None
        logger.debug("Reset failed item %s for retry", item_id)
        self._save()
        return True

    def retry_all_failed(self) -> int:
        """Reset every failed item to pending. Returns how many were reset."""
        count = 0
        with self._lock:
            for item in self._items:
                if item.status is QueueStatus.FAILED:
                    item.status = QueueStatus.PENDING
                    item.last_error = None
                    count += 1
        if count:
            logger.debug("Reset %d failed items for retry", count)
            self._save()
        return count

    # === Inspection ===

    def _find(self, item_id: str) -> QueueItem[T] | None:
        return next((item for item in self._items if item.id == item_id), None)

    def get_item(self, item_id: str) -> QueueItem[T] | None:
        """Get an item by id."""
        with self._lock:
            return self._find(item_id)

    def items(self) -> list[QueueItem[T]]:
        """Get all items in current order."""
        with self._lock:
            return list(self._items)

    def items_by_type(self, item_type: str) -> list[QueueItem[T]]:
        """Get items with the given type tag."""
        with self._lock:
            return [item for item in self._items if item.type == item_type]

    def counts(self) -> dict[str, int]:
        """Count items by status."""
        with self._lock:
            counts = {"total": len(self._items), "pending": 0, "processing": 0, "failed": 0}
            for item in self._items:
                counts[item.status.value] += 1
            return counts

    def __len__(self) -> int:
        """Get number of items."""
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[QueueItem[T]]:
        """Iterate over a snapshot of the items."""
        return iter(self.items())

    # === Processing ===

    def set_processor(self, processor: QueueProcessor[T]) -> None:
        """Register the handler called for each item.

        The handler raises to signal failure; returning normally removes
        the item from the queue.
        """
        self._processor = processor

    def process_queue(self) -> None:
        """Process pending items until none are left.

        Returns immediately if no processor is set or another run is in
        progress. Items of a batch run concurrently; the queue is saved
        after each batch. A processor raising QueuePausedError ends the
        run early, leaving its item pending.
        """
        with self._lock:
            if self._processing or self._processor is None:
                return
            self._processing = True
            self._paused = False

        try:
            with ThreadPoolExecutor(
                max_workers=self._config.batch_size,
                thread_name_prefix=f"synclink-queue-{self._name}",
            ) as executor:
                while True:
                    with self._lock:
                        if self._paused:
                            break
                        # Items enqueued during the run take their place by priority
                        self._items.sort(key=_sort_key)
                        batch = [i for i in self._items if i.status is QueueStatus.PENDING]
                        batch = batch[: self._config.batch_size]
                        for item in batch:
                            item.status = QueueStatus.PROCESSING
                    if not batch:
                        break

                    logger.debug("Processing batch of %d queue items", len(batch))
                    list(executor.map(self._process_item, batch))
                    self._save()
        finally:
            with self._lock:
                self._processing = False

    def _process_item(self, item: QueueItem[T]) -> None:
        processor = self._processor
        assert processor is not None
        try:
            processor(item)
        except QueuePausedError as e:
            with self._lock:
                item.status = QueueStatus.PENDING
                self._paused = True
            logger.info("Queue %s paused, item %s stays pending: %s", self._name, item.id, e)
            return
        except Exception as e:
            with self._lock:
                item.retry_count += 1
                if item.retry_count >= self._config.max_retries:
                    exhausted = QueueExhaustedError(item.id, item.retry_count, e)
                    item.status = QueueStatus.FAILED
                    item.last_error = str(e)
                    logger.error("Queue item %s failed: %s", item.id, exhausted)
                else:
                    item.status = QueueStatus.PENDING
                    logger.debug(
                        "Queue item %s failed, will retry (%d/%d): %s",
                        item.id,
                        item.retry_count,
                        self._config.max_retries,
                        e,
                    )
            return

        with self._lock:
            self._items = [i for i in self._items if i.id != item.id]

    # === Shutdown ===

    def dispose(self) -> None:
        """Cancel the snapshot timer and save one last time."""
        with self._lock:
            self._disposed = True
            if self._persist_timer:
                self._persist_timer.cancel()
                self._persist_timer = None
        self._save()

    def __enter__(self) -> OffloadQueue[T]:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.dispose()
