"""File system monitor with debouncing, batching and content deduplication.

This module provides:
- FileChangeMonitor: Watches a project tree using watchdog and emits
  batches of ChangeRecord through MonitorEvent listeners
- Debouncing: One shared timer, restarted by every raw event (500ms)
- Batching: Once the debounce settles, a batch pass runs after 2s
- Deduplication: Files whose content hash did not change are not emitted

Batch passes follow a small state machine (IDLE -> SCHEDULED -> RUNNING).
Only one pass runs at a time; events arriving during a pass are kept for
the next one, which is scheduled when the running pass ends.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from synclink.client.sync.classifier import ChangeClassifier, Classification
from synclink.client.sync.ignore import IgnoreMatcher
from synclink.client.sync.types import (
    BatchState,
    ChangeKind,
    ChangeRecord,
    MonitorEvent,
    MonitorEventType,
    MonitorListener,
    MonitorState,
    MonitorStatus,
)
from synclink.core.config import WatchConfig

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)


class _MonitorEventHandler(FileSystemEventHandler):
    """Forwards watchdog file events to the monitor. Directory events are dropped."""

    def __init__(self, monitor: FileChangeMonitor) -> None:
        super().__init__()
        self._monitor = monitor

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        if not event.is_directory:
            self._monitor._handle_raw_event(event.src_path, ChangeKind.ADDED)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        if not event.is_directory:
            self._monitor._handle_raw_event(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        if not event.is_directory:
            self._monitor._handle_raw_event(event.src_path, ChangeKind.REMOVED)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event as a removal plus an addition."""
        if not event.is_directory:
            self._monitor._handle_raw_event(event.src_path, ChangeKind.REMOVED)
            self._monitor._handle_raw_event(event.dest_path, ChangeKind.ADDED)


class FileChangeMonitor:
    """Watches a directory tree and emits deduplicated change batches.

    Usage:
        monitor = FileChangeMonitor(project_root, WatchConfig())
        monitor.add_listener(handle_event)
        monitor.start()
        # ... MonitorEvent(BATCH, records=[...]) delivered to handle_event
        monitor.stop()
    """

    def __init__(
        self,
        root: Path,
        config: WatchConfig | None = None,
        classifier: ChangeClassifier | None = None,
        home: Path | None = None,
        max_workers: int = 8,
    ) -> None:
        """Initialize the monitor.

        Args:
            root: Directory to watch.
            config: Debounce/batch timings and ignore settings.
            classifier: Hashing strategy (default ChangeClassifier()).
            home: Directory holding global ignore files (default: home dir).
            max_workers: Threads used to classify files within a batch.
        """
        self._root = Path(root).resolve()
        if not self._root.is_dir():
            raise ValueError(f"Watch path must be a directory: {root}")

        self._config = config or WatchConfig()
        self._classifier = classifier or ChangeClassifier()
        self._home = home
        self._max_workers = max_workers
        self._extra_patterns: list[str] = list(self._config.ignore_patterns)

        self._lock = threading.RLock()
        # Serializes batch passes (timer thread vs. flush/stop)
        self._pass_lock = threading.Lock()

        self._state = MonitorState.STOPPED
        self._batch_state = BatchState.IDLE
        self._matcher: IgnoreMatcher | None = None
        self._pending: dict[str, ChangeKind] = {}
        self._known_hashes: dict[str, str] = {}
        self._debounce_timer: threading.Timer | None = None
        self._batch_timer: threading.Timer | None = None

        self._listeners: list[MonitorListener] = []
        self._observer: BaseObserver | None = None
        self._executor: ThreadPoolExecutor | None = None

    # === Properties ===

    @property
    def root(self) -> Path:
        """Get the watched directory path."""
        return self._root

    @property
    def state(self) -> MonitorState:
        """Current lifecycle state."""
        return self._state

    @property
    def batch_state(self) -> BatchState:
        """Current batch scheduling state."""
        return self._batch_state

    @property
    def is_running(self) -> bool:
        """Check if the monitor is watching (paused counts as running)."""
        return self._state in (MonitorState.WATCHING, MonitorState.PAUSED)

    @property
    def paused(self) -> bool:
        """Check if raw events are currently discarded."""
        return self._state is MonitorState.PAUSED

    @property
    def known_hashes(self) -> dict[str, str]:
        """Copy of the last accepted hash per path."""
        with self._lock:
            return dict(self._known_hashes)

    # === Listeners ===

    def add_listener(self, listener: MonitorListener) -> None:
        """Register a callback for monitor events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: MonitorListener) -> None:
        """Unregister a callback."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: MonitorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Monitor listener failed on %s", event.type.name)

    # === Lifecycle ===

    def start(self) -> None:
        """Compile ignore rules and start watching.

        Returns once the observer is running. Files that already exist are
        not reported.
        """
        with self._lock:
            if self._state is not MonitorState.STOPPED:
                logger.warning("File monitor already started")
                return
            self._state = MonitorState.STARTING

        logger.info("Starting file monitor in %s", self._root)
        try:
            matcher = IgnoreMatcher.compile(
                self._root,
                self._extra_patterns,
                use_gitignore=self._config.use_gitignore,
                use_project_ignore=self._config.use_project_ignore,
                home=self._home,
            )
            logger.debug("Ignoring patterns: %s", ", ".join(matcher.patterns))

            executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="synclink-classify",
            )
            observer = Observer()
            observer.schedule(_MonitorEventHandler(self), str(self._root), recursive=True)
            observer.start()
        except Exception:
            with self._lock:
                self._state = MonitorState.STOPPED
            raise

        with self._lock:
            self._matcher = matcher
            self._executor = executor
            self._observer = observer
            self._state = MonitorState.WATCHING

        logger.info("File monitor ready")
        self._emit(MonitorEvent(MonitorEventType.READY))

    def stop(self) -> None:
        """Flush pending changes, release the observer and clear all state."""
        with self._lock:
            if self._state in (MonitorState.STOPPED, MonitorState.STOPPING):
                logger.debug("File monitor not running")
                return
            self._state = MonitorState.STOPPING
            self._cancel_timers()

        logger.info("Stopping file monitor")

        # Waits for an in-flight pass, then processes what is left
        records = self._run_pass()
        if records:
            self._emit(MonitorEvent(MonitorEventType.BATCH, records=records))

        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        if self._executor:
            self._executor.shutdown(wait=True)

        with self._lock:
            self._observer = None
            self._executor = None
            self._matcher = None
            self._pending.clear()
            self._known_hashes.clear()
            self._batch_state = BatchState.IDLE
            self._state = MonitorState.STOPPED

        logger.info("File monitor stopped")
        self._emit(MonitorEvent(MonitorEventType.STOPPED))

    def pause(self) -> None:
        """Discard raw events until resume(). Changes made meanwhile are not detected."""
        with self._lock:
            if self._state is not MonitorState.WATCHING:
                return
            self._state = MonitorState.PAUSED
        logger.info("File monitor paused")
        self._emit(MonitorEvent(MonitorEventType.PAUSED))

    def resume(self) -> None:
        """Accept raw events again."""
        with self._lock:
            if self._state is not MonitorState.PAUSED:
                return
            self._state = MonitorState.WATCHING
        logger.info("File monitor resumed")
        self._emit(MonitorEvent(MonitorEventType.RESUMED))

    def add_ignore_pattern(self, pattern: str) -> bool:
        """Add an ignore pattern to the live matcher.

        Pending changes that now match are dropped.

        Returns:
            True if the pattern was added.
        """
        with self._lock:
            if pattern in self._extra_patterns:
                return False
            self._extra_patterns.append(pattern)
            if self._matcher is None:
                return True
            if not self._matcher.add_pattern(pattern):
                return False
            for rel in [p for p in self._pending if self._matcher.matches(p)]:
                del self._pending[rel]
        logger.debug("Added ignore pattern: %s", pattern)
        return True

    def status(self) -> MonitorStatus:
        """Get a snapshot of the monitor state."""
        with self._lock:
            patterns = self._matcher.patterns if self._matcher else list(self._extra_patterns)
            return MonitorStatus(
                active=self.is_running,
                paused=self.paused,
                root=str(self._root),
                ignore_patterns=patterns,
                queue_size=len(self._pending),
                cached_files=len(self._known_hashes),
            )

    def flush(self) -> list[ChangeRecord]:
        """Run a batch pass now and emit its records.

        Returns:
            The emitted records (empty if nothing changed).
        """
        records = self._run_pass()
        if records:
            self._emit(MonitorEvent(MonitorEventType.BATCH, records=records))
        return records

    # === Raw events and timers ===

    def _handle_raw_event(self, src_path: str | bytes, kind: ChangeKind) -> None:
        """Record a raw event and restart the debounce timer."""
        path = Path(os.fsdecode(src_path))

        with self._lock:
            if self._state is not MonitorState.WATCHING or self._matcher is None:
                return
            rel = self._matcher.relative(path)
            if rel is None or rel in ("", "."):
                return
            if self._matcher.matches(rel, is_dir=False):
                return

            logger.debug("File %s: %s", kind.value, rel)
            self._coalesce(rel, kind)
            self._restart_debounce()

    def _coalesce(self, rel: str, kind: ChangeKind) -> None:
        """Merge a raw event into the pending entry for its path."""
        previous = self._pending.get(rel)

        if previous is ChangeKind.ADDED:
            if kind is ChangeKind.REMOVED:
                if rel not in self._known_hashes:
                    # Created and deleted within one window: nothing happened
                    del self._pending[rel]
                    logger.debug("Net-cancelled add/remove for %s", rel)
                else:
                    self._pending[rel] = ChangeKind.REMOVED
            return

        if previous is ChangeKind.REMOVED and kind is not ChangeKind.REMOVED:
            # Replaced in place
            self._pending[rel] = ChangeKind.MODIFIED
            return

        self._pending[rel] = kind

    def _restart_debounce(self) -> None:
        if self._debounce_timer:
            self._debounce_timer.cancel()
        self._debounce_timer = threading.Timer(
            self._config.debounce_ms / 1000, self._on_debounce_elapsed
        )
        self._debounce_timer.daemon = True
        self._debounce_timer.start()

    def _on_debounce_elapsed(self) -> None:
        with self._lock:
            if self._debounce_timer is not threading.current_thread():
                # Superseded by a newer timer, or cancelled by stop()
                return
            self._debounce_timer = None
            if not self.is_running or not self._pending:
                return
            # SCHEDULED: already waiting; RUNNING: the pass reschedules itself
            if self._batch_state is BatchState.IDLE:
                self._schedule_batch()

    def _schedule_batch(self) -> None:
        self._batch_state = BatchState.SCHEDULED
        self._batch_timer = threading.Timer(
            self._config.batch_interval_ms / 1000, self._on_batch_timer
        )
        self._batch_timer.daemon = True
        self._batch_timer.start()

    def _on_batch_timer(self) -> None:
        records = self._run_pass()
        if records:
            logger.debug("Emitting batch of %d changes", len(records))
            self._emit(MonitorEvent(MonitorEventType.BATCH, records=records))

    def _cancel_timers(self) -> None:
        for timer in (self._debounce_timer, self._batch_timer):
            if timer:
                timer.cancel()
        self._debounce_timer = None
        self._batch_timer = None

    # === Batch pass ===

    def _run_pass(self) -> list[ChangeRecord]:
        """Classify pending paths and return accepted records."""
        with self._pass_lock:
            with self._lock:
                if self._batch_timer and self._batch_timer is not threading.current_thread():
                    self._batch_timer.cancel()
                self._batch_timer = None
                if not self._pending:
                    self._batch_state = BatchState.IDLE
                    return []
                snapshot = self._pending
                self._pending = {}
                known = dict(self._known_hashes)
                self._batch_state = BatchState.RUNNING

            logger.debug("Processing %d file changes", len(snapshot))
            try:
                records = self._build_records(snapshot, known)
            except Exception as e:
                logger.exception("Batch pass failed")
                with self._lock:
                    self._batch_state = BatchState.IDLE
                self._emit(MonitorEvent(MonitorEventType.ERROR, error=e))
                return []

            with self._lock:
                for record in records:
                    if record.kind is ChangeKind.REMOVED:
                        self._known_hashes.pop(record.path, None)
                    elif record.content_hash is not None:
                        self._known_hashes[record.path] = record.content_hash

                if self._pending and self.is_running and self._debounce_timer is None:
                    self._schedule_batch()
                else:
                    self._batch_state = BatchState.IDLE

            return records

    def _build_records(
        self,
        snapshot: dict[str, ChangeKind],
        known: dict[str, str],
    ) -> list[ChangeRecord]:
        to_classify = [rel for rel, kind in snapshot.items() if kind is not ChangeKind.REMOVED]
        if self._executor is not None:
            classified = dict(zip(to_classify, self._executor.map(self._classify, to_classify), strict=True))
        else:
            classified = {rel: self._classify(rel) for rel in to_classify}

        records: list[ChangeRecord] = []
        for rel, kind in snapshot.items():
            if kind is ChangeKind.REMOVED:
                records.append(ChangeRecord(path=rel, kind=kind))
                continue

            result = classified[rel]
            if result is None:
                continue
            if known.get(rel) == result.hash:
                logger.debug("Content unchanged, skipping %s", rel)
                continue
            records.append(
                ChangeRecord(
                    path=rel,
                    kind=kind,
                    content=result.content,
                    content_hash=result.hash,
                    is_binary=result.is_binary,
                )
            )
        return records

    def _classify(self, rel: str) -> Classification | None:
        try:
            return self._classifier.classify(self._root / rel)
        except OSError as e:
            logger.debug("Skipping unreadable file %s: %s", rel, e)
            return None

    # === Context manager ===

    def __enter__(self) -> FileChangeMonitor:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
