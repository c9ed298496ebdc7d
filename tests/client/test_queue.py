"""Tests for the durable offline queue."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from synclink.client.sync.queue import OffloadQueue
from synclink.client.sync.types import QueueItem, QueuePausedError, QueueStatus
from synclink.core.config import QueueConfig


def make_config(tmp_path: Path, **overrides: Any) -> QueueConfig:
    """Create a QueueConfig with a long snapshot interval."""
    values: dict[str, Any] = {"storage_dir": tmp_path / "queues", "persist_interval": 3600.0}
    values.update(overrides)
    return QueueConfig(**values)


@pytest.fixture
def config(tmp_path: Path) -> QueueConfig:
    return make_config(tmp_path)


@pytest.fixture
def queue(config: QueueConfig) -> Iterator[OffloadQueue[dict[str, Any]]]:
    q: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
    yield q
    q.dispose()


class TestEnqueue:
    """Tests for adding and inspecting items."""

    def test_enqueue_creates_pending_item(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        item = queue.enqueue("sync", {"path": "a.txt"}, priority=3)

        assert item.status is QueueStatus.PENDING
        assert item.retry_count == 0
        assert item.priority == 3
        assert queue.get_item(item.id) is item
        assert len(queue) == 1

    def test_enqueue_persists_immediately(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        item = queue.enqueue("sync", {"path": "a.txt"})

        data = json.loads(queue.queue_file.read_text())
        assert [entry["id"] for entry in data] == [item.id]
        assert data[0]["payload"] == {"path": "a.txt"}
        assert data[0]["status"] == "pending"

    def test_items_by_type(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        queue.enqueue("sync", {"n": 1})
        queue.enqueue("prompt", {"n": 2})

        assert [i.payload["n"] for i in queue.items_by_type("prompt")] == [2]

    def test_counts(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        queue.enqueue("sync", {"n": 1})
        queue.enqueue("sync", {"n": 2})

        assert queue.counts() == {"total": 2, "pending": 2, "processing": 0, "failed": 0}

    def test_remove_and_clear(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        first = queue.enqueue("sync", {"n": 1})
        queue.enqueue("sync", {"n": 2})

        assert queue.remove_item(first.id) is True
        assert queue.remove_item(first.id) is False
        assert len(queue) == 1

        queue.clear()
        assert len(queue) == 0
        assert json.loads(queue.queue_file.read_text()) == []


class TestProcessing:
    """Tests for process_queue ordering and retries."""

    def test_priority_then_insertion_order(self, tmp_path: Path) -> None:
        """Two priority-5 items run before a priority-1 item, in insertion order."""
        config = make_config(tmp_path, batch_size=1)
        queue: OffloadQueue[str] = OffloadQueue("order", config)
        low = queue.enqueue("sync", "low", priority=1)
        first = queue.enqueue("sync", "first", priority=5)
        second = queue.enqueue("sync", "second", priority=5)
        # Wall clock stepped backwards between the two enqueues
        low.enqueued_at, first.enqueued_at, second.enqueued_at = 3.0, 2.0, 1.0

        seen: list[str] = []
        queue.set_processor(lambda item: seen.append(item.payload))
        queue.process_queue()
        queue.dispose()

        assert seen == ["first", "second", "low"]
        assert len(queue) == 0

    def test_items_enqueued_during_run_sorted_by_priority(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, batch_size=1)
        queue: OffloadQueue[str] = OffloadQueue("resort", config)
        queue.enqueue("sync", "first", priority=5)
        queue.enqueue("sync", "low", priority=1)

        seen: list[str] = []

        def process(item: QueueItem[str]) -> None:
            seen.append(item.payload)
            if item.payload == "first":
                queue.enqueue("sync", "urgent", priority=9)

        queue.set_processor(process)
        queue.process_queue()
        queue.dispose()

        assert seen == ["first", "urgent", "low"]

    def test_success_removes_item(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        queue.enqueue("sync", {"n": 1})
        queue.set_processor(lambda item: None)

        queue.process_queue()

        assert len(queue) == 0
        assert json.loads(queue.queue_file.read_text()) == []

    def test_no_processor_is_noop(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        queue.enqueue("sync", {"n": 1})

        queue.process_queue()

        assert queue.counts()["pending"] == 1

    def test_failures_exhaust_retries(self, tmp_path: Path) -> None:
        """After max_retries failures the item is failed with the last error."""
        config = make_config(tmp_path, max_retries=3)
        queue: OffloadQueue[str] = OffloadQueue("retries", config)
        item = queue.enqueue("sync", "boom")
        calls: list[str] = []

        def fail(item: QueueItem[str]) -> None:
            calls.append(item.id)
            raise RuntimeError("upload refused")

        queue.set_processor(fail)
        queue.process_queue()
        queue.dispose()

        assert len(calls) == 3
        stored = queue.get_item(item.id)
        assert stored is not None
        assert stored.status is QueueStatus.FAILED
        assert stored.retry_count == 3
        assert stored.last_error == "upload refused"

    def test_failed_items_are_not_reprocessed(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, max_retries=1)
        queue: OffloadQueue[str] = OffloadQueue("failed", config)
        queue.enqueue("sync", "boom")
        calls: list[str] = []

        def fail(item: QueueItem[str]) -> None:
            calls.append(item.payload)
            raise RuntimeError("nope")

        queue.set_processor(fail)
        queue.process_queue()
        queue.process_queue()
        queue.dispose()

        assert calls == ["boom"]

    def test_transient_failure_then_success(self, queue: OffloadQueue[dict[str, Any]]) -> None:
        item = queue.enqueue("sync", {"n": 1})
        attempts: list[int] = []

        def flaky(item: QueueItem[dict[str, Any]]) -> None:
            attempts.append(item.retry_count)
            if len(attempts) < 2:
                raise ConnectionError("offline")

        queue.set_processor(flaky)
        queue.process_queue()

        assert attempts == [0, 1]
        assert queue.get_item(item.id) is None

    def test_pause_keeps_items_pending(self, tmp_path: Path) -> None:
        """A paused run stops without spending retries on the remaining items."""
        config = make_config(tmp_path, batch_size=1, max_retries=1)
        queue: OffloadQueue[str] = OffloadQueue("paused", config)
        queue.enqueue("sync", "a")
        queue.enqueue("sync", "b")
        calls: list[str] = []

        def unreachable(item: QueueItem[str]) -> None:
            calls.append(item.payload)
            raise QueuePausedError("server unreachable")

        queue.set_processor(unreachable)
        queue.process_queue()

        assert calls == ["a"]
        assert queue.counts() == {"total": 2, "pending": 2, "processing": 0, "failed": 0}
        assert [item.retry_count for item in queue.items()] == [0, 0]

        queue.set_processor(lambda item: calls.append(item.payload))
        queue.process_queue()
        queue.dispose()

        assert calls == ["a", "a", "b"]
        assert len(queue) == 0

    def test_batch_runs_concurrently(self, tmp_path: Path) -> None:
        """Items of one batch are handed to the processor at the same time."""
        config = make_config(tmp_path, batch_size=2)
        queue: OffloadQueue[int] = OffloadQueue("concurrent", config)
        queue.enqueue("sync", 1)
        queue.enqueue("sync", 2)
        barrier = threading.Barrier(2, timeout=5.0)

        queue.set_processor(lambda item: barrier.wait())
        queue.process_queue()
        queue.dispose()

        assert len(queue) == 0

    def test_retry_failed(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, max_retries=1)
        queue: OffloadQueue[str] = OffloadQueue("retry", config)
        a = queue.enqueue("sync", "a")
        b = queue.enqueue("sync", "b")

        def fail(item: QueueItem[str]) -> None:
            raise RuntimeError("nope")

        queue.set_processor(fail)
        queue.process_queue()
        assert queue.counts()["failed"] == 2

        assert queue.retry_item(a.id) is True
        assert queue.retry_item(a.id) is False
        assert queue.get_item(a.id).status is QueueStatus.PENDING  # type: ignore[union-attr]
        assert queue.get_item(a.id).last_error is None  # type: ignore[union-attr]

        assert queue.retry_all_failed() == 1
        assert queue.get_item(b.id).status is QueueStatus.PENDING  # type: ignore[union-attr]

        queue.process_queue()
        assert queue.clear_failed() == 2
        assert len(queue) == 0
        queue.dispose()


class TestPersistence:
    """Tests for loading and saving the queue file."""

    def test_reload_preserves_items(self, config: QueueConfig) -> None:
        queue: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
        item = queue.enqueue("sync", {"path": "a.txt"}, priority=4)
        queue.dispose()

        reloaded: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
        loaded = reloaded.items()
        reloaded.dispose()

        assert len(loaded) == 1
        assert loaded[0].id == item.id
        assert loaded[0].priority == 4
        assert loaded[0].payload == {"path": "a.txt"}

    def test_insertion_sequence_continues_after_reload(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, batch_size=1)
        queue: OffloadQueue[str] = OffloadQueue("sync", config)
        queue.enqueue("sync", "a")
        queue.enqueue("sync", "b")
        queue.dispose()

        reloaded: OffloadQueue[str] = OffloadQueue("sync", config)
        c = reloaded.enqueue("sync", "c")
        seen: list[str] = []
        reloaded.set_processor(lambda item: seen.append(item.payload))
        reloaded.process_queue()
        reloaded.dispose()

        assert c.seq == 2
        assert seen == ["a", "b", "c"]

    def test_processing_items_reset_on_load(self, config: QueueConfig) -> None:
        """Items interrupted mid-processing run again after a restart."""
        item = QueueItem(type="sync", payload={"n": 1}, status=QueueStatus.PROCESSING)
        config.storage_dir.mkdir(parents=True)
        (config.storage_dir / "sync.json").write_text(json.dumps([item.to_dict()]))

        queue: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
        loaded = queue.get_item(item.id)
        queue.dispose()

        assert loaded is not None
        assert loaded.status is QueueStatus.PENDING

    def test_corrupt_file_starts_empty(self, config: QueueConfig) -> None:
        config.storage_dir.mkdir(parents=True)
        (config.storage_dir / "sync.json").write_text("{not json")

        queue: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
        size = len(queue)
        queue.dispose()

        assert size == 0

    def test_encode_decode_payloads(self, config: QueueConfig) -> None:
        queue: OffloadQueue[tuple[str, int]] = OffloadQueue(
            "tuples", config, encode=list, decode=tuple
        )
        queue.enqueue("sync", ("a.txt", 3))
        queue.dispose()

        reloaded: OffloadQueue[tuple[str, int]] = OffloadQueue(
            "tuples", config, encode=list, decode=tuple
        )
        payloads = [item.payload for item in reloaded]
        reloaded.dispose()

        assert payloads == [("a.txt", 3)]

    def test_dispose_saves_state(self, config: QueueConfig) -> None:
        """Changes not yet saved are written by dispose()."""
        queue: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
        item = queue.enqueue("sync", {"n": 1})
        item.retry_count = 2
        queue.dispose()

        data = json.loads(queue.queue_file.read_text())
        assert data[0]["retry_count"] == 2

    def test_periodic_snapshot(self, tmp_path: Path) -> None:
        config = make_config(tmp_path, persist_interval=0.05)
        queue: OffloadQueue[dict[str, Any]] = OffloadQueue("sync", config)
        item = queue.enqueue("sync", {"n": 1})
        item.retry_count = 4
        try:
            deadline = time.monotonic() + 5.0
            while time.monotonic() < deadline:
                data = json.loads(queue.queue_file.read_text())
                if data[0]["retry_count"] == 4:
                    break
                time.sleep(0.02)
            assert data[0]["retry_count"] == 4
        finally:
            queue.dispose()
