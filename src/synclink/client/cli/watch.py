"""Watch command for synclink CLI.

Commands:
- watch: Monitor the project directory and push changes as they settle

Pipeline:
    FileChangeMonitor ─batch─► OffloadQueue ─► ResilientApiClient ─► server
                                                RealtimeChannel ◄─► server
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Any

import click

from synclink.client.api import ResilientApiClient
from synclink.client.auth import AuthService
from synclink.client.cli.config import (
    build_sync_config,
    load_config,
    load_project_config,
    mark_synced,
    resolve_project_id,
)
from synclink.client.cli.sync import SYNC_QUEUE_NAME, change_to_payload, make_sync_processor
from synclink.client.credentials import CredentialStore
from synclink.client.realtime import ChannelEvent, ChannelEventType, RealtimeChannel
from synclink.client.sync import (
    ChangeKind,
    FileChangeMonitor,
    MonitorEvent,
    MonitorEventType,
    OffloadQueue,
)

logger = logging.getLogger(__name__)

_REMOTE_FILE_EVENTS = {
    ChannelEventType.FILE_CREATED: "created",
    ChannelEventType.FILE_UPDATED: "updated",
    ChannelEventType.FILE_DELETED: "deleted",
}


def _split_patterns(values: tuple[str, ...]) -> list[str]:
    return [p.strip() for value in values for p in value.split(",") if p.strip()]


class ChangeForwarder:
    """Monitor listener that queues each batch and delivers it.

    In dry-run mode batches are only printed. While the API client is
    offline or its circuit is open, changes stay queued instead of
    burning their retries; poll() delivers them once the server is back.
    """

    def __init__(
        self,
        root: Path,
        project_id: str,
        queue: OffloadQueue[dict[str, Any]] | None,
        channel: RealtimeChannel | None,
        dry_run: bool = False,
        api: ResilientApiClient | None = None,
    ) -> None:
        self._root = root
        self._project_id = project_id
        self._queue = queue
        self._channel = channel
        self._dry_run = dry_run
        self._api = api
        self._held = False

    @property
    def held(self) -> bool:
        """Whether delivery is waiting for the server to become reachable."""
        return self._held

    def __call__(self, event: MonitorEvent) -> None:
        if event.type is MonitorEventType.ERROR:
            logger.error("Watch error: %s", event.error)
            return
        if event.type is not MonitorEventType.BATCH:
            return

        click.echo(f"Detected {len(event.records)} file changes")
        if self._dry_run or self._queue is None:
            for record in event.records:
                click.echo(f"[DRY RUN] {record.kind.name}: {record.path}")
            return

        for record in event.records:
            payload = change_to_payload(self._project_id, record)
            if payload is None:
                continue
            priority = 2 if record.kind is ChangeKind.REMOVED else 1
            self._queue.enqueue("sync", payload, priority=priority)
            if self._channel is not None:
                self._channel.notify_file_change(self._project_id, record.path, payload["operation"])

        self.deliver()

    def _server_available(self) -> bool:
        if self._api is None:
            return True
        return self._api.online and not self._api.circuit_state.open

    def deliver(self) -> None:
        """Process the queue now, or hold it while the server is unreachable."""
        if self._queue is None:
            return
        if not self._server_available():
            self._hold()
            return

        self._queue.process_queue()
        if self._queue.is_processing:
            # The run already in progress picks up the new items
            return
        counts = self._queue.counts()
        if counts["pending"] or not self._server_available():
            # Paused by a lost connection
            self._hold()
            return

        self._held = False
        if counts["failed"]:
            logger.warning("%d operations failed and remain queued", counts["failed"])
        else:
            mark_synced(self._root)
            logger.info("Sync completed successfully")

    def poll(self) -> None:
        """Deliver held changes once the server is reachable again."""
        if self._held and self._server_available():
            logger.info("Server reachable again, delivering queued changes")
            self.deliver()

    def _hold(self) -> None:
        if not self._held:
            assert self._queue is not None
            logger.warning(
                "Server unreachable, keeping %d changes queued until it returns",
                self._queue.counts()["pending"],
            )
        self._held = True


def _on_channel_event(event: ChannelEvent) -> None:
    if event.type in _REMOTE_FILE_EVENTS:
        click.echo(f"Remote file {_REMOTE_FILE_EVENTS[event.type]}: {event.data.get('path')}")
    elif event.type is ChannelEventType.SYNC_REQUEST:
        click.echo("Server requested a sync")
    elif event.type is ChannelEventType.NOTIFICATION:
        click.echo(f"Notification: {event.data.get('message', event.data)}")
    elif event.type is ChannelEventType.DISCONNECTED:
        logger.warning("Realtime channel disconnected")


@click.command()
@click.option(
    "--directory",
    "-d",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project directory to watch.",
)
@click.option("--project", "-p", default=None, help="Project ID (default: from project config).")
@click.option(
    "--ignore",
    "-i",
    multiple=True,
    help="Additional patterns to ignore (comma-separated, repeatable).",
)
@click.option("--no-gitignore", is_flag=True, help="Do not use .gitignore patterns.")
@click.option("--interval", type=int, default=None, help="Batch interval in milliseconds.")
@click.option("--dry-run", is_flag=True, help="Only print changes without syncing.")
def watch(
    directory: Path,
    project: str | None,
    ignore: tuple[str, ...],
    no_gitignore: bool,
    interval: int | None,
    dry_run: bool,
) -> None:
    """Watch a project directory and sync changes to the server."""
    root = directory.resolve()
    config = load_config()
    project_config = load_project_config(root)

    project_id = resolve_project_id(project, project_config, config)
    if not project_id:
        click.echo("Error: Project is not configured. Use --project or set a default.", err=True)
        sys.exit(1)

    sync_config = build_sync_config(config, project_config)
    sync_config.watch.ignore_patterns.extend(_split_patterns(ignore))
    if no_gitignore:
        sync_config.watch.use_gitignore = False
    if interval is not None:
        sync_config.watch.batch_interval_ms = interval

    auth: AuthService | None = None
    api: ResilientApiClient | None = None
    queue: OffloadQueue[dict[str, Any]] | None = None
    channel: RealtimeChannel | None = None

    if not dry_run:
        auth = AuthService(sync_config.server, CredentialStore())
        if not auth.is_authenticated():
            auth.close()
            click.echo("Error: Authentication required. Run 'synclink login' first.", err=True)
            sys.exit(1)
        api = ResilientApiClient(sync_config.server, auth, sync_config.retry, sync_config.client)
        queue = OffloadQueue(SYNC_QUEUE_NAME, sync_config.queue)
        queue.set_processor(make_sync_processor(api))
        channel = RealtimeChannel(sync_config.server, auth)
        channel.add_listener(_on_channel_event)

    monitor = FileChangeMonitor(root, sync_config.watch)
    forwarder = ChangeForwarder(root, project_id, queue, channel, dry_run, api=api)
    monitor.add_listener(forwarder)

    stop = threading.Event()
    try:
        monitor.start()
        if channel is not None:
            channel.connect(project_id)
            channel.subscribe_to_project(project_id)
        if queue is not None:
            # Changes that failed in an earlier session get another chance
            queue.retry_all_failed()
            if queue.counts()["pending"]:
                forwarder.deliver()

        click.echo(f"Watching {root} for changes (Press Ctrl+C to stop)")
        while not stop.wait(1.0):
            forwarder.poll()
    except KeyboardInterrupt:
        click.echo("Stopping watcher...")
    finally:
        monitor.stop()
        if channel is not None:
            channel.disconnect()
        if queue is not None:
            queue.dispose()
        if api is not None:
            api.close()
        if auth is not None:
            auth.close()
