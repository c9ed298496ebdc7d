"""Sync command for synclink CLI.

Commands:
- sync: Deliver queued offline operations, then ask the server to sync

Also provides the offline-queue plumbing shared with the watch command:
change_to_payload() turns a ChangeRecord into a queue payload and
make_sync_processor() delivers such payloads through the API client.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click

from synclink.client.api import APIError, CircuitOpenError, NetworkError, ResilientApiClient
from synclink.client.auth import AuthService
from synclink.client.cli.config import (
    build_sync_config,
    load_config,
    load_project_config,
    mark_synced,
    resolve_project_id,
)
from synclink.client.credentials import CredentialStore
from synclink.client.sync import (
    ChangeKind,
    ChangeRecord,
    OffloadQueue,
    QueueItem,
    QueuePausedError,
    QueueProcessor,
)

logger = logging.getLogger(__name__)

SYNC_QUEUE_NAME = "sync"

_OPERATIONS = {
    ChangeKind.ADDED: "create",
    ChangeKind.MODIFIED: "update",
    ChangeKind.REMOVED: "delete",
}


def change_to_payload(project_id: str, record: ChangeRecord) -> dict[str, Any] | None:
    """Build the queue payload for a change, or None if it cannot be uploaded.

    Binary files and files too large to carry content are skipped.
    """
    operation = _OPERATIONS[record.kind]
    if operation == "delete":
        return {"projectId": project_id, "path": record.path, "operation": operation}
    if record.is_binary:
        logger.debug("Skipping binary file %s", record.path)
        return None
    text = record.text
    if text is None:
        logger.warning("Skipping %s: file too large to upload", record.path)
        return None
    return {"projectId": project_id, "path": record.path, "operation": operation, "content": text}


def make_sync_processor(api: ResilientApiClient) -> QueueProcessor[dict[str, Any]]:
    """Create a queue processor that delivers payloads through the API.

    Calls fail fast instead of parking in the client's own offline queue,
    so the OffloadQueue sees failures and applies its retry limit. An
    unreachable server pauses the queue instead of counting as a failure.
    """

    def process(item: QueueItem[dict[str, Any]]) -> None:
        payload = item.payload
        project_id = payload["projectId"]
        path = payload["path"]
        try:
            if payload["operation"] == "delete":
                api.delete_file(
                    project_id, path, priority=item.priority, offline_fallback=False
                ).result()
                logger.debug("Deleted %s", path)
            else:
                api.upsert_file(
                    project_id,
                    path,
                    payload["content"],
                    priority=item.priority,
                    offline_fallback=False,
                ).result()
                logger.debug("Uploaded %s", path)
        except (NetworkError, CircuitOpenError) as e:
            raise QueuePausedError(str(e)) from e

    return process


@click.command()
@click.option("--project", "-p", default=None, help="Project ID to sync.")
@click.option(
    "--directory",
    "-d",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project directory.",
)
def sync(project: str | None, directory: Path) -> None:
    """Synchronize the local project with the server.

    Delivers operations queued while offline, then asks the server to
    reconcile the project.
    """
    root = directory.resolve()
    config = load_config()
    project_config = load_project_config(root)

    project_id = resolve_project_id(project, project_config, config)
    if not project_id:
        click.echo(
            "Error: Project ID required. Use --project or set a default project.", err=True
        )
        sys.exit(1)

    sync_config = build_sync_config(config, project_config)
    auth = AuthService(sync_config.server, CredentialStore())
    if not auth.is_authenticated():
        auth.close()
        click.echo("Error: Authentication required. Run 'synclink login' first.", err=True)
        sys.exit(1)

    api = ResilientApiClient(sync_config.server, auth, sync_config.retry, sync_config.client)
    queue: OffloadQueue[dict[str, Any]] = OffloadQueue(SYNC_QUEUE_NAME, sync_config.queue)
    try:
        queue.set_processor(make_sync_processor(api))
        counts = queue.counts()
        queued = counts["pending"] + counts["failed"]
        if queued:
            click.echo(f"Processing {queued} queued operations...")
            queue.retry_all_failed()
            queue.process_queue()

        click.echo(f"Synchronizing project {project_id}...")
        result = api.sync_project(project_id, offline_fallback=False).result() or {}
    except APIError as e:
        click.echo(f"Error: Sync failed: {e}", err=True)
        sys.exit(1)
    finally:
        queue.dispose()
        api.close()
        auth.close()

    if project_config is not None:
        mark_synced(root)

    failed = queue.counts()["failed"]
    if failed:
        click.echo(f"Warning: {failed} operations failed and remain queued.", err=True)

    click.echo(
        f"Synchronization complete. {result.get('added', 0)} added, "
        f"{result.get('updated', 0)} updated, {result.get('deleted', 0)} deleted."
    )
