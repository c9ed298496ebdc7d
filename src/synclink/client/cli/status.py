"""Status command for synclink CLI.

Commands:
- status: Show login, project binding, offline queue and server status
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import click

from synclink.client.api import APIError, ResilientApiClient
from synclink.client.auth import AuthService
from synclink.client.cli.config import (
    build_sync_config,
    load_config,
    load_project_config,
    resolve_project_id,
)
from synclink.client.cli.sync import SYNC_QUEUE_NAME
from synclink.client.credentials import CredentialStore
from synclink.client.sync import OffloadQueue


@click.command()
@click.option(
    "--directory",
    "-d",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project directory.",
)
@click.option("--project", "-p", default=None, help="Project ID.")
def status(directory: Path, project: str | None) -> None:
    """Show synchronization status."""
    root = directory.resolve()
    config = load_config()
    project_config = load_project_config(root)
    sync_config = build_sync_config(config, project_config)
    project_id = resolve_project_id(project, project_config, config)

    click.echo(f"Endpoint:  {sync_config.server.api_endpoint}")
    click.echo(f"Project:   {project_id or '(none)'}")
    if project_config and project_config.get("lastSync"):
        click.echo(f"Last sync: {project_config['lastSync']}")

    queue: OffloadQueue[dict[str, Any]] = OffloadQueue(SYNC_QUEUE_NAME, sync_config.queue)
    try:
        counts = queue.counts()
    finally:
        queue.dispose()
    click.echo(f"Queue:     {counts['pending']} pending, {counts['failed']} failed")

    auth = AuthService(sync_config.server, CredentialStore())
    try:
        if not auth.is_authenticated():
            click.echo("Auth:      not logged in")
            return
        click.echo("Auth:      logged in")
        if not project_id:
            return

        with ResilientApiClient(
            sync_config.server, auth, sync_config.retry, sync_config.client
        ) as api:
            try:
                remote = api.get_project_status(project_id, offline_fallback=False).result()
            except APIError as e:
                click.echo(f"Server:    unavailable ({e})")
                return
        click.echo(f"Server:    {(remote or {}).get('status', 'unknown')}")
    finally:
        auth.close()
