"""Command-line interface for synclink.

This module provides the main CLI entry point and assembles all commands.

Commands:
- login: Authenticate with an API key
- logout: Remove stored credentials
- status: Show synchronization status
- sync: Deliver queued operations and sync the project
- watch: Watch the project directory and sync changes continuously
"""

from __future__ import annotations

import logging
import sys

import click

from synclink.client.cli import auth, status, sync, watch
from synclink.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_project_config_file,
    load_config,
    load_project_config,
    save_config,
    save_project_config,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False) -> None:
    """Configure the synclink logger to write to stderr.

    Args:
        verbose: Log at DEBUG instead of INFO.
    """
    root_logger = logging.getLogger("synclink")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)


@click.group()
@click.version_option(package_name="synclink")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """synclink - Keep a project directory in sync with the cloud."""
    setup_logging(verbose)


# Auth commands
cli.add_command(auth.login)
cli.add_command(auth.logout)

# Sync commands
cli.add_command(status.status)
cli.add_command(sync.sync)
cli.add_command(watch.watch)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    "setup_logging",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_project_config_file",
    "load_config",
    "load_project_config",
    "save_config",
    "save_project_config",
]
