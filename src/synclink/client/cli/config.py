"""Configuration utilities for synclink CLI.

This module provides shared configuration functions used across CLI commands.

Files:
- ~/.synclink/config.json: Global settings (endpoint, default project, and
  optional "server", "watch", "retry", "client", "queue" sections)
- <project>/.synclink/config.json: Project binding (projectId, lastSync,
  ignorePatterns)
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from synclink.core.config import SyncConfig

PROJECT_DIR_NAME = ".synclink"


def get_config_dir() -> Path:
    """Get the configuration directory for synclink.

    Returns:
        Path to ~/.synclink.
    """
    return Path.home() / ".synclink"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_project_config_file(root: Path) -> Path:
    """Get the project config path for a project root."""
    return root / PROJECT_DIR_NAME / "config.json"


def load_project_config(root: Path) -> dict[str, Any] | None:
    """Load the project config, or None if the directory is not a project."""
    config_file = get_project_config_file(root)
    if not config_file.exists():
        return None
    return dict(json.loads(config_file.read_text()))


def save_project_config(root: Path, config: dict[str, Any]) -> None:
    """Save the project config."""
    config_file = get_project_config_file(root)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def mark_synced(root: Path) -> None:
    """Record the current time as the project's last sync."""
    config = load_project_config(root) or {}
    config["lastSync"] = datetime.now(UTC).isoformat()
    save_project_config(root, config)


def build_sync_config(
    config: dict[str, Any],
    project_config: dict[str, Any] | None = None,
) -> SyncConfig:
    """Assemble the runtime configuration.

    Args:
        config: Global config dictionary.
        project_config: Project config dictionary, if any.

    Returns:
        SyncConfig with the API endpoint, queue location and project
        ignore patterns applied.
    """
    sync_config = SyncConfig.from_dict(config)
    if config.get("api_endpoint"):
        sync_config.server.api_endpoint = str(config["api_endpoint"]).rstrip("/")
    if "storage_dir" not in (config.get("queue") or {}):
        sync_config.queue.storage_dir = get_config_dir() / "queues"
    if project_config:
        sync_config.watch.ignore_patterns.extend(project_config.get("ignorePatterns", []))
    return sync_config


def resolve_project_id(
    explicit: str | None,
    project_config: dict[str, Any] | None,
    config: dict[str, Any],
) -> str | None:
    """Pick the project ID: command line, then project config, then global default."""
    if explicit:
        return explicit
    if project_config and project_config.get("projectId"):
        return str(project_config["projectId"])
    default = config.get("default_project")
    return str(default) if default else None
