"""Configuration classes for synclink.

Every component receives its configuration explicitly through its
constructor. The CLI builds a single SyncConfig from the JSON config
files and hands the relevant sections to each component.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_API_ENDPOINT = "https://api.synclink.dev"


@dataclass
class ServerConfig:
    """Configuration for connecting to the remote service.

    Used by the HTTP client (ResilientApiClient), the auth service and
    the WebSocket client (RealtimeChannel) so they agree on endpoints.

    Attributes:
        api_endpoint: Base URL of the API (e.g., "https://api.example.com").
        ws_endpoint: WebSocket URL. Derived from api_endpoint when empty.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        user_agent: User-Agent header sent with every request.
    """

    api_endpoint: str = DEFAULT_API_ENDPOINT
    ws_endpoint: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True
    user_agent: str = "synclink/0.1.0"

    def __post_init__(self) -> None:
        """Normalize endpoint URLs."""
        self.api_endpoint = self.api_endpoint.rstrip("/")
        self.ws_endpoint = self.ws_endpoint.rstrip("/")

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for the realtime channel."""
        if self.ws_endpoint:
            return f"{self.ws_endpoint}/ws"
        url = self.api_endpoint
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/ws"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.api_endpoint.startswith("https://")


@dataclass
class WatchConfig:
    """File watching settings.

    Attributes:
        debounce_ms: Quiet period after the last raw event before a batch is scheduled.
        batch_interval_ms: Delay between the debounce firing and the batch pass.
        use_gitignore: Read .gitignore files (project and home).
        use_project_ignore: Read .synclinkignore files (project and home).
        ignore_patterns: Extra caller-supplied patterns.
    """

    debounce_ms: int = 500
    batch_interval_ms: int = 2000
    use_gitignore: bool = True
    use_project_ignore: bool = True
    ignore_patterns: list[str] = field(default_factory=list)


@dataclass
class RetryConfig:
    """Retry, circuit breaker and connectivity probe settings.

    Attributes:
        max_attempts: Network attempts per call before giving up.
        base_delay: Backoff base in seconds (delay = base * 2**attempt).
        jitter: Relative jitter applied to each delay (0.2 = +/-20%).
        circuit_threshold: Consecutive failures that open the circuit.
        circuit_cooldown: Seconds the circuit stays open.
        health_check_interval: Seconds between probes while offline.
        retry_budget: Seconds a queued request may wait before it fails for good.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 0.2
    circuit_threshold: int = 5
    circuit_cooldown: float = 30.0
    health_check_interval: float = 10.0
    retry_budget: float = 3600.0


@dataclass
class ClientConfig:
    """Response cache settings for the API client."""

    cache_ttl: float = 60.0


@dataclass
class QueueConfig:
    """Offline queue settings.

    Attributes:
        storage_dir: Directory holding one JSON file per named queue.
        batch_size: Items processed concurrently per batch.
        max_retries: Failures before an item is marked failed.
        persist_interval: Seconds between periodic snapshots.
    """

    storage_dir: Path = field(default_factory=lambda: Path.home() / ".synclink" / "queues")
    batch_size: int = 10
    max_retries: int = 5
    persist_interval: float = 5.0


@dataclass
class SyncConfig:
    """All settings for one synclink process."""

    server: ServerConfig = field(default_factory=ServerConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a config from a nested dictionary, ignoring unknown keys."""
        sections: dict[str, Any] = {
            "server": ServerConfig,
            "watch": WatchConfig,
            "retry": RetryConfig,
            "client": ClientConfig,
            "queue": QueueConfig,
        }
        kwargs: dict[str, Any] = {}
        for name, section_cls in sections.items():
            raw = data.get(name) or {}
            known = {f.name for f in fields(section_cls)}
            values = {k: v for k, v in raw.items() if k in known}
            if section_cls is QueueConfig and "storage_dir" in values:
                values["storage_dir"] = Path(values["storage_dir"]).expanduser()
            kwargs[name] = section_cls(**values)
        return cls(**kwargs)
