"""Core module - shared configuration and hashing."""

from synclink.core.config import (
    DEFAULT_API_ENDPOINT,
    ClientConfig,
    QueueConfig,
    RetryConfig,
    ServerConfig,
    SyncConfig,
    WatchConfig,
)
from synclink.core.hashing import (
    STREAM_THRESHOLD,
    compute_file_hash,
    hash_bytes,
    hash_text,
)

__all__ = [
    # Config
    "DEFAULT_API_ENDPOINT",
    "ClientConfig",
    "QueueConfig",
    "RetryConfig",
    "ServerConfig",
    "SyncConfig",
    "WatchConfig",
    # Hashing
    "STREAM_THRESHOLD",
    "compute_file_hash",
    "hash_bytes",
    "hash_text",
]
