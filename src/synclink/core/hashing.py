"""Content hashing helpers.

Small files are hashed in one read; files above STREAM_THRESHOLD are
read block by block so memory stays bounded.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

STREAM_THRESHOLD = 10 * 1024 * 1024  # 10 MiB
BLOCK_SIZE = 64 * 1024


def hash_bytes(data: bytes) -> str:
    """Compute the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    """Compute the SHA-256 hex digest of decoded text (UTF-8 encoded)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_file_hash(path: Path, *, text: bool = False) -> str:
    """Compute the SHA-256 hash of a file by streaming it.

    Args:
        path: Path to the file to hash.
        text: Hash the decoded text rather than the raw bytes. Invalid
            UTF-8 sequences are replaced, matching hash_text on content
            decoded with errors="replace".

    Returns:
        Hexadecimal SHA-256 hash string.

    Raises:
        OSError: If the file cannot be read.
    """
    hasher = hashlib.sha256()
    if text:
        with open(path, encoding="utf-8", errors="replace", newline="") as f:
            for block in iter(lambda: f.read(BLOCK_SIZE), ""):
                hasher.update(block.encode("utf-8"))
    else:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(BLOCK_SIZE), b""):
                hasher.update(block)
    return hasher.hexdigest()
