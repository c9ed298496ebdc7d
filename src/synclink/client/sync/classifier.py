"""Binary detection and content hashing for changed files.

This module provides:
- is_binary_file: Extension table first, then an 8 KiB content sample
- ChangeClassifier: Reads a file once and returns binary flag, hash and content
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from synclink.core.hashing import STREAM_THRESHOLD, compute_file_hash, hash_bytes, hash_text

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 8 * 1024
CONTROL_RATIO = 0.1

BINARY_EXTENSIONS = frozenset({
    ".exe", ".dll", ".so", ".dylib", ".bin", ".dat",
    ".zip", ".tar", ".gz", ".7z", ".rar",
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".tif", ".tiff", ".webp", ".avif",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".wav", ".flac", ".ogg",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
    ".o", ".obj", ".pyc", ".pyo", ".class",
})

# \t \n \v \f \r
_WHITESPACE_CONTROLS = frozenset({9, 10, 11, 12, 13})


def looks_binary(sample: bytes) -> bool:
    """Classify a content sample.

    A null byte, or more than 10% control bytes other than whitespace,
    means binary. An empty sample is text.
    """
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    controls = sum(1 for c in sample if c < 32 and c not in _WHITESPACE_CONTROLS)
    return controls / len(sample) > CONTROL_RATIO


def is_binary_file(path: Path) -> bool:
    """Check if a file is binary.

    Raises:
        OSError: If the file cannot be read.
    """
    if path.suffix.lower() in BINARY_EXTENSIONS:
        return True
    with open(path, "rb") as f:
        return looks_binary(f.read(SAMPLE_SIZE))


@dataclass
class Classification:
    """Result of classifying one file.

    `content` is None when the file was above the streaming threshold.
    """

    is_binary: bool
    hash: str
    content: bytes | None
    size: int


class ChangeClassifier:
    """Classifies files as text or binary and computes their content hash."""

    def __init__(self, stream_threshold: int = STREAM_THRESHOLD) -> None:
        """Initialize the classifier.

        Args:
            stream_threshold: Files larger than this are hashed incrementally
                and their content is not kept in memory.
        """
        self._stream_threshold = stream_threshold

    def classify(self, path: Path) -> Classification:
        """Classify a file and hash it.

        Args:
            path: Absolute path of the file.

        Returns:
            Binary flag, hash and (for small files) content.

        Raises:
            OSError: If the file cannot be read (permission, deleted meanwhile).
                Callers skip the file rather than failing the batch.
        """
        size = path.stat().st_size

        if size > self._stream_threshold:
            binary = is_binary_file(path)
            digest = compute_file_hash(path, text=not binary)
            logger.debug("Stream-hashed %s (%d bytes)", path, size)
            return Classification(is_binary=binary, hash=digest, content=None, size=size)

        data = path.read_bytes()
        binary = path.suffix.lower() in BINARY_EXTENSIONS or looks_binary(data[:SAMPLE_SIZE])
        if binary:
            digest = hash_bytes(data)
        else:
            digest = hash_text(data.decode("utf-8", errors="replace"))
        return Classification(is_binary=binary, hash=digest, content=data, size=len(data))
