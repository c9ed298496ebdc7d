"""Ignore patterns for file synchronization.

This module provides:
- IgnoreMatcher: gitignore-style predicate over paths relative to a root
- DEFAULT_IGNORE_PATTERNS: Version-control, build-output and OS artifacts
- read_ignore_file: Parse one ignore file

Sources are combined in order (defaults, home directory files, project
files, caller patterns). Later sources are appended; there is no
override. Negated patterns ("!foo") are recognized and skipped.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from synclink.client.sync.types import IgnoreParseError

logger = logging.getLogger(__name__)

GITIGNORE_NAME = ".gitignore"
PROJECT_IGNORE_NAME = ".synclinkignore"

DEFAULT_IGNORE_PATTERNS = [
    # Version control and editors
    ".git/",
    ".svn/",
    ".hg/",
    ".idea/",
    ".vscode/",
    # Build output and dependencies
    "node_modules/",
    "dist/",
    "build/",
    "coverage/",
    "vendor/",
    "__pycache__/",
    "*.pyc",
    "*.min.js",
    "*.bundle.js",
    "package-lock.json",
    "yarn.lock",
    "yarn-error.log",
    # Logs and caches
    "logs/",
    "*.log",
    ".cache/",
    ".npm/",
    ".eslintcache",
    # Editor swap and temp files
    "*.swp",
    "*.swo",
    "*.tmp",
    # OS artifacts
    ".DS_Store",
    ".directory",
    "desktop.ini",
    "Thumbs.db",
    # synclink state
    ".synclink/",
]


def parse_ignore_lines(lines: Iterable[str]) -> list[str]:
    """Turn raw ignore-file lines into patterns.

    Blank lines and comments are dropped. Negations are dropped too:
    they are recognized but not honored.
    """
    patterns: list[str] = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("!"):
            logger.debug("Skipping unsupported negated pattern: %s", line)
            continue
        patterns.append(line)
    return patterns


def read_ignore_file(path: Path) -> list[str]:
    """Load patterns from an ignore file.

    Returns an empty list if the file does not exist.

    Raises:
        IgnoreParseError: If the file exists but cannot be read or decoded.
    """
    if not path.is_file():
        logger.debug("No ignore file at %s", path)
        return []
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise IgnoreParseError(str(path), str(e)) from e
    patterns = parse_ignore_lines(content.splitlines())
    logger.debug("Loaded %d patterns from %s", len(patterns), path)
    return patterns


def _match_segments(pattern: tuple[str, ...], parts: tuple[str, ...]) -> bool:
    """Match pattern segments against path components one by one.

    "*" stays within a component; a "**" segment spans any number of them.
    """
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    return bool(parts) and fnmatch.fnmatchcase(parts[0], head) and _match_segments(rest, parts[1:])


def _pattern_matches(pattern: str, parts: tuple[str, ...], last_is_dir: bool) -> bool:
    """Check one pattern against the components of a relative path.

    A pattern matches when it matches the path or any of its ancestor
    directories. Directory patterns (trailing "/") only match the last
    component when it is itself a directory.
    """
    dir_only = pattern.endswith("/")
    body = pattern.rstrip("/")
    anchored = body.startswith("/")
    body = body.lstrip("/")

    floating = False
    while body.startswith("**/"):
        body = body[3:]
        floating = True
    if not body:
        return False

    end = len(parts) if (last_is_dir or not dir_only) else len(parts) - 1

    if "/" not in body and not anchored:
        # Bare name: any component
        return any(fnmatch.fnmatchcase(part, body) for part in parts[:end])

    segments = tuple(body.split("/"))
    starts = range(len(parts)) if floating else range(1)
    for start in starts:
        for stop in range(start + 1, end + 1):
            if _match_segments(segments, parts[start:stop]):
                return True
    return False


class IgnoreMatcher:
    """Compiled ignore rules for one watched root."""

    def __init__(self, root: Path, patterns: list[str] | None = None) -> None:
        """Initialize with an explicit pattern list (use compile() normally).

        Args:
            root: Watched root directory.
            patterns: Patterns in evaluation order.
        """
        self._root = Path(root)
        self._patterns: list[str] = list(patterns or [])

    @classmethod
    def compile(
        cls,
        root: Path,
        explicit_patterns: Iterable[str] = (),
        *,
        use_gitignore: bool = True,
        use_project_ignore: bool = True,
        home: Path | None = None,
    ) -> IgnoreMatcher:
        """Combine defaults, global, project and caller patterns.

        Args:
            root: Watched root directory.
            explicit_patterns: Caller-supplied patterns, appended last.
            use_gitignore: Read .gitignore from home and root.
            use_project_ignore: Read .synclinkignore from home and root.
            home: Home directory for global files (default: Path.home()).

        Returns:
            The compiled matcher. Unreadable files are skipped with a warning.
        """
        root = Path(root)
        home = home if home is not None else Path.home()

        names: list[str] = []
        if use_gitignore:
            names.append(GITIGNORE_NAME)
        if use_project_ignore:
            names.append(PROJECT_IGNORE_NAME)

        patterns = list(DEFAULT_IGNORE_PATTERNS)
        for base in (home, root):
            for name in names:
                try:
                    patterns.extend(read_ignore_file(base / name))
                except IgnoreParseError as e:
                    logger.warning("%s; continuing without it", e)

        extra = parse_ignore_lines(explicit_patterns)
        if extra:
            patterns.extend(extra)
            logger.debug("Added %d additional ignore patterns", len(extra))

        return cls(root, patterns)

    @property
    def root(self) -> Path:
        """Watched root directory."""
        return self._root

    @property
    def patterns(self) -> list[str]:
        """Active patterns in evaluation order."""
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> bool:
        """Append a pattern. Returns False if it was already present or unusable."""
        parsed = parse_ignore_lines([pattern])
        if not parsed or parsed[0] in self._patterns:
            return False
        self._patterns.append(parsed[0])
        return True

    def relative(self, path: Path | str) -> str | None:
        """Get the POSIX path of `path` relative to the root, or None if outside."""
        p = Path(path)
        if not p.is_absolute():
            return PurePosixPath(p.as_posix()).as_posix()
        try:
            return p.relative_to(self._root).as_posix()
        except ValueError:
            return None

    def matches(self, path: Path | str, is_dir: bool | None = None) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Path relative to the root, or an absolute path under it.
            is_dir: Whether the path is a directory. Looked up on disk when None.

        Returns:
            True if any pattern matches the path or one of its parent directories.
        """
        rel = self.relative(path)
        if rel is None or rel in ("", "."):
            return False
        parts = tuple(part for part in rel.split("/") if part)
        if is_dir is None:
            is_dir = (self._root / rel).is_dir()
        return any(_pattern_matches(pattern, parts, is_dir) for pattern in self._patterns)
