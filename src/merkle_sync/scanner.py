"""Filesystem scanning: leaf hashing and ignore-pattern matching."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from functools import lru_cache
from pathlib import Path

from .merkle import Leaf, digest, sort_leaves

logger = logging.getLogger(__name__)


def to_relative_path(path: Path, project_root: Path) -> str:
    """Relative path with forward slashes, identical across platforms."""
    return path.relative_to(project_root).as_posix()


def compute_leaf_hash(relative_path: str, content: str) -> str:
    """Hash of relative path + content.

    Using the relative path keeps hashes identical across machines while
    still distinguishing two files with the same content.
    """
    return digest(relative_path + content)


def hash_file(project_root: Path, relative_path: str) -> str | None:
    """Read a file and compute its leaf hash. Returns None if unreadable."""
    try:
        content = (project_root / relative_path).read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to hash %s: %s", relative_path, e)
        return None
    return compute_leaf_hash(relative_path, content)


def is_binary_file(filepath: Path) -> bool:
    """Detect binary files by checking for null bytes in first 8KB."""
    try:
        with open(filepath, "rb") as f:
            chunk = f.read(8192)
            return b"\x00" in chunk
    except OSError:
        return True  # Treat unreadable files as binary


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a path glob with ``**`` and ``*`` into a regex."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts))


def should_ignore(relative_path: str, ignore_patterns: list[str]) -> bool:
    """
    Check if a relative path matches any ignore pattern.

    Patterns without a slash match any single path component
    (``node_modules``, ``*.log``). Patterns with a slash match the whole
    relative path, where ``**/`` spans zero or more directories.
    """
    components = relative_path.split("/")
    for pattern in ignore_patterns:
        if "/" not in pattern:
            if any(fnmatch.fnmatchcase(name, pattern) for name in components):
                return True
        elif _glob_to_regex(pattern).fullmatch(relative_path):
            return True
        elif pattern.endswith("/**") and _glob_to_regex(pattern[:-3]).fullmatch(relative_path):
            # "dir/**" also covers the directory itself
            return True
    return False


def has_allowed_extension(path: str, extensions: list[str]) -> bool:
    return not extensions or os.path.splitext(path)[1].lower() in extensions


def is_tracked_file(path: Path, project_root: Path, extensions: list[str], ignore_patterns: list[str]) -> bool:
    """Whether a single file belongs in the tree, by the same rules scan_leaves walks with."""
    relative_path = to_relative_path(path, project_root)
    if not has_allowed_extension(path.name, extensions):
        return False
    if should_ignore(relative_path, ignore_patterns):
        return False
    # Symlinked files and anything under a symlinked directory are never walked
    current = project_root
    for part in Path(relative_path).parts:
        current = current / part
        if current.is_symlink():
            return False
    return path.is_file() and not is_binary_file(path)


def scan_leaves(
    project_root: Path,
    extensions: list[str],
    ignore_patterns: list[str],
) -> list[Leaf]:
    """
    Walk the project and hash every tracked file.

    Args:
        project_root: Root directory to scan
        extensions: File extensions to include (e.g., [".py", ".ts"])
        ignore_patterns: Glob patterns of paths to skip

    Returns:
        Leaves sorted by relative path
    """
    leaves: list[Leaf] = []
    for dirpath, dirnames, filenames in os.walk(project_root):
        current = Path(dirpath)
        # Prune ignored directories in place so os.walk skips them
        dirnames[:] = sorted(
            name
            for name in dirnames
            if not (current / name).is_symlink()
            and not should_ignore(to_relative_path(current / name, project_root), ignore_patterns)
        )

        for name in sorted(filenames):
            path = current / name
            relative_path = to_relative_path(path, project_root)
            if path.is_symlink() or not has_allowed_extension(name, extensions):
                continue
            if should_ignore(relative_path, ignore_patterns) or is_binary_file(path):
                continue

            file_hash = hash_file(project_root, relative_path)
            if file_hash is not None:
                leaves.append(Leaf(id=relative_path, hash=file_hash))

    return sort_leaves(leaves)
