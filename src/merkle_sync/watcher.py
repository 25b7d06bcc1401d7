"""Filesystem change watching feeding the merkle tree."""

from __future__ import annotations

import logging
import queue
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .merkle import MerkleTree
from .scanner import (
    has_allowed_extension,
    hash_file,
    is_tracked_file,
    scan_leaves,
    should_ignore,
    to_relative_path,
)
from .state import TreeSnapshot, TreeStateStore

logger = logging.getLogger(__name__)

EventKind = Literal["create", "update", "delete"]

# (relative_path, new_root)
ChangeCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class FileEvent:
    """A filesystem change for a single path."""

    path: str  # Absolute path
    kind: EventKind


class EventStream(Protocol):
    """Lazy, infinite, non-restartable stream of file events."""

    def __iter__(self) -> Iterator[FileEvent]: ...

    def get(self, timeout: float | None = None) -> FileEvent | None: ...


class ChangeWatcher(Protocol):
    """Source of filesystem events for a project tree."""

    def subscribe(
        self,
        root: Path,
        extensions: list[str],
        ignore_patterns: list[str],
    ) -> EventStream: ...

    def unsubscribe(self) -> None: ...


class QueueEventStream:
    """Event stream backed by a thread-safe queue."""

    def __init__(self):
        self._queue: queue.Queue[FileEvent] = queue.Queue()
        self.closed = False

    def put(self, event: FileEvent) -> None:
        if not self.closed:
            self._queue.put(event)

    def get(self, timeout: float | None = None) -> FileEvent | None:
        """Next event, or None if nothing arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __iter__(self) -> Iterator[FileEvent]:
        while not self.closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event


class _FilteringHandler(FileSystemEventHandler):
    """Translates watchdog events into FileEvents for tracked files."""

    def __init__(
        self,
        root: Path,
        extensions: list[str],
        ignore_patterns: list[str],
        stream: QueueEventStream,
    ):
        self.root = root
        self.extensions = extensions
        self.ignore_patterns = ignore_patterns
        self.stream = stream

    def _emit(self, src_path: str | bytes, kind: EventKind) -> None:
        path = Path(src_path.decode() if isinstance(src_path, bytes) else src_path)
        try:
            relative_path = to_relative_path(path, self.root)
        except ValueError:
            return
        if not has_allowed_extension(relative_path, self.extensions):
            return
        if should_ignore(relative_path, self.ignore_patterns):
            return
        self.stream.put(FileEvent(path=str(path), kind=kind))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, "create")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, "update")

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, "delete")

    def on_moved(self, event: FileSystemEvent) -> None:
        # Renames are not tracked: a move is a delete plus a create
        if not event.is_directory:
            self._emit(event.src_path, "delete")
            self._emit(event.dest_path, "create")


class WatchdogChangeWatcher:
    """ChangeWatcher backed by a watchdog Observer."""

    def __init__(self):
        self._observer: Observer | None = None
        self._stream: QueueEventStream | None = None

    def subscribe(
        self,
        root: Path,
        extensions: list[str],
        ignore_patterns: list[str],
    ) -> QueueEventStream:
        if self._observer is not None:
            raise RuntimeError("Already subscribed; call unsubscribe() first")

        root = root.resolve()
        self._stream = QueueEventStream()
        handler = _FilteringHandler(root, extensions, ignore_patterns, self._stream)
        self._observer = Observer()
        self._observer.schedule(handler, str(root), recursive=True)
        self._observer.start()
        logger.info("Watching %s", root)
        return self._stream

    def unsubscribe(self) -> None:
        if self._stream is not None:
            self._stream.closed = True
            self._stream = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Watcher stopped")


class MerkleWatcher:
    """
    Applies file events to the merkle tree and persists the result.

    This is the single writer of the project's TreeStateStore: events must
    be handled one at a time, in delivery order.
    """

    def __init__(
        self,
        project_root: Path,
        store: TreeStateStore,
        extensions: list[str],
        ignore_patterns: list[str],
        on_change: ChangeCallback | None = None,
    ):
        self.project_root = project_root.resolve()
        self.store = store
        self.extensions = extensions
        self.ignore_patterns = ignore_patterns
        self.on_change = on_change
        self.tree: MerkleTree | None = None

    @property
    def root(self) -> str | None:
        return self.tree.root if self.tree is not None else None

    def start(self) -> str:
        """Load the saved tree, rebuilding from disk if there is no usable snapshot."""
        snapshot = self.store.load()
        if snapshot is None:
            return self.rebuild()
        self.tree = snapshot.to_tree()
        logger.info("Loaded tree state, root %s", self.tree.root[:16])
        return self.tree.root

    def rebuild(self) -> str:
        """Full rescan of the project tree."""
        leaves = scan_leaves(self.project_root, self.extensions, self.ignore_patterns)
        self.tree = MerkleTree.from_leaves(leaves)
        self.store.save(TreeSnapshot.from_tree(self.tree))
        logger.info("Built tree over %d files, root %s", len(leaves), self.tree.root[:16])
        return self.tree.root

    def handle_event(self, event: FileEvent) -> str | None:
        """
        Apply one file event.

        Returns:
            The new root if the event changed it, otherwise None
        """
        if self.tree is None:
            self.start()
        assert self.tree is not None

        path = Path(event.path)
        if not path.is_absolute():
            path = self.project_root / path
        try:
            relative_path = to_relative_path(path, self.project_root)
        except ValueError:
            logger.debug("Ignoring event outside project: %s", event.path)
            return None

        old_root = self.tree.root
        if event.kind == "delete":
            new_root = self.tree.remove(relative_path)
        elif not is_tracked_file(path, self.project_root, self.extensions, self.ignore_patterns):
            # A file that became binary or a symlink drops out like a deletion
            new_root = self.tree.remove(relative_path)
        else:
            leaf_hash = hash_file(self.project_root, relative_path)
            if leaf_hash is None:
                new_root = self.tree.remove(relative_path)
            else:
                new_root = self.tree.update(relative_path, leaf_hash)

        if new_root == old_root:
            logger.debug("%s %s: content unchanged", event.kind, relative_path)
            return None

        self.store.save(TreeSnapshot.from_tree(self.tree))
        self.store.enqueue_dirty(relative_path)
        logger.info("%s %s: root %s -> %s", event.kind, relative_path, old_root[:16], new_root[:16])

        if self.on_change is not None:
            self.on_change(relative_path, new_root)
        return new_root
