"""Durable tree snapshot, dirty queue and project record for Merkle Sync."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from . import DIRTY_QUEUE_FILE, PROJECT_FILE, STATE_DIR, TREE_STATE_FILE
from .merkle import Leaf, MerkleTree, sort_leaves

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


class TreeSnapshot(BaseModel):
    """Current tree root and its leaves, sorted by id."""

    root: str
    leaves: list[Leaf] = Field(default_factory=list)
    taken_at: datetime = Field(default_factory=utcnow)

    @field_validator("leaves")
    @classmethod
    def _sorted_leaves(cls, leaves: list[Leaf]) -> list[Leaf]:
        return sort_leaves(leaves)

    @classmethod
    def from_tree(cls, tree: MerkleTree) -> TreeSnapshot:
        return cls(root=tree.root, leaves=tree.leaves)

    def to_tree(self) -> MerkleTree:
        return MerkleTree.from_leaves(self.leaves)


class DirtyQueue(BaseModel):
    """Leaf ids changed since the last completed sync."""

    last_synced_at: datetime | None = None
    pending: list[str] = Field(default_factory=list)


class ProjectRecord(BaseModel):
    """Identity of a project on the remote index."""

    project_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)


def atomic_write_json(path: Path, data: dict) -> None:
    """Write JSON so readers see either the old file or the new one, never a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_model(path: Path, model: type[BaseModel]) -> BaseModel | None:
    """Load a model from JSON. Missing or corrupt files yield None."""
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data = json.load(f)
        return model.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring unreadable %s: %s", path.name, e)
        return None


class TreeStateStore:
    """Single-writer persistence for the watching side of a project."""

    def __init__(self, project_root: Path, state_dir: Path | None = None):
        self.project_root = project_root
        self.state_dir = state_dir or project_root / STATE_DIR
        self.tree_state_path = self.state_dir / TREE_STATE_FILE
        self.dirty_queue_path = self.state_dir / DIRTY_QUEUE_FILE
        self.project_path = self.state_dir / PROJECT_FILE

    # Tree snapshot

    def load(self) -> TreeSnapshot | None:
        """
        Load the last saved snapshot.

        Returns None if the snapshot is missing or corrupt; the caller then
        rebuilds the tree from disk.
        """
        return _read_model(self.tree_state_path, TreeSnapshot)  # type: ignore[return-value]

    def save(self, snapshot: TreeSnapshot) -> None:
        """Atomically replace the stored snapshot."""
        atomic_write_json(self.tree_state_path, snapshot.model_dump(mode="json"))

    # Dirty queue

    def load_queue(self) -> DirtyQueue:
        queue = _read_model(self.dirty_queue_path, DirtyQueue)
        return queue if queue is not None else DirtyQueue()  # type: ignore[return-value]

    def _save_queue(self, queue: DirtyQueue) -> None:
        atomic_write_json(self.dirty_queue_path, queue.model_dump(mode="json"))

    def enqueue_dirty(self, leaf_id: str) -> None:
        """Mark a leaf as changed. Re-adding a pending id is a no-op."""
        queue = self.load_queue()
        if leaf_id in queue.pending:
            return
        queue.pending.append(leaf_id)
        self._save_queue(queue)

    def enqueue_many(self, leaf_ids: Iterable[str]) -> None:
        queue = self.load_queue()
        added = [leaf_id for leaf_id in leaf_ids if leaf_id not in queue.pending]
        if added:
            queue.pending.extend(dict.fromkeys(added))
            self._save_queue(queue)

    def pending_dirty(self) -> set[str]:
        """Peek at the pending ids without draining."""
        return set(self.load_queue().pending)

    def drain_dirty(self, only: Iterable[str] | None = None) -> set[str]:
        """
        Clear the queue after a sync and advance ``last_synced_at``.

        Args:
            only: Drain just these ids, keeping anything enqueued since the
                sync started. Drains everything when None.

        Returns:
            The ids removed from the queue
        """
        queue = self.load_queue()
        if only is None:
            drained = set(queue.pending)
            queue.pending = []
        else:
            wanted = set(only)
            drained = {leaf_id for leaf_id in queue.pending if leaf_id in wanted}
            queue.pending = [leaf_id for leaf_id in queue.pending if leaf_id not in wanted]
        queue.last_synced_at = utcnow()
        self._save_queue(queue)
        return drained

    # Project record

    def load_project(self) -> ProjectRecord | None:
        """Load the project record. None means the project was never synced."""
        return _read_model(self.project_path, ProjectRecord)  # type: ignore[return-value]

    def get_or_create_project(self) -> ProjectRecord:
        record = self.load_project()
        if record is None:
            record = ProjectRecord()
            atomic_write_json(self.project_path, record.model_dump(mode="json"))
            logger.info("Created project %s", record.project_id)
        return record
