"""Binary merkle tree over a named leaf set for change detection."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict
from rich.tree import Tree

from .errors import EmptyInputError

# Root of a tree with no leaves. Not a hex digest, so it never collides with a real root.
EMPTY_ROOT = "empty"


class Leaf(BaseModel):
    """Smallest unit tracked by the tree: a file or a code fragment."""

    model_config = ConfigDict(frozen=True)

    id: str  # Stable path or fragment identity
    hash: str  # Content digest


@dataclass
class HashNode:
    """A node in the binary hash tree.

    Internal nodes carry ``left`` and ``right``; terminal nodes carry ``leaf_id``.
    """

    hash: str
    left: HashNode | None = None
    right: HashNode | None = None
    leaf_id: str | None = None

    @property
    def is_leaf(self) -> bool:
        return self.leaf_id is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for debugging output."""
        if self.is_leaf:
            return {"hash": self.hash, "leafId": self.leaf_id}
        result: dict[str, Any] = {"hash": self.hash}
        if self.left is not None:
            result["left"] = self.left.to_dict()
        if self.right is not None:
            result["right"] = self.right.to_dict()
        return result


@dataclass
class TreeDiff:
    """Result of comparing two trees' leaf sets."""

    new: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        """Check if there are any changes."""
        return bool(self.new or self.modified or self.deleted)

    @property
    def total_changes(self) -> int:
        """Total number of changed leaves."""
        return len(self.new) + len(self.modified) + len(self.deleted)

    @property
    def changed_ids(self) -> list[str]:
        return self.new + self.modified + self.deleted


def digest(data: str) -> str:
    """SHA256 hex digest of a string."""
    return hashlib.sha256(data.encode()).hexdigest()


def hash_pair(left: str, right: str) -> str:
    """Hash two child hashes together to form the parent hash."""
    return digest(left + right)


def build_tree(leaves: list[Leaf]) -> HashNode:
    """
    Build a binary hash tree bottom-up from an ordered leaf sequence.

    Adjacent nodes are paired left to right. When a level has an odd count,
    the last node is promoted to the next level unchanged (never duplicated).
    The leaves are used in the order given: callers sort by id first.

    Raises:
        EmptyInputError: If ``leaves`` is empty
    """
    if not leaves:
        raise EmptyInputError("Cannot build merkle tree with no leaves")

    nodes = [HashNode(hash=leaf.hash, leaf_id=leaf.id) for leaf in leaves]

    while len(nodes) > 1:
        next_level: list[HashNode] = []
        for i in range(0, len(nodes), 2):
            left = nodes[i]
            if i + 1 < len(nodes):
                right = nodes[i + 1]
                next_level.append(
                    HashNode(hash=hash_pair(left.hash, right.hash), left=left, right=right)
                )
            else:
                next_level.append(left)
        nodes = next_level

    return nodes[0]


def sort_leaves(leaves: Iterable[Leaf]) -> list[Leaf]:
    """Sort leaves by id, the canonical order for tree construction."""
    return sorted(leaves, key=lambda leaf: leaf.id)


class MerkleTree:
    """Incrementally updatable merkle tree over a sorted leaf set."""

    def __init__(self, leaves: list[Leaf] | None = None):
        self._leaves: dict[str, Leaf] = {}
        self.root_node: HashNode | None = None
        for leaf in leaves or []:
            self._leaves[leaf.id] = leaf
        self._rebuild()

    @classmethod
    def from_leaves(cls, leaves: Iterable[Leaf]) -> MerkleTree:
        """Build a tree from leaves in any order."""
        return cls(list(leaves))

    @property
    def leaves(self) -> list[Leaf]:
        """Leaves sorted by id."""
        return sort_leaves(self._leaves.values())

    @property
    def root(self) -> str:
        """Root hash, or ``EMPTY_ROOT`` when no leaves are tracked."""
        if self.root_node is None:
            return EMPTY_ROOT
        return self.root_node.hash

    def __len__(self) -> int:
        return len(self._leaves)

    def __contains__(self, leaf_id: object) -> bool:
        return leaf_id in self._leaves

    def get(self, leaf_id: str) -> Leaf | None:
        return self._leaves.get(leaf_id)

    def update(self, leaf_id: str, new_hash: str) -> str:
        """
        Set the hash of a leaf, inserting it if absent, and rebuild.

        Returns the root unchanged when ``new_hash`` equals the stored hash,
        so repeated saves of identical content do not look like changes.
        """
        existing = self._leaves.get(leaf_id)
        if existing is not None and existing.hash == new_hash:
            return self.root

        self._leaves[leaf_id] = Leaf(id=leaf_id, hash=new_hash)
        self._rebuild()
        return self.root

    def remove(self, leaf_id: str) -> str:
        """Drop a leaf and rebuild. Removing an unknown id is a no-op."""
        if self._leaves.pop(leaf_id, None) is None:
            return self.root
        self._rebuild()
        return self.root

    def compare(self, other: MerkleTree) -> TreeDiff:
        """
        Compare this tree (old) with another tree (new) to find changed leaves.

        Args:
            other: The newer tree (typically a fresh scan of the filesystem)

        Returns:
            TreeDiff with sorted lists of new, modified, and deleted leaf ids
        """
        diff = TreeDiff()
        if self.root == other.root:
            return diff

        old_ids = set(self._leaves)
        new_ids = set(other._leaves)

        diff.new = sorted(new_ids - old_ids)
        diff.deleted = sorted(old_ids - new_ids)
        diff.modified = sorted(
            leaf_id
            for leaf_id in old_ids & new_ids
            if self._leaves[leaf_id].hash != other._leaves[leaf_id].hash
        )
        return diff

    def render(self, short: int = 8) -> Tree:
        """Render the node structure as a rich Tree."""
        if self.root_node is None:
            return Tree("[dim](empty)[/dim]")

        def label(node: HashNode) -> str:
            if node.is_leaf:
                return f"[green]LEAF[/green] {node.hash[:short]} - {node.leaf_id}"
            return f"[bold]NODE[/bold] {node.hash[:short]}"

        def add(branch: Tree, node: HashNode) -> None:
            for child in (node.left, node.right):
                if child is not None:
                    add(branch.add(label(child)), child)

        tree = Tree(label(self.root_node))
        add(tree, self.root_node)
        return tree

    def _rebuild(self) -> None:
        leaves = self.leaves
        self.root_node = build_tree(leaves) if leaves else None
