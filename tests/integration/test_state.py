"""Tests for scanning and the durable tree state store."""

from pathlib import Path

from merkle_sync import STATE_DIR
from merkle_sync.config import ClientConfig
from merkle_sync.merkle import EMPTY_ROOT, Leaf, MerkleTree, digest
from merkle_sync.scanner import compute_leaf_hash, scan_leaves, should_ignore
from merkle_sync.state import TreeSnapshot, TreeStateStore

DEFAULTS = ClientConfig()


class TestShouldIgnore:
    """Tests for ignore-pattern matching."""

    def test_directory_patterns(self):
        patterns = DEFAULTS.ignore_patterns
        assert should_ignore("node_modules", patterns)
        assert should_ignore("node_modules/pkg/index.js", patterns)
        assert should_ignore("web/node_modules/pkg/index.js", patterns)
        assert should_ignore(".git/config", patterns)
        assert should_ignore(f"{STATE_DIR}/tree-state.json", patterns)

    def test_component_patterns(self):
        assert should_ignore("logs/debug.log", ["*.log"])
        assert not should_ignore("logs/debug.py", ["*.log"])

    def test_similar_names_not_ignored(self):
        patterns = DEFAULTS.ignore_patterns
        assert not should_ignore("rebuild/main.py", patterns)
        assert not should_ignore("src/distance.py", patterns)
        assert not should_ignore("app/orders.py", patterns)

    def test_anchored_pattern(self):
        assert should_ignore("generated/api.ts", ["generated/**"])
        assert not should_ignore("src/generated/api.ts", ["generated/**"])


class TestScanLeaves:
    """Tests for hashing a project tree."""

    def test_scan_sample_project(self, project: Path):
        found = scan_leaves(project, DEFAULTS.extensions, DEFAULTS.ignore_patterns)
        assert [leaf.id for leaf in found] == [
            "app/__init__.py",
            "app/handlers/refunds.py",
            "app/orders.py",
            "web/cart.ts",
        ]

    def test_leaf_hash_is_path_plus_content(self, project: Path):
        found = {leaf.id: leaf for leaf in scan_leaves(project, [".ts"], [])}
        content = (project / "web" / "cart.ts").read_text()
        assert found["web/cart.ts"].hash == digest("web/cart.ts" + content)
        assert found["web/cart.ts"].hash == compute_leaf_hash("web/cart.ts", content)

    def test_same_content_different_paths_differ(self, tmp_path: Path):
        (tmp_path / "a.py").write_text("x = 1\n")
        (tmp_path / "b.py").write_text("x = 1\n")
        first, second = scan_leaves(tmp_path, [".py"], [])
        assert first.hash != second.hash

    def test_binary_files_skipped(self, tmp_path: Path):
        (tmp_path / "blob.py").write_bytes(b"\x00\x01\x02")
        (tmp_path / "ok.py").write_text("pass\n")
        assert [leaf.id for leaf in scan_leaves(tmp_path, [".py"], [])] == ["ok.py"]

    def test_scan_is_deterministic(self, project: Path):
        first = MerkleTree.from_leaves(scan_leaves(project, DEFAULTS.extensions, DEFAULTS.ignore_patterns))
        second = MerkleTree.from_leaves(scan_leaves(project, DEFAULTS.extensions, DEFAULTS.ignore_patterns))
        assert first.root == second.root


class TestTreeStateStore:
    """Tests for snapshot and dirty queue persistence."""

    def test_load_missing_returns_none(self, tmp_path: Path):
        assert TreeStateStore(tmp_path).load() is None

    def test_save_and_load_roundtrip(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        tree = MerkleTree.from_leaves([Leaf(id="b.py", hash="2"), Leaf(id="a.py", hash="1")])
        store.save(TreeSnapshot.from_tree(tree))

        loaded = store.load()
        assert loaded.root == tree.root
        assert [leaf.id for leaf in loaded.leaves] == ["a.py", "b.py"]
        assert loaded.to_tree().root == tree.root

    def test_empty_snapshot(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        store.save(TreeSnapshot.from_tree(MerkleTree()))
        assert store.load().root == EMPTY_ROOT

    def test_atomic_save_leaves_no_temp_files(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        for i in range(3):
            store.save(TreeSnapshot.from_tree(MerkleTree([Leaf(id="a.py", hash=str(i))])))
        assert sorted(p.name for p in store.state_dir.iterdir()) == ["tree-state.json"]

    def test_corrupt_snapshot_returns_none(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        store.state_dir.mkdir(parents=True)
        store.tree_state_path.write_text('{"root": "abc", "leaves": [')
        assert store.load() is None

    def test_enqueue_is_idempotent(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        store.enqueue_dirty("a.py")
        store.enqueue_dirty("a.py")
        store.enqueue_many(["b.py", "a.py", "b.py"])
        assert store.load_queue().pending == ["a.py", "b.py"]

    def test_drain_all(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        store.enqueue_many(["a.py", "b.py"])
        assert store.drain_dirty() == {"a.py", "b.py"}

        queue = store.load_queue()
        assert queue.pending == []
        assert queue.last_synced_at is not None

    def test_drain_only_keeps_later_changes(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        store.enqueue_many(["a.py", "b.py"])
        synced = store.pending_dirty()
        store.enqueue_dirty("c.py")  # Arrived during the sync

        assert store.drain_dirty(only=synced) == {"a.py", "b.py"}
        assert store.pending_dirty() == {"c.py"}

    def test_project_record_is_stable(self, tmp_path: Path):
        store = TreeStateStore(tmp_path)
        assert store.load_project() is None
        first = store.get_or_create_project()
        assert store.get_or_create_project().project_id == first.project_id
