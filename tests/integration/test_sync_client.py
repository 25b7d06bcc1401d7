"""End-to-end tests for the sync client against an in-process server."""

import shutil
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from merkle_sync.ai import ChunkProcessor, EmbeddingProvider
from merkle_sync.auth import StaticTokenVerifier
from merkle_sync.client import ApiClient, SyncClient
from merkle_sync.config import ClientConfig, ServerSettings, load_config
from merkle_sync.errors import InvalidRequestError, UnauthorizedError
from merkle_sync.fragments import WholeFileFragmenter, fragment_hash
from merkle_sync.kv import MemoryKVStore
from merkle_sync.server import create_app
from merkle_sync.service import SyncService
from merkle_sync.state import TreeStateStore


@pytest.fixture
def client(initialized_project: Path, api_client: ApiClient) -> SyncClient:
    return SyncClient(initialized_project, load_config(initialized_project), api=api_client)


def fresh_api() -> ApiClient:
    """ApiClient for a brand new server with no stored state."""
    service = SyncService(MemoryKVStore(), settings=ServerSettings(embedding_provider="none"))
    session = TestClient(create_app(service, StaticTokenVerifier()))
    return ApiClient(base_url="", auth_token="dev-token-alice", timeout=None, session=session)


class TestFirstSync:
    def test_new_project_does_full_index(self, client: SyncClient):
        result = client.sync()

        assert result.success
        assert result.message == "New project indexed"
        # app/__init__.py is empty and yields no fragment
        assert result.chunks_total == 3
        assert result.chunks_needed == 3
        assert result.chunks_cached == 0
        assert client.store.load_project() is not None

    def test_second_sync_is_noop(self, client: SyncClient):
        first = client.sync()
        second = client.sync()

        assert second.message == "Already in sync"
        assert second.merkle_root == first.merkle_root
        assert second.chunks_total == 0


class TestIncrementalSync:
    def test_modified_file_sends_only_its_fragment(self, client: SyncClient, initialized_project: Path):
        client.sync()
        orders = initialized_project / "app" / "orders.py"
        orders.write_text(orders.read_text() + "\n\nTAX_RATE = 8\n")

        result = client.sync()

        assert result.message == "Synced 1 new chunks"
        assert result.chunks_total == 1
        assert result.chunks_needed == 1
        assert client.store.pending_dirty() == set()
        assert client.sync().message == "Already in sync"

    def test_deleted_file_records_new_root(self, client: SyncClient, initialized_project: Path):
        client.sync()
        (initialized_project / "app" / "handlers" / "refunds.py").unlink()

        result = client.sync()

        assert result.chunks_total == 0
        assert result.merkle_root == client.store.load().root
        assert client.sync().message == "Already in sync"

    def test_copied_content_is_not_resent(self, client: SyncClient, initialized_project: Path):
        client.sync()
        shutil.copy(initialized_project / "web" / "cart.ts", initialized_project / "web" / "cart_copy.ts")

        result = client.sync()

        assert result.chunks_total == 1
        assert result.chunks_needed == 0
        assert result.chunks_cached == 1

    def test_lost_queue_sends_all_files(self, client: SyncClient, initialized_project: Path):
        client.sync()
        orders = initialized_project / "app" / "orders.py"
        orders.write_text("ORDERS = []\n")
        client.refresh_tree()
        client.store.drain_dirty()

        result = client.sync()

        assert result.chunks_total == 3
        assert result.chunks_needed == 1
        assert result.chunks_cached == 2

    def test_changes_during_sync_stay_queued(self, client: SyncClient, initialized_project: Path):
        client.sync()
        (initialized_project / "web" / "cart.ts").write_text("export const X = 1;\n")
        client.refresh_tree()

        original = client.two_phase_sync

        def two_phase_then_edit(*args, **kwargs):
            result = original(*args, **kwargs)
            client.store.enqueue_dirty("app/orders.py")
            return result

        client.two_phase_sync = two_phase_then_edit
        client.sync()

        assert client.store.pending_dirty() == {"app/orders.py"}


class TestServerState:
    def test_server_without_record_gets_full_index(self, client: SyncClient):
        client.sync()
        client.api = fresh_api()

        result = client.sync()
        assert result.message == "New project indexed"
        assert result.chunks_needed == 3

    def test_rejected_token(self, initialized_project: Path, test_client: TestClient):
        api = ApiClient(base_url="", auth_token=None, timeout=None, session=test_client)
        client = SyncClient(initialized_project, ClientConfig(), api=api)
        with pytest.raises(UnauthorizedError):
            client.sync()


class TestRefreshTree:
    def test_offline_edits_are_queued(self, client: SyncClient, initialized_project: Path):
        client.refresh_tree()
        (initialized_project / "app" / "orders.py").write_text("ORDERS = []\n")
        (initialized_project / "web" / "cart.ts").unlink()

        client.refresh_tree()

        assert client.store.pending_dirty() == {"app/orders.py", "web/cart.ts"}

    def test_first_scan_queues_nothing(self, client: SyncClient):
        client.refresh_tree()
        assert client.store.pending_dirty() == set()
        assert isinstance(client.store, TreeStateStore)


class TestFragments:
    def test_whole_file_fragment(self):
        content = "def a():\n    return 1\n"
        (fragment,) = WholeFileFragmenter().fragments("pkg/mod.py", content)

        assert fragment.hash == fragment_hash(content)
        assert fragment.name == "mod"
        assert fragment.language_id == "python"
        assert fragment.to_meta().to_wire() == {
            "hash": fragment_hash(content),
            "kind": "block",
            "name": "mod",
            "lineRange": [1, 3],
            "size": len(content),
            "filePath": "pkg/mod.py",
        }
        assert "content" not in fragment.to_meta().to_wire()
        assert fragment.to_payload().to_wire()["content"] == content

    def test_blank_file_has_no_fragments(self):
        assert WholeFileFragmenter().fragments("empty.py", "\n  \n") == []

    def test_unknown_extension_is_text(self):
        (fragment,) = WholeFileFragmenter().fragments("notes.txt", "hello")
        assert fragment.language_id == "text"


class WordEmbedder(EmbeddingProvider):
    WORDS = ["orders", "refunds", "cart"]

    @property
    def dimensions(self) -> int:
        return len(self.WORDS)

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [[1.0 if word in text.lower() else 0.0 for word in self.WORDS] for text in texts]


class TestSearch:
    @pytest.fixture
    def client(self, initialized_project: Path) -> SyncClient:
        service = SyncService(
            MemoryKVStore(),
            settings=ServerSettings(embedding_provider="none"),
            processor=ChunkProcessor(embedder=WordEmbedder()),
        )
        session = TestClient(create_app(service, StaticTokenVerifier()))
        api = ApiClient(base_url="", auth_token="dev-token-alice", timeout=None, session=session)
        return SyncClient(initialized_project, load_config(initialized_project), api=api)

    def test_search_before_first_sync(self, client: SyncClient):
        with pytest.raises(InvalidRequestError):
            client.search("refunds")

    def test_search_finds_file(self, client: SyncClient):
        client.sync()

        response = client.search("refunds", top_k=1)

        (hit,) = response.results
        assert hit.file_path == "app/handlers/refunds.py"
        assert hit.line_range[0] == 1

    def test_deleted_file_leaves_results(self, client: SyncClient, initialized_project: Path):
        client.sync()
        (initialized_project / "app" / "handlers" / "refunds.py").unlink()
        client.sync()

        paths = [hit.file_path for hit in client.search("refunds").results]
        assert "app/handlers/refunds.py" not in paths
        assert "app/orders.py" in paths
