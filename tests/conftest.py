"""Shared test fixtures for merkle-sync."""

import shutil
from pathlib import Path

import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from merkle_sync.auth import StaticTokenVerifier
from merkle_sync.client import ApiClient
from merkle_sync.config import ClientConfig, ServerSettings, get_state_dir, save_config
from merkle_sync.kv import MemoryKVStore
from merkle_sync.server import create_app
from merkle_sync.service import SyncService

AUTH_TOKEN = "dev-token-alice"


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def cli_runner():
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def sample_project():
    """Path to the fixture sample project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


@pytest.fixture
def project(tmp_path: Path, sample_project: Path) -> Path:
    """A writable copy of the sample project."""
    project = tmp_path / "project"
    shutil.copytree(sample_project, project)
    return project


def setup_sync_project(project_root: Path, config: ClientConfig | None = None) -> ClientConfig:
    """Initialize merkle-sync state at the given path without going through the CLI."""
    if config is None:
        config = ClientConfig(server_url="http://testserver")
    get_state_dir(project_root).mkdir(parents=True, exist_ok=True)
    save_config(config, project_root)
    return config


@pytest.fixture
def initialized_project(project: Path) -> Path:
    """Sample project with merkle-sync initialized (nothing synced)."""
    setup_sync_project(project)
    return project


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store(clock: FakeClock) -> MemoryKVStore:
    return MemoryKVStore(clock=clock)


@pytest.fixture
def server_settings() -> ServerSettings:
    """Settings with embedding disabled so no model is downloaded."""
    return ServerSettings(embedding_provider="none")


@pytest.fixture
def sync_service(kv_store: MemoryKVStore, server_settings: ServerSettings) -> SyncService:
    return SyncService(kv_store, settings=server_settings)


@pytest.fixture
def test_client(sync_service: SyncService) -> TestClient:
    """HTTP client for an app backed by an in-memory store."""
    app = create_app(sync_service, StaticTokenVerifier())
    return TestClient(app)


@pytest.fixture
def api_client(test_client: TestClient) -> ApiClient:
    """ApiClient that talks to the in-process app instead of the network."""
    return ApiClient(base_url="", auth_token=AUTH_TOKEN, timeout=None, session=test_client)
