"""Client side of the sync protocol."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from .config import ClientConfig
from .errors import InvalidRequestError, SyncError, UnauthorizedError
from .fragments import Fragment, FragmentSource, WholeFileFragmenter
from .merkle import MerkleTree
from .protocol import (
    InitRequest,
    InitResponse,
    Phase1Request,
    Phase1Response,
    Phase2Request,
    Phase2Response,
    RootCheckRequest,
    RootCheckResponse,
    SearchRequest,
    SearchResponse,
    WireModel,
)
from .scanner import scan_leaves
from .state import TreeSnapshot, TreeStateStore

logger = logging.getLogger(__name__)


class ApiClient:
    """JSON/HTTP calls to the remote index."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None,
        timeout: float | None = 30.0,
        session: Any = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        # Anything with a requests-style post()/get(), e.g. a test client
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _request(self, method: str, path: str, body: WireModel | None = None) -> dict:
        kwargs: dict[str, Any] = {"headers": self._headers()}
        if body is not None:
            kwargs["json"] = body.to_wire()
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        response = getattr(self.session, method)(f"{self.base_url}{path}", **kwargs)
        if response.status_code >= 400:
            raise self._error_for(response)
        return response.json()

    @staticmethod
    def _error_for(response: Any) -> SyncError:
        try:
            body = response.json()
            message = body.get("message") or body.get("error") or response.text
        except ValueError:
            body, message = None, response.text
        details = body.get("details") if isinstance(body, dict) else None
        if response.status_code == 401:
            return UnauthorizedError(message, details)
        if 400 <= response.status_code < 500:
            return InvalidRequestError(message, details)
        error = SyncError(f"Server error {response.status_code}: {message}", details)
        error.status_code = response.status_code
        return error

    def health(self) -> dict:
        return self._request("get", "/v1/health")

    def check(self, request: RootCheckRequest) -> RootCheckResponse:
        return RootCheckResponse.model_validate(self._request("post", "/v1/index/check", request))

    def sync_phase1(self, request: Phase1Request) -> Phase1Response:
        return Phase1Response.model_validate(self._request("post", "/v1/index/sync", request))

    def sync_phase2(self, request: Phase2Request) -> Phase2Response:
        return Phase2Response.model_validate(self._request("post", "/v1/index/sync", request))

    def init(self, request: InitRequest) -> InitResponse:
        return InitResponse.model_validate(self._request("post", "/v1/index/init", request))

    def search(self, request: SearchRequest) -> SearchResponse:
        return SearchResponse.model_validate(self._request("post", "/v1/search", request))


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    merkle_root: str
    chunks_total: int = 0
    chunks_needed: int = 0
    chunks_cached: int = 0
    message: str = ""


class SyncClient:
    """
    Orchestrates a sync of one project against the remote index.

    Flow for a known project:
    1. Rescan the tree and queue any files changed while nobody was watching
    2. Check the merkle root with the server; stop if unchanged
    3. Phase 1: send hashes of the dirty files' fragments
    4. Phase 2: send content only for the hashes the server needs
    """

    def __init__(
        self,
        project_root: Path,
        config: ClientConfig,
        api: ApiClient | None = None,
        store: TreeStateStore | None = None,
        fragmenter: FragmentSource | None = None,
    ):
        self.project_root = project_root.resolve()
        self.config = config
        self.api = api or ApiClient(
            config.server_url, config.auth_token, timeout=config.request_timeout_seconds
        )
        self.store = store or TreeStateStore(self.project_root)
        self.fragmenter = fragmenter or WholeFileFragmenter()

    def refresh_tree(self) -> MerkleTree:
        """
        Rescan the project and save the snapshot.

        Differences from the previous snapshot are queued as dirty, which
        covers edits made while the watcher was not running.
        """
        leaves = scan_leaves(self.project_root, self.config.extensions, self.config.ignore_patterns)
        tree = MerkleTree.from_leaves(leaves)

        previous = self.store.load()
        if previous is not None and previous.root != tree.root:
            diff = previous.to_tree().compare(tree)
            if diff.has_changes:
                logger.info("Rescan found %d changed files", diff.total_changes)
                self.store.enqueue_many(diff.changed_ids)

        if previous is None or previous.root != tree.root:
            self.store.save(TreeSnapshot.from_tree(tree))
        return tree

    def sync(self) -> SyncResult:
        """Main sync entry point; picks full index or two-phase sync."""
        is_new = self.store.load_project() is None
        project = self.store.get_or_create_project()
        tree = self.refresh_tree()
        merkle_root = tree.root
        logger.info("Syncing project %s, root %s", project.project_id, merkle_root[:16])

        if is_new:
            return self.full_index(project.project_id, tree)

        check = self.api.check(RootCheckRequest(project_id=project.project_id, merkle_root=merkle_root))
        if check.server_root is None:
            logger.info("Server has no record of this project, doing full index")
            return self.full_index(project.project_id, tree)

        if not check.changed:
            self.store.drain_dirty()
            return SyncResult(success=True, merkle_root=merkle_root, message="Already in sync")

        pending = self.store.pending_dirty()
        if pending:
            # Deleted files have no fragments; they only affect the root
            fragments = self._fragments_for(sorted(p for p in pending if p in tree))
            removed = sorted(p for p in pending if p not in tree)
        else:
            # Root changed with an empty queue: state was lost, send everything
            logger.info("Dirty queue empty, hashing all files")
            fragments = self._fragments_for(leaf.id for leaf in tree.leaves)
            removed = []

        result = self.two_phase_sync(project.project_id, merkle_root, fragments, removed)
        self.store.drain_dirty(only=pending or None)
        return result

    def full_index(self, project_id: str, tree: MerkleTree) -> SyncResult:
        """First-time upload: every fragment with its content, in one request."""
        fragments = self._fragments_for(leaf.id for leaf in tree.leaves)
        pending = self.store.pending_dirty()
        response = self.api.init(InitRequest(
            project_id=project_id,
            merkle_root=tree.root,
            chunks=[fragment.to_payload() for fragment in fragments],
        ))
        self.store.drain_dirty(only=pending)
        logger.info("Init: %d stored, %d skipped", response.chunks_stored, response.chunks_skipped)
        return SyncResult(
            success=True,
            merkle_root=response.merkle_root,
            chunks_total=len(fragments),
            chunks_needed=response.chunks_stored,
            chunks_cached=response.chunks_skipped,
            message="New project indexed",
        )

    def two_phase_sync(
        self,
        project_id: str,
        merkle_root: str,
        fragments: list[Fragment],
        removed_paths: list[str] | None = None,
    ) -> SyncResult:
        """Phase 1 with hashes only, then phase 2 with content for needed hashes."""
        phase1 = self.api.sync_phase1(Phase1Request(
            project_id=project_id,
            merkle_root=merkle_root,
            chunks=[fragment.to_meta() for fragment in fragments],
            removed_paths=removed_paths or [],
        ))
        logger.info("Phase 1: %d needed, %d cached", len(phase1.needed), len(phase1.cached))

        # One fragment per needed hash; phase 2 is sent even when empty to record the root
        by_hash = {fragment.hash: fragment for fragment in fragments}
        needed = [by_hash[h].to_payload() for h in phase1.needed if h in by_hash]
        phase2 = self.api.sync_phase2(Phase2Request(
            project_id=project_id, merkle_root=merkle_root, chunks=needed
        ))
        logger.info("Phase 2: %d received", len(phase2.received))

        return SyncResult(
            success=True,
            merkle_root=phase2.merkle_root,
            chunks_total=len(fragments),
            chunks_needed=len(phase1.needed),
            chunks_cached=len(phase1.cached),
            message=f"Synced {len(needed)} new chunks",
        )

    def _fragments_for(self, relative_paths) -> list[Fragment]:
        fragments: list[Fragment] = []
        for relative_path in relative_paths:
            try:
                content = (self.project_root / relative_path).read_bytes().decode("utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.info("Skipping %s: %s", relative_path, e)
                continue
            fragments.extend(self.fragmenter.fragments(relative_path, content))
        return fragments

    def search(self, query: str, top_k: int = 10) -> SearchResponse:
        """Query the remote index of this project. Raises InvalidRequestError before the first sync."""
        project = self.store.load_project()
        if project is None:
            raise InvalidRequestError("Project has not been synced yet")
        return self.api.search(SearchRequest(project_id=project.project_id, query=query, top_k=top_k))
