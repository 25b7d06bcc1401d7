"""Server side of the sync protocol: root check, phase 1, phase 2, full index."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .ai import ChunkProcessor, ProcessItem
from .auth import CallerIdentity
from .cache import ContentCache, ProjectRoots
from .config import ServerSettings
from .errors import InvalidRequestError, SearchUnavailableError, StorageUnavailableError
from .fragments import fragment_hash
from .kv import KVStore
from .protocol import (
    ChunkMeta,
    ChunkWithContent,
    InitRequest,
    InitResponse,
    Phase1Request,
    Phase1Response,
    Phase2Request,
    Phase2Response,
    RootCheckRequest,
    RootCheckResponse,
    SearchHit,
    SearchRequest,
    SearchResponse,
)
from .search_index import IndexEntry, MemoryVectorIndex, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class ProcessStats:
    processed: int = 0
    payload_hits: int = 0
    degraded: int = 0


class SyncService:
    """
    Stateless request handlers for the remote index.

    All state lives in the injected KV store (project roots, the
    fragment-hash existence cache and the processed-payload cache) and in
    the injected vector index behind search.
    """

    def __init__(
        self,
        store: KVStore,
        settings: ServerSettings | None = None,
        processor: ChunkProcessor | None = None,
        index: VectorIndex | None = None,
    ):
        self.settings = settings or ServerSettings()
        self.store = store
        self.index = index if index is not None else MemoryVectorIndex()
        self.roots = ProjectRoots(
            store,
            lookup_timeout=self.settings.lookup_timeout_seconds,
            put_attempts=self.settings.put_attempts,
        )
        self.chunk_hashes = ContentCache(
            store,
            namespace="chunkHash",
            ttl_seconds=self.settings.chunk_hash_ttl_seconds,
            lookup_timeout=self.settings.lookup_timeout_seconds,
            put_attempts=self.settings.put_attempts,
        )
        self.payloads = ContentCache(
            store,
            namespace="embedding",
            ttl_seconds=self.settings.payload_ttl_seconds,
            lookup_timeout=self.settings.lookup_timeout_seconds,
            put_attempts=self.settings.put_attempts,
        )
        self.processor = processor

    async def check_root(self, caller: CallerIdentity, request: RootCheckRequest) -> RootCheckResponse:
        """Compare the client's root with the last root recorded for the project."""
        server_root = await self.roots.get(caller.user_id, request.project_id)
        changed = server_root != request.merkle_root
        logger.info(
            "Check %s/%s: %s", caller.user_id, request.project_id, "changed" if changed else "unchanged"
        )
        return RootCheckResponse(changed=changed, server_root=server_root)

    async def phase1(self, caller: CallerIdentity, request: Phase1Request) -> Phase1Response:
        """Report which fragment hashes the server lacks. No content is involved."""
        partition = await self.chunk_hashes.exists_many(chunk.hash for chunk in request.chunks)
        logger.info(
            "Phase 1 %s/%s: %d needed, %d cached",
            caller.user_id, request.project_id, len(partition.needed), len(partition.cached),
        )

        # Phase 1 lists every fragment of each changed file: replace those files' rows,
        # filling cached fragments now and needed ones in phase 2
        replaced = list(dict.fromkeys(
            [chunk.file_path for chunk in request.chunks if chunk.file_path] + request.removed_paths
        ))
        payloads = await self.payloads.get_many(partition.cached) if self.processor else {}
        await self._update_index(
            caller, request.project_id, request.chunks, payloads, replaced_paths=replaced
        )
        return Phase1Response(needed=partition.needed, cached=partition.cached)

    async def phase2(self, caller: CallerIdentity, request: Phase2Request) -> Phase2Response:
        """Store content for needed fragments and record the project's new root."""
        self._verify(request.chunks)

        received = list(dict.fromkeys(chunk.hash for chunk in request.chunks))
        await self.chunk_hashes.put_many(received)
        stats, payloads = await self._process(request.chunks)
        await self._update_index(caller, request.project_id, request.chunks, payloads)
        await self.roots.set(caller.user_id, request.project_id, request.merkle_root)

        logger.info(
            "Phase 2 %s/%s: %d received, %d processed, %d degraded",
            caller.user_id, request.project_id, len(received), stats.processed, stats.degraded,
        )
        return Phase2Response(
            received=received,
            merkle_root=request.merkle_root,
            message=f"Stored {len(received)} chunks",
        )

    async def init(self, caller: CallerIdentity, request: InitRequest) -> InitResponse:
        """Full index of a project the server has not seen, deduplicated by content hash."""
        self._verify(request.chunks)

        partition = await self.chunk_hashes.exists_many(chunk.hash for chunk in request.chunks)
        # Cached hashes are written too, extending their TTL
        await self.chunk_hashes.put_many(partition.needed + partition.cached)
        needed = set(partition.needed)
        _, payloads = await self._process([chunk for chunk in request.chunks if chunk.hash in needed])
        if self.processor is not None:
            payloads.update(await self.payloads.get_many(partition.cached))
        await self._update_index(caller, request.project_id, request.chunks, payloads, clear=True)
        await self.roots.set(caller.user_id, request.project_id, request.merkle_root)

        logger.info(
            "Init %s/%s: %d stored, %d skipped",
            caller.user_id, request.project_id, len(partition.needed), len(partition.cached),
        )
        return InitResponse(
            merkle_root=request.merkle_root,
            chunks_stored=len(partition.needed),
            chunks_skipped=len(partition.cached),
        )

    async def search(self, caller: CallerIdentity, request: SearchRequest) -> SearchResponse:
        """Nearest fragments of one project to the embedded query."""
        if self.processor is None:
            raise SearchUnavailableError("Search needs an embedding provider")
        vector = await self.processor.embed_query(request.query)
        hits = await self.index.search(caller.user_id, request.project_id, vector, request.top_k)
        logger.info("Search %s/%s: %d results", caller.user_id, request.project_id, len(hits))
        return SearchResponse(results=[
            SearchHit(
                hash=hit.entry.hash,
                file_path=hit.entry.file_path,
                line_range=(hit.entry.start_line, hit.entry.end_line),
                kind=hit.entry.kind,
                name=hit.entry.name,
                summary=hit.entry.summary,
                score=hit.score,
            )
            for hit in hits
        ])

    def _verify(self, chunks: list[ChunkWithContent]) -> None:
        """Reject content that does not hash to its claimed hash."""
        if not self.settings.verify_hashes:
            return
        mismatched = [chunk.hash for chunk in chunks if fragment_hash(chunk.content) != chunk.hash]
        if mismatched:
            raise InvalidRequestError(
                f"{len(mismatched)} chunk(s) do not match their hash", details={"hashes": mismatched}
            )

    async def _process(self, chunks: list[ChunkWithContent]) -> tuple[ProcessStats, dict[str, Any]]:
        """
        Summarize and embed fragments with no cached payload.

        Returns:
            Stats, and hash -> payload for every fragment with a usable payload
        """
        stats = ProcessStats()
        if self.processor is None or not chunks:
            return stats, {}

        unique = list({chunk.hash: chunk for chunk in chunks}.values())
        hits = await self.payloads.get_many(chunk.hash for chunk in unique)
        stats.payload_hits = len(hits)
        todo = [chunk for chunk in unique if chunk.hash not in hits]
        if not todo:
            return stats, hits

        results = await self.processor.process([
            ProcessItem(
                hash=chunk.hash,
                content=chunk.content,
                language_id=chunk.language_id,
                kind=chunk.kind.value,
                name=chunk.name,
            )
            for chunk in todo
        ])
        stats.processed = len(results)
        stats.degraded = sum(1 for r in results if r.degraded)

        # Degraded placeholders are not cached, so the next sighting retries
        fresh = {r.hash: r.to_payload() for r in results if not r.degraded}
        await self.payloads.put_many(fresh)
        return stats, {**hits, **fresh}

    async def _update_index(
        self,
        caller: CallerIdentity,
        project_id: str,
        chunks: list[ChunkMeta],
        payloads: dict[str, Any],
        replaced_paths: list[str] | None = None,
        clear: bool = False,
    ) -> None:
        """Write search rows for fragments with an embedding. Failures only cost search freshness."""
        entries = []
        for chunk in chunks:
            payload = payloads.get(chunk.hash)
            if not isinstance(payload, dict) or not payload.get("embedding"):
                continue
            entries.append(IndexEntry(
                hash=chunk.hash,
                file_path=chunk.file_path,
                start_line=chunk.line_range[0],
                end_line=chunk.line_range[1],
                kind=chunk.kind.value,
                name=chunk.name,
                summary=payload.get("summary", ""),
                vector=payload["embedding"],
            ))

        try:
            if clear:
                await self.index.clear_project(caller.user_id, project_id)
            elif replaced_paths:
                await self.index.remove_paths(caller.user_id, project_id, replaced_paths)
            if entries:
                await self.index.upsert(caller.user_id, project_id, entries)
        except StorageUnavailableError as e:
            logger.warning("Search index update failed for %s: %s", project_id, e)
