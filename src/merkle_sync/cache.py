"""Content-addressed caches and project root records on top of a KVStore."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import StorageUnavailableError
from .kv import KVStore

logger = logging.getLogger(__name__)

# Existence entries store a marker; payload entries store JSON
PRESENT = "1"


@dataclass
class Partition:
    """Split of a hash list into hashes the server lacks and hashes it has."""

    needed: list[str] = field(default_factory=list)
    cached: list[str] = field(default_factory=list)


class ContentCache:
    """
    Cache keyed by content hash, shared across callers and projects.

    Every hit extends the entry's TTL. Entries are never deleted
    explicitly; they disappear by expiry.
    """

    def __init__(
        self,
        store: KVStore,
        namespace: str,
        ttl_seconds: int,
        lookup_timeout: float = 5.0,
        put_attempts: int = 3,
    ):
        self.store = store
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.lookup_timeout = lookup_timeout
        self.put_attempts = put_attempts

    def key(self, content_hash: str) -> str:
        return f"{self.namespace}:{content_hash}"

    # Lookups

    async def _lookup(self, key: str) -> str | None:
        try:
            return await asyncio.wait_for(self.store.get(key), self.lookup_timeout)
        except TimeoutError as e:
            raise StorageUnavailableError(f"Lookup timed out for {key}") from e

    async def get(self, content_hash: str) -> Any | None:
        """
        Fetch a payload and refresh its TTL.

        Raises:
            StorageUnavailableError: If the backend fails or times out
        """
        key = self.key(content_hash)
        raw = await self._lookup(key)
        if raw is None:
            return None
        await self._write_with_retry({key: raw})
        return _decode(raw)

    async def exists(self, content_hash: str) -> bool:
        return await self.get(content_hash) is not None

    async def _lookup_or_miss(self, content_hash: str) -> str | None:
        # A failed lookup counts as a miss: over-transfer beats data loss
        try:
            return await self._lookup(self.key(content_hash))
        except StorageUnavailableError as e:
            logger.warning("Cache lookup failed, treating %s as not cached: %s", content_hash[:12], e)
            return None

    async def _lookup_many(self, hashes: Iterable[str]) -> dict[str, str]:
        """Concurrent lookups, then one batched TTL refresh for every hit."""
        unique = list(dict.fromkeys(hashes))
        results = await asyncio.gather(*(self._lookup_or_miss(h) for h in unique))
        hits = {h: raw for h, raw in zip(unique, results) if raw is not None}
        if hits:
            await self._write_with_retry({self.key(h): raw for h, raw in hits.items()})
        return hits

    async def get_many(self, hashes: Iterable[str]) -> dict[str, Any]:
        """Fetch payloads for many hashes concurrently. Misses are omitted."""
        hits = await self._lookup_many(hashes)
        return {h: _decode(raw) for h, raw in hits.items()}

    async def exists_many(self, hashes: Iterable[str]) -> Partition:
        """
        Partition hashes into needed and cached.

        Lookups are issued concurrently. The partition covers every distinct
        input hash exactly once and keeps input order within each side.
        """
        unique = list(dict.fromkeys(hashes))
        hits = await self._lookup_many(unique)

        partition = Partition()
        for content_hash in unique:
            if content_hash in hits:
                partition.cached.append(content_hash)
            else:
                partition.needed.append(content_hash)
        return partition

    # Writes

    async def put(self, content_hash: str, payload: Any = True) -> bool:
        """
        Store a hash, optionally with a JSON-serializable payload.

        Storing the same hash twice overwrites it. Returns False if the put
        was dropped after exhausting retries.
        """
        return await self._write_with_retry({self.key(content_hash): _encode(payload)})

    async def put_many(self, items: Iterable[str] | dict[str, Any]) -> int:
        """
        Store many hashes in one batched write. No atomicity across the batch.

        Args:
            items: Hashes (existence entries) or a hash -> payload mapping

        Returns:
            Number of entries stored
        """
        if isinstance(items, dict):
            pairs = list(items.items())
        else:
            pairs = [(h, True) for h in dict.fromkeys(items)]
        if not pairs:
            return 0
        entries = {self.key(h): _encode(payload) for h, payload in pairs}
        return len(entries) if await self._write_with_retry(entries) else 0

    async def _write_with_retry(self, entries: dict[str, str]) -> bool:
        for attempt in range(1, self.put_attempts + 1):
            try:
                await asyncio.wait_for(
                    self.store.put_many(entries, self.ttl_seconds), self.lookup_timeout
                )
                return True
            except (StorageUnavailableError, TimeoutError) as e:
                if attempt < self.put_attempts:
                    logger.debug(
                        "Put of %d %s entries failed (attempt %d/%d): %s",
                        len(entries), self.namespace, attempt, self.put_attempts, e,
                    )
                    await asyncio.sleep(0.05 * attempt)
                else:
                    logger.warning(
                        "Dropping put of %d %s entries after %d attempts: %s",
                        len(entries), self.namespace, attempt, e,
                    )
        return False


def _encode(payload: Any) -> str:
    return PRESENT if payload is True else json.dumps(payload)


def _decode(raw: str) -> Any:
    return True if raw == PRESENT else json.loads(raw)


class ProjectRoots:
    """Last recorded merkle root per (caller, project). No TTL."""

    PREFIX = "merkleRoot"

    def __init__(self, store: KVStore, lookup_timeout: float = 5.0, put_attempts: int = 3):
        self.store = store
        self.lookup_timeout = lookup_timeout
        self.put_attempts = put_attempts

    def key(self, user_id: str, project_id: str) -> str:
        return f"{self.PREFIX}:{user_id}:{project_id}"

    async def get(self, user_id: str, project_id: str) -> str | None:
        """Recorded root, or None if the project was never synced (or the store is down)."""
        try:
            return await asyncio.wait_for(
                self.store.get(self.key(user_id, project_id)), self.lookup_timeout
            )
        except (StorageUnavailableError, TimeoutError) as e:
            # Reporting "never seen" forces a full resync, which is safe
            logger.warning("Root lookup failed for %s: %s", project_id, str(e) or "timed out")
            return None

    async def set(self, user_id: str, project_id: str, merkle_root: str) -> bool:
        """Record a root. Returns False if the write was dropped after exhausting retries."""
        key = self.key(user_id, project_id)
        for attempt in range(1, self.put_attempts + 1):
            try:
                await asyncio.wait_for(self.store.put(key, merkle_root), self.lookup_timeout)
                return True
            except (StorageUnavailableError, TimeoutError) as e:
                if attempt < self.put_attempts:
                    logger.debug(
                        "Root update for %s failed (attempt %d/%d): %s",
                        project_id, attempt, self.put_attempts, e,
                    )
                    await asyncio.sleep(0.05 * attempt)
                else:
                    logger.warning("Dropping root update for %s: %s", project_id, str(e) or "timed out")
        return False
