"""Key-value storage backends for the remote index."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Protocol

import lancedb
import pyarrow as pa

from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)


class KVStore(Protocol):
    """
    Minimal key-value contract.

    No cross-key transactions, eventual consistency acceptable. ``put_many``
    writes a batch in one backend call but is not atomic across keys.
    Backend failures raise StorageUnavailableError.
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def put_many(self, entries: dict[str, str], ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKVStore:
    """In-process store with lazy TTL expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self.is_open = False

    async def open(self) -> None:
        self.is_open = True

    async def close(self) -> None:
        self.is_open = False

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def put_many(self, entries: dict[str, str], ttl_seconds: int | None = None) -> None:
        for key, value in entries.items():
            await self.put(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def expires_at(self, key: str) -> float | None:
        entry = self._data.get(key)
        return entry[1] if entry else None

    def __len__(self) -> int:
        return len(self._data)


def quote_literal(value: str) -> str:
    """Quote a string literal for a LanceDB filter expression."""
    return "'" + value.replace("'", "''") + "'"


class LanceKVStore:
    """
    LanceDB-backed store: one table of (key, value, expires_at) rows.

    Every write commits a new table version, so writes are upserts batched
    per call and the table is compacted every ``compact_every`` writes and
    on close. Compaction purges expired rows and prunes old versions.
    Expired rows are hidden from reads until then.
    """

    TABLE = "kv"
    SCHEMA = pa.schema([
        pa.field("key", pa.string()),
        pa.field("value", pa.string()),
        pa.field("expires_at", pa.float64()),
    ])

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], float] = time.time,
        compact_every: int = 100,
    ):
        self.db_path = db_path
        self._clock = clock
        self.compact_every = compact_every
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None
        # Lance commits are optimistic; one writer at a time avoids conflicts
        self._write_lock = threading.Lock()
        self._writes_since_compact = 0

    async def open(self) -> None:
        """Initialize database connection and create the table if needed."""
        await asyncio.to_thread(self._open_sync)

    def _open_sync(self) -> None:
        self.db_path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.db_path))
        if self.TABLE in self._db.list_tables().tables:
            self._table = self._db.open_table(self.TABLE)
            return
        self._table = self._db.create_table(self.TABLE, schema=self.SCHEMA)

    async def close(self) -> None:
        """Compact pending writes and close the database connection."""
        if self._table is not None and self._writes_since_compact:
            try:
                await self._run(self.compact_sync)
            except StorageUnavailableError as e:
                logger.warning("Compaction on close failed: %s", e)
        self._table = None
        self._db = None

    @property
    def table(self) -> lancedb.table.Table:
        if self._table is None:
            raise StorageUnavailableError("LanceKVStore is not open")
        return self._table

    async def get(self, key: str) -> str | None:
        return await self._run(self._get_sync, key)

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._run(self._put_many_sync, {key: value}, ttl_seconds)

    async def put_many(self, entries: dict[str, str], ttl_seconds: int | None = None) -> None:
        if entries:
            await self._run(self._put_many_sync, entries, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._run(self._delete_sync, key)

    async def compact(self) -> None:
        await self._run(self.compact_sync)

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageUnavailableError:
            raise
        except Exception as e:
            raise StorageUnavailableError(f"LanceDB operation failed: {e}") from e

    def _get_sync(self, key: str) -> str | None:
        rows = self.table.search().where(f"key = {quote_literal(key)}", prefilter=True).limit(1).to_list()
        if not rows:
            return None
        row = rows[0]
        expires_at = row.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return row["value"]

    def _put_many_sync(self, entries: dict[str, str], ttl_seconds: int | None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        data = pa.Table.from_pylist(
            [{"key": key, "value": value, "expires_at": expires_at} for key, value in entries.items()],
            schema=self.SCHEMA,
        )
        with self._write_lock:
            (
                self.table.merge_insert("key")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
            self._after_write()

    def _delete_sync(self, key: str) -> None:
        with self._write_lock:
            self.table.delete(f"key = {quote_literal(key)}")
            self._after_write()

    def _after_write(self) -> None:
        self._writes_since_compact += 1
        if self._writes_since_compact >= self.compact_every:
            self._compact_locked()

    def compact_sync(self) -> None:
        """Purge expired rows, merge fragments and drop superseded versions."""
        with self._write_lock:
            self._compact_locked()

    def _compact_locked(self) -> None:
        table = self.table
        table.delete(f"expires_at IS NOT NULL AND expires_at <= {self._clock()!r}")
        table.optimize(cleanup_older_than=timedelta(0))
        self._writes_since_compact = 0
        logger.debug("Compacted %s at version %d", self.TABLE, table.version)
