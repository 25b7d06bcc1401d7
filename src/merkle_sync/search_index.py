"""Per-project vector index of processed fragments, queried by /v1/search."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol

import lancedb
import pyarrow as pa

from .errors import StorageUnavailableError
from .kv import quote_literal

logger = logging.getLogger(__name__)


@dataclass
class IndexEntry:
    """A fragment location with its summary and embedding."""

    hash: str
    file_path: str | None
    start_line: int
    end_line: int
    kind: str
    name: str | None
    summary: str
    vector: list[float]

    @property
    def id(self) -> str:
        """Unique within a project: "{file_path}:{start_line}", or the hash for pathless fragments."""
        if self.file_path is None:
            return self.hash
        return f"{self.file_path}:{self.start_line}"

    def to_dict(self, user_id: str, project_id: str) -> dict[str, Any]:
        """Convert to dictionary for LanceDB insertion."""
        return {
            "row_id": f"{user_id}:{project_id}:{self.id}",
            "user_id": user_id,
            "project_id": project_id,
            "hash": self.hash,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "kind": self.kind,
            "name": self.name,
            "summary": self.summary,
            "vector": self.vector,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> IndexEntry:
        return cls(
            hash=row["hash"],
            file_path=row["file_path"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            kind=row["kind"],
            name=row["name"],
            summary=row["summary"],
            vector=list(row["vector"]),
        )


@dataclass
class ScoredEntry:
    entry: IndexEntry
    score: float  # 1 / (1 + squared L2 distance), higher is closer


class VectorIndex(Protocol):
    """
    Fragment vectors scoped by (caller, project).

    Rows of one project are never visible to searches of another project
    or another caller. Backend failures raise StorageUnavailableError.
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def upsert(self, user_id: str, project_id: str, entries: list[IndexEntry]) -> None: ...

    async def remove_paths(self, user_id: str, project_id: str, file_paths: list[str]) -> None: ...

    async def clear_project(self, user_id: str, project_id: str) -> None: ...

    async def search(
        self, user_id: str, project_id: str, vector: list[float], limit: int
    ) -> list[ScoredEntry]: ...

    async def count(self, user_id: str, project_id: str) -> int: ...


def _similarity(distance: float) -> float:
    return 1.0 / (1.0 + distance)


class MemoryVectorIndex:
    """In-process index with brute-force L2 search."""

    def __init__(self):
        self._projects: dict[tuple[str, str], dict[str, IndexEntry]] = {}

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def upsert(self, user_id: str, project_id: str, entries: list[IndexEntry]) -> None:
        rows = self._projects.setdefault((user_id, project_id), {})
        for entry in entries:
            rows[entry.id] = entry

    async def remove_paths(self, user_id: str, project_id: str, file_paths: list[str]) -> None:
        rows = self._projects.get((user_id, project_id), {})
        paths = set(file_paths)
        for row_id in [row_id for row_id, entry in rows.items() if entry.file_path in paths]:
            del rows[row_id]

    async def clear_project(self, user_id: str, project_id: str) -> None:
        self._projects.pop((user_id, project_id), None)

    async def search(
        self, user_id: str, project_id: str, vector: list[float], limit: int
    ) -> list[ScoredEntry]:
        scored = [
            ScoredEntry(entry, _similarity(math.dist(entry.vector, vector) ** 2))
            for entry in self._projects.get((user_id, project_id), {}).values()
            if len(entry.vector) == len(vector)
        ]
        scored.sort(key=lambda s: (-s.score, s.entry.id))
        return scored[:limit]

    async def count(self, user_id: str, project_id: str) -> int:
        return len(self._projects.get((user_id, project_id), {}))


class LanceVectorIndex:
    """LanceDB-backed index: one ``code_chunks`` table shared by every project."""

    TABLE = "code_chunks"

    def __init__(self, db_path: Path, dimensions: int, compact_every: int = 100):
        self.db_path = db_path
        self.dimensions = dimensions
        self.compact_every = compact_every
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None
        self._write_lock = threading.Lock()
        self._writes_since_compact = 0

    @property
    def schema(self) -> pa.Schema:
        return pa.schema([
            pa.field("row_id", pa.string()),
            pa.field("user_id", pa.string()),
            pa.field("project_id", pa.string()),
            pa.field("hash", pa.string()),
            pa.field("file_path", pa.string()),
            pa.field("start_line", pa.int32()),
            pa.field("end_line", pa.int32()),
            pa.field("kind", pa.string()),
            pa.field("name", pa.string()),
            pa.field("summary", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), self.dimensions)),
        ])

    async def open(self) -> None:
        """Initialize database connection and create the table if needed."""
        await asyncio.to_thread(self._open_sync)

    def _open_sync(self) -> None:
        self.db_path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.db_path))
        if self.TABLE in self._db.list_tables().tables:
            self._table = self._db.open_table(self.TABLE)
            return
        self._table = self._db.create_table(self.TABLE, schema=self.schema)

    async def close(self) -> None:
        """Compact pending writes and close the database connection."""
        if self._table is not None and self._writes_since_compact:
            try:
                await self._run(self._compact_sync)
            except StorageUnavailableError as e:
                logger.warning("Index compaction on close failed: %s", e)
        self._table = None
        self._db = None

    @property
    def table(self) -> lancedb.table.Table:
        if self._table is None:
            raise StorageUnavailableError("LanceVectorIndex is not open")
        return self._table

    async def upsert(self, user_id: str, project_id: str, entries: list[IndexEntry]) -> None:
        rows = [e.to_dict(user_id, project_id) for e in entries if len(e.vector) == self.dimensions]
        if len(rows) < len(entries):
            logger.debug("Skipping %d entries without a %d-d vector", len(entries) - len(rows), self.dimensions)
        if rows:
            await self._run(self._upsert_sync, rows)

    async def remove_paths(self, user_id: str, project_id: str, file_paths: list[str]) -> None:
        if not file_paths:
            return
        path_list = ", ".join(quote_literal(p) for p in file_paths)
        await self._run(self._delete_sync, f"{self._scope(user_id, project_id)} AND file_path IN ({path_list})")

    async def clear_project(self, user_id: str, project_id: str) -> None:
        await self._run(self._delete_sync, self._scope(user_id, project_id))

    async def search(
        self, user_id: str, project_id: str, vector: list[float], limit: int
    ) -> list[ScoredEntry]:
        rows = await self._run(self._search_sync, self._scope(user_id, project_id), vector, limit)
        # LanceDB returns _distance for vector search
        return [ScoredEntry(IndexEntry.from_row(row), _similarity(row.get("_distance", 0))) for row in rows]

    async def count(self, user_id: str, project_id: str) -> int:
        return await self._run(self.table.count_rows, self._scope(user_id, project_id))

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageUnavailableError:
            raise
        except Exception as e:
            raise StorageUnavailableError(f"LanceDB operation failed: {e}") from e

    @staticmethod
    def _scope(user_id: str, project_id: str) -> str:
        return f"user_id = {quote_literal(user_id)} AND project_id = {quote_literal(project_id)}"

    def _search_sync(self, scope: str, vector: list[float], limit: int) -> list[dict[str, Any]]:
        return self.table.search(vector).where(scope, prefilter=True).limit(limit).to_list()

    def _upsert_sync(self, rows: list[dict[str, Any]]) -> None:
        data = pa.Table.from_pylist(rows, schema=self.schema)
        with self._write_lock:
            (
                self.table.merge_insert("row_id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
            self._after_write()

    def _delete_sync(self, where: str) -> None:
        with self._write_lock:
            self.table.delete(where)
            self._after_write()

    def _after_write(self) -> None:
        self._writes_since_compact += 1
        if self._writes_since_compact >= self.compact_every:
            self._compact_locked()

    def _compact_sync(self) -> None:
        with self._write_lock:
            self._compact_locked()

    def _compact_locked(self) -> None:
        self.table.optimize(cleanup_older_than=timedelta(0))
        self._writes_since_compact = 0
