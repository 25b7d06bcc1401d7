"""Code fragments: the unit of transfer in the two-phase sync."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .protocol import ChunkKind, ChunkMeta, ChunkWithContent

# Map file extensions to language ids
EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".cpp": "cpp",
    ".c": "c",
    ".h": "c",
}


def language_for_path(path: str) -> str:
    """Map a file path to a language id, "text" if unknown."""
    return EXTENSION_TO_LANGUAGE.get(os.path.splitext(path)[1].lower(), "text")


def fragment_hash(content: str) -> str:
    """SHA256 of fragment content. Identical code hashes identically everywhere."""
    return hashlib.sha256(content.encode()).hexdigest()


@dataclass
class Fragment:
    """A sub-file unit of code, tracked by content hash."""

    content: str
    kind: ChunkKind
    name: str | None
    start_line: int  # 1-indexed
    end_line: int  # 1-indexed
    language_id: str
    path: str  # Relative path of the source file

    @property
    def hash(self) -> str:
        return fragment_hash(self.content)

    @property
    def size(self) -> int:
        return len(self.content)

    def to_meta(self) -> ChunkMeta:
        """Phase 1 form: metadata only."""
        return ChunkMeta(
            hash=self.hash,
            kind=self.kind,
            name=self.name,
            line_range=(self.start_line, self.end_line),
            size=self.size,
            file_path=self.path,
        )

    def to_payload(self) -> ChunkWithContent:
        """Phase 2 form: metadata plus content."""
        return ChunkWithContent(
            hash=self.hash,
            content=self.content,
            kind=self.kind,
            name=self.name,
            language_id=self.language_id,
            line_range=(self.start_line, self.end_line),
            size=self.size,
            file_path=self.path,
        )


class FragmentSource(Protocol):
    """Splits a file into fragments."""

    def fragments(self, relative_path: str, content: str) -> list[Fragment]: ...


class WholeFileFragmenter:
    """One ``block`` fragment per file.

    Semantic splitting (functions, classes, ...) plugs in through
    FragmentSource; this is the default when no parser is configured.
    """

    def fragments(self, relative_path: str, content: str) -> list[Fragment]:
        if not content.strip():
            return []
        return [
            Fragment(
                content=content,
                kind=ChunkKind.BLOCK,
                name=Path(relative_path).stem,
                start_line=1,
                end_line=len(content.split("\n")),
                language_id=language_for_path(relative_path),
                path=relative_path,
            )
        ]
