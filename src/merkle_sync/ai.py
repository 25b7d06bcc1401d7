"""Summarization and embedding of newly received fragments."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .config import ServerSettings
from .errors import SearchUnavailableError, UpstreamError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY = "Code chunk"

T = TypeVar("T")


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Return the embedding dimensions."""
        ...

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for a batch of texts.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors (same order as input)
        """
        ...


class LocalEmbeddingProvider(EmbeddingProvider):
    """Local embedding using FastEmbed (ONNX-based, lightweight)."""

    DIMENSIONS = {
        "BAAI/bge-base-en-v1.5": 768,
        "BAAI/bge-small-en-v1.5": 384,
        "BAAI/bge-large-en-v1.5": 1024,
    }

    def __init__(self, model_name: str = "BAAI/bge-small-en-v1.5"):
        self.model_name = model_name
        self._model = None  # Lazy loading

    @property
    def dimensions(self) -> int:
        return self.DIMENSIONS.get(self.model_name, 384)

    def _load_model(self):
        """Lazy load the model on first use."""
        if self._model is None:
            from fastembed import TextEmbedding

            self._model = TextEmbedding(model_name=self.model_name)

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Batch embed texts using FastEmbed."""
        if not texts:
            return []

        self._load_model()
        # FastEmbed returns a generator, convert to list
        embeddings = list(self._model.embed(texts))
        return [emb.tolist() for emb in embeddings]


def get_embedding_provider(settings: ServerSettings) -> EmbeddingProvider | None:
    """
    Factory function to get the configured embedding provider.

    Returns None when embedding is disabled.
    """
    if settings.embedding_provider == "local":
        return LocalEmbeddingProvider(settings.embedding_model)
    return None


@dataclass
class ProcessItem:
    """A fragment awaiting processing."""

    hash: str
    content: str
    language_id: str
    kind: str = "block"
    name: str | None = None


@dataclass
class ProcessedChunk:
    hash: str
    summary: str
    embedding: list[float]
    degraded: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"summary": self.summary, "embedding": self.embedding}


class Summarizer(ABC):
    """Produces one natural-language summary per fragment."""

    @abstractmethod
    def summarize(self, language_id: str, items: list[ProcessItem]) -> list[str]:
        """All items share ``language_id``. Returns one summary per item, in order."""
        ...


class MetadataSummarizer(Summarizer):
    """Describes a fragment from its kind, name and language."""

    def summarize(self, language_id: str, items: list[ProcessItem]) -> list[str]:
        summaries = []
        for item in items:
            first_line = next((ln.strip() for ln in item.content.splitlines() if ln.strip()), "")
            label = f"{language_id} {item.kind}"
            if item.name:
                label += f" {item.name}"
            summaries.append(f"{label}: {first_line[:120]}" if first_line else label)
        return summaries


class ChunkProcessor:
    """
    Runs summarization and embedding with a timeout per batch call.

    A failed or timed-out batch degrades to placeholder output instead of
    raising. The output always has one entry per input item, in input order.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider | None,
        summarizer: Summarizer | None = None,
        timeout_seconds: float = 25.0,
        summary_batch_size: int = 50,
        embedding_batch_size: int = 100,
        dimensions: int | None = None,
    ):
        self.embedder = embedder
        self.summarizer = summarizer or MetadataSummarizer()
        self.timeout_seconds = timeout_seconds
        self.summary_batch_size = summary_batch_size
        self.embedding_batch_size = embedding_batch_size
        self.dimensions = dimensions or (embedder.dimensions if embedder else 0)

    @classmethod
    def from_settings(cls, settings: ServerSettings) -> ChunkProcessor:
        return cls(
            embedder=get_embedding_provider(settings),
            timeout_seconds=settings.ai_timeout_seconds,
            summary_batch_size=settings.summary_batch_size,
            embedding_batch_size=settings.embedding_batch_size,
            dimensions=settings.embedding_dimensions,
        )

    async def _call(self, fn: Callable[..., T], *args, operation: str) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.timeout_seconds)
        except TimeoutError as e:
            raise UpstreamTimeoutError(f"{operation} timed out after {self.timeout_seconds}s") from e

    async def embed_query(self, query: str) -> list[float]:
        """
        Embed a search query with the same model used for fragment summaries.

        Raises:
            SearchUnavailableError: If no embedding provider is configured
            UpstreamError: If the provider fails or times out
        """
        if self.embedder is None:
            raise SearchUnavailableError("Search needs an embedding provider")
        try:
            vectors = await self._call(self.embedder.embed, [query], operation="Query embedding")
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(f"Query embedding failed: {e}") from e
        return list(vectors[0])

    async def process(self, items: list[ProcessItem]) -> list[ProcessedChunk]:
        if not items:
            return []

        summaries, summary_ok = await self._summarize(items)
        embeddings, embedding_ok = await self._embed(summaries)

        return [
            ProcessedChunk(
                hash=item.hash,
                summary=summaries[i],
                embedding=embeddings[i],
                degraded=not (summary_ok[i] and embedding_ok[i]),
            )
            for i, item in enumerate(items)
        ]

    async def _summarize(self, items: list[ProcessItem]) -> tuple[list[str], list[bool]]:
        summaries: list[str | None] = [None] * len(items)
        ok = [False] * len(items)

        # Group by language: the prompt is language specific
        groups: dict[str, list[int]] = {}
        for i, item in enumerate(items):
            groups.setdefault(item.language_id, []).append(i)

        for language_id, indices in groups.items():
            for start in range(0, len(indices), self.summary_batch_size):
                batch = indices[start:start + self.summary_batch_size]
                batch_items = [items[i] for i in batch]
                try:
                    result = await self._call(
                        self.summarizer.summarize, language_id, batch_items,
                        operation=f"Summarization batch ({len(batch)} {language_id} chunks)",
                    )
                except Exception as e:
                    logger.warning("Summarization failed, using fallback for %d chunks: %s", len(batch), e)
                    continue

                for j, i in enumerate(batch):
                    if j < len(result) and result[j]:
                        summaries[i] = result[j]
                        ok[i] = True

        missing = sum(1 for s in summaries if s is None)
        if missing:
            logger.warning("Missing %d summaries, using fallback", missing)
        return [s if s is not None else FALLBACK_SUMMARY for s in summaries], ok

    async def _embed(self, texts: list[str]) -> tuple[list[list[float]], list[bool]]:
        if self.embedder is None:
            return [[] for _ in texts], [True] * len(texts)

        embeddings: list[list[float]] = []
        ok: list[bool] = []
        for start in range(0, len(texts), self.embedding_batch_size):
            batch = texts[start:start + self.embedding_batch_size]
            try:
                vectors = await self._call(
                    self.embedder.embed, batch, operation=f"Embedding batch ({len(batch)} texts)"
                )
            except Exception as e:
                logger.warning("Embedding failed, using zero vectors for %d texts: %s", len(batch), e)
                vectors = None

            if vectors is not None and len(vectors) == len(batch):
                embeddings.extend(list(v) for v in vectors)
                ok.extend([True] * len(batch))
            else:
                embeddings.extend([0.0] * self.dimensions for _ in batch)
                ok.extend([False] * len(batch))
        return embeddings, ok
