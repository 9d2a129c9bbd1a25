"""Vector store interfaces and the in-memory backend."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from math import sqrt
from typing import Any, Protocol

from react_rag.types import DocumentChunk, RetrievedChunk, coerce_chunk_index


class VectorStore(Protocol):
    """Backend contract used by the retriever and the ingest pipeline."""

    async def has_namespace(self, namespace: str) -> bool:
        """Return whether the namespace exists at all."""

    async def namespace_count(self, namespace: str) -> int:
        """Return how many vectors the namespace holds."""

    async def upsert(
        self,
        namespace: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> None:
        """Insert or update chunk vectors."""

    async def similarity_search(
        self,
        namespace: str,
        query_vector: list[float],
        *,
        similarity_threshold: float,
        top_n: int,
        exclude_identifiers: Collection[tuple[str, str]] = (),
    ) -> list[RetrievedChunk]:
        """Return the best matches above the threshold, best first."""

    async def get_adjacent_chunks(
        self,
        namespace: str,
        doc_id: str,
        chunk_index: Any,
        adjacent_count: int,
        *,
        exclude_ids: Collection[str] = (),
        query_vector_length: int | None = None,
    ) -> list[RetrievedChunk]:
        """Return chunks of `doc_id` within `adjacent_count` of `chunk_index`.

        Never raises; returns an empty list for legacy chunks without an index
        and on backend errors.
        """


def adjacent_bounds(chunk_index: int, adjacent_count: int) -> tuple[int, int]:
    """Inclusive index range around `chunk_index`, clamped at zero."""
    return max(0, chunk_index - adjacent_count), chunk_index + adjacent_count


def keep_adjacent(
    chunks: list[RetrievedChunk], chunk_index: int, exclude_ids: Collection[str]
) -> list[RetrievedChunk]:
    """Drop the anchor chunk and already-claimed ids; order by chunk index."""
    excluded = set(exclude_ids)
    kept = [
        chunk
        for chunk in chunks
        if chunk.chunk_index is not None
        and chunk.chunk_index != chunk_index
        and chunk.chunk_key not in excluded
    ]
    kept.sort(key=lambda chunk: chunk.chunk_index or 0)
    for chunk in kept:
        chunk.is_adjacent_chunk = True
    return kept


@dataclass(slots=True)
class _StoredVector:
    chunk: DocumentChunk
    embedding: list[float]


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._namespaces: dict[str, dict[str, _StoredVector]] = {}

    async def has_namespace(self, namespace: str) -> bool:
        return namespace in self._namespaces

    async def namespace_count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))

    async def upsert(
        self,
        namespace: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        store = self._namespaces.setdefault(namespace, {})
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            store[chunk.chunk_id] = _StoredVector(chunk=chunk, embedding=embedding)

    async def delete_namespace(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)

    async def similarity_search(
        self,
        namespace: str,
        query_vector: list[float],
        *,
        similarity_threshold: float,
        top_n: int,
        exclude_identifiers: Collection[tuple[str, str]] = (),
    ) -> list[RetrievedChunk]:
        excluded = set(exclude_identifiers)
        scored: list[RetrievedChunk] = []
        for record in self._namespaces.get(namespace, {}).values():
            score = _cosine_similarity(query_vector, record.embedding)
            if score < similarity_threshold:
                continue
            chunk = _to_retrieved(record.chunk, score=score)
            if chunk.source_key in excluded:
                continue
            scored.append(chunk)

        scored.sort(key=lambda item: item.score or 0.0, reverse=True)
        return scored[:top_n]

    async def get_adjacent_chunks(
        self,
        namespace: str,
        doc_id: str,
        chunk_index: Any,
        adjacent_count: int,
        *,
        exclude_ids: Collection[str] = (),
        query_vector_length: int | None = None,
    ) -> list[RetrievedChunk]:
        index = coerce_chunk_index(chunk_index)
        if index is None:
            return []

        low, high = adjacent_bounds(index, adjacent_count)
        candidates = [
            _to_retrieved(record.chunk)
            for record in self._namespaces.get(namespace, {}).values()
            if record.chunk.doc_id == doc_id and low <= record.chunk.chunk_index <= high
        ]
        return keep_adjacent(candidates, index, exclude_ids)


def chunk_metadata(chunk: DocumentChunk) -> dict[str, Any]:
    """Flat metadata record stored alongside a vector."""
    return {
        **chunk.metadata,
        "docId": chunk.doc_id,
        "chunkIndex": chunk.chunk_index,
        "totalChunks": chunk.total_chunks,
        "text": chunk.text,
    }


def _to_retrieved(chunk: DocumentChunk, *, score: float | None = None) -> RetrievedChunk:
    return RetrievedChunk.from_metadata(chunk_metadata(chunk), score=score)


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
