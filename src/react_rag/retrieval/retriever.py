"""Similarity retrieval with adjacent-chunk stitching."""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from typing import Any

from react_rag.config import RetrievalConfig
from react_rag.ingest.embedder import Embedder
from react_rag.retrieval.vector_store import VectorStore
from react_rag.types import RetrievedChunk, SearchResult

logger = logging.getLogger(__name__)


class DocumentRetriever:
    """Runs one search against the configured backend and never raises.

    Adjacent chunks widen each top-level match with its physical neighbours in
    the source document, so the model sees text that straddles chunk borders.
    Neighbours are appended after all top-level matches.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def search(
        self,
        namespace: str,
        query_text: str,
        *,
        similarity_threshold: float | None = None,
        top_n: int | None = None,
        adjacent_count: int | None = None,
        exclude_identifiers: Collection[tuple[str, str]] = (),
    ) -> SearchResult:
        threshold = (
            self.config.similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        limit = self.config.top_n if top_n is None else top_n
        adjacent = self.config.adjacent_chunks if adjacent_count is None else adjacent_count

        try:
            if not await self.vector_store.has_namespace(namespace):
                return SearchResult(
                    error_message=f"Invalid namespace - has it been populated yet? ({namespace})"
                )

            query_vector = await self.embedder.embed_query(query_text)
            matches = await self.vector_store.similarity_search(
                namespace,
                query_vector,
                similarity_threshold=threshold,
                top_n=limit,
                exclude_identifiers=exclude_identifiers,
            )
            if adjacent > 0 and matches:
                matches = await self._stitch_adjacent(
                    namespace, matches, adjacent, query_vector_length=len(query_vector)
                )
        except Exception as exc:
            logger.error("Similarity search failed: namespace=%s error=%s", namespace, exc)
            return SearchResult(error_message=str(exc) or exc.__class__.__name__)

        return SearchResult(
            context_texts=[chunk.text for chunk in matches],
            sources=matches,
        )

    async def _stitch_adjacent(
        self,
        namespace: str,
        matches: list[RetrievedChunk],
        adjacent_count: int,
        *,
        query_vector_length: int,
    ) -> list[RetrievedChunk]:
        claimed = [chunk.chunk_key for chunk in matches if chunk.chunk_key is not None]
        neighbours: list[RetrievedChunk] = []

        for match in matches:
            if match.doc_id is None or match.chunk_index is None:
                continue
            found = await self.vector_store.get_adjacent_chunks(
                namespace,
                match.doc_id,
                match.chunk_index,
                adjacent_count,
                exclude_ids=list(claimed),
                query_vector_length=query_vector_length,
            )
            for chunk in found:
                if chunk.chunk_key is not None:
                    claimed.append(chunk.chunk_key)
            neighbours.extend(found)

        return unique_chunks([*matches, *neighbours])


def unique_chunks(chunks: Iterable[RetrievedChunk]) -> list[RetrievedChunk]:
    """Keep the first occurrence of each `docId-chunkIndex`; legacy chunks always pass."""
    seen: set[str] = set()
    result: list[RetrievedChunk] = []
    for chunk in chunks:
        key = chunk.chunk_key
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        result.append(chunk)
    return result


def deduplicate_sources(sources: Iterable[Any]) -> list[RetrievedChunk]:
    """Collapse sources sharing a `(title, published)` identity, first one wins."""
    seen: set[tuple[str, str]] = set()
    result: list[RetrievedChunk] = []
    for source in sources:
        if not isinstance(source, RetrievedChunk):
            logger.error("Unexpected source shape during dedup: %r", source)
            continue
        key = source.source_key
        if key in seen:
            continue
        seen.add(key)
        result.append(source)
    return result
