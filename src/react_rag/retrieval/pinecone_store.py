"""Pinecone backend.

The Pinecone SDK is synchronous; every call runs in a worker thread so the
chat turn coroutine keeps yielding.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from typing import Any

from react_rag.config import Settings
from react_rag.retrieval.vector_store import adjacent_bounds, chunk_metadata, keep_adjacent
from react_rag.types import DocumentChunk, RetrievedChunk, coerce_chunk_index

logger = logging.getLogger(__name__)


class PineconeVectorStore:
    """Vector backend over one Pinecone index, one Pinecone namespace per workspace."""

    def __init__(self, index: Any) -> None:
        self.index = index

    @classmethod
    def from_settings(cls, settings: Settings) -> "PineconeVectorStore":
        if not settings.pinecone_api_key or not settings.pinecone_index:
            raise ValueError("PINECONE_API_KEY and PINECONE_INDEX are required for VECTOR_DB=pinecone")

        from pinecone import Pinecone

        client = Pinecone(api_key=settings.pinecone_api_key)
        return cls(client.Index(settings.pinecone_index))

    async def has_namespace(self, namespace: str) -> bool:
        return await self.namespace_count(namespace) > 0

    async def namespace_count(self, namespace: str) -> int:
        stats = await asyncio.to_thread(self.index.describe_index_stats)
        namespaces = _field(stats, "namespaces") or {}
        entry = namespaces.get(namespace)
        if entry is None:
            return 0
        return int(_field(entry, "vector_count") or 0)

    async def upsert(
        self,
        namespace: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        vectors = [
            {
                "id": chunk.chunk_id,
                "values": embedding,
                # Pinecone rejects null metadata values.
                "metadata": {k: v for k, v in chunk_metadata(chunk).items() if v is not None},
            }
            for chunk, embedding in zip(chunks, embeddings, strict=True)
        ]
        await asyncio.to_thread(self.index.upsert, vectors=vectors, namespace=namespace)

    async def similarity_search(
        self,
        namespace: str,
        query_vector: list[float],
        *,
        similarity_threshold: float,
        top_n: int,
        exclude_identifiers: Collection[tuple[str, str]] = (),
    ) -> list[RetrievedChunk]:
        response = await asyncio.to_thread(
            self.index.query,
            vector=query_vector,
            top_k=top_n,
            namespace=namespace,
            include_metadata=True,
        )

        excluded = set(exclude_identifiers)
        results: list[RetrievedChunk] = []
        for match in _field(response, "matches") or []:
            score = float(_field(match, "score") or 0.0)
            if score < similarity_threshold:
                continue
            chunk = RetrievedChunk.from_metadata(dict(_field(match, "metadata") or {}), score=score)
            if chunk.source_key in excluded:
                continue
            results.append(chunk)
        return results

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
        if not query_vector_length:
            # A metadata-only query still needs a vector of the index dimension.
            logger.warning(
                "Skipping adjacent chunk lookup without a query vector length: doc_id=%s",
                doc_id,
            )
            return []

        low, high = adjacent_bounds(index, adjacent_count)
        try:
            response = await asyncio.to_thread(
                self.index.query,
                vector=[0.0] * query_vector_length,
                top_k=adjacent_count * 2,
                namespace=namespace,
                include_metadata=True,
                filter={
                    "docId": {"$eq": doc_id},
                    "chunkIndex": {"$gte": low, "$lte": high, "$ne": index},
                },
            )
        except Exception as exc:
            logger.error(
                "Adjacent chunk lookup failed: namespace=%s doc_id=%s error=%s",
                namespace,
                doc_id,
                exc,
            )
            return []

        chunks = [
            RetrievedChunk.from_metadata(dict(_field(match, "metadata") or {}))
            for match in _field(response, "matches") or []
        ]
        return keep_adjacent(chunks, index, exclude_ids)


def _field(obj: Any, name: str) -> Any:
    # SDK responses are attribute-style objects; plain dicts show up in tests and older SDKs.
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)
