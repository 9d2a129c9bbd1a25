"""DataStax Astra DB backend via astrapy, one collection per workspace."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Collection
from typing import Any

from react_rag.config import Settings
from react_rag.retrieval.vector_store import adjacent_bounds, chunk_metadata, keep_adjacent
from react_rag.types import DocumentChunk, RetrievedChunk, coerce_chunk_index

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")
# Data API ceiling for exact counts.
_COUNT_UPPER_BOUND = 1000


def collection_name(namespace: str) -> str:
    """Astra collection names allow only letters, digits and underscores."""
    return "ns_" + _UNSAFE.sub("_", namespace)


class AstraVectorStore:
    """Vector backend storing chunk metadata as top-level document fields."""

    def __init__(self, database: Any) -> None:
        self.database = database

    @classmethod
    def from_settings(cls, settings: Settings) -> "AstraVectorStore":
        if not settings.astra_db_application_token or not settings.astra_db_endpoint:
            raise ValueError(
                "ASTRA_DB_APPLICATION_TOKEN and ASTRA_DB_ENDPOINT are required for VECTOR_DB=astra"
            )

        from astrapy import DataAPIClient

        client = DataAPIClient(settings.astra_db_application_token)
        return cls(client.get_database(settings.astra_db_endpoint))

    async def has_namespace(self, namespace: str) -> bool:
        names = await asyncio.to_thread(self.database.list_collection_names)
        return collection_name(namespace) in names

    async def namespace_count(self, namespace: str) -> int:
        if not await self.has_namespace(namespace):
            return 0
        from astrapy.exceptions import TooManyDocumentsToCountException

        collection = self.database.get_collection(collection_name(namespace))
        try:
            count = await asyncio.to_thread(
                collection.count_documents, filter={}, upper_bound=_COUNT_UPPER_BOUND
            )
        except TooManyDocumentsToCountException:
            return _COUNT_UPPER_BOUND
        return int(count)

    async def upsert(
        self,
        namespace: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        if not embeddings:
            return

        name = collection_name(namespace)
        if not await self.has_namespace(namespace):
            await asyncio.to_thread(
                self.database.create_collection, name, dimension=len(embeddings[0])
            )
        collection = self.database.get_collection(name)
        documents = [
            {"_id": chunk.chunk_id, "$vector": embedding, **chunk_metadata(chunk)}
            for chunk, embedding in zip(chunks, embeddings, strict=True)
        ]
        # insert_many rejects existing _ids; replaced chunks are deleted first.
        await asyncio.to_thread(
            collection.delete_many, {"_id": {"$in": [doc["_id"] for doc in documents]}}
        )
        await asyncio.to_thread(collection.insert_many, documents)

    async def similarity_search(
        self,
        namespace: str,
        query_vector: list[float],
        *,
        similarity_threshold: float,
        top_n: int,
        exclude_identifiers: Collection[tuple[str, str]] = (),
    ) -> list[RetrievedChunk]:
        collection = self.database.get_collection(collection_name(namespace))
        documents = await asyncio.to_thread(
            lambda: list(
                collection.find(
                    filter={},
                    sort={"$vector": query_vector},
                    limit=top_n,
                    include_similarity=True,
                )
            )
        )

        excluded = set(exclude_identifiers)
        results: list[RetrievedChunk] = []
        for document in documents:
            score = float(document.get("$similarity", 0.0))
            if score < similarity_threshold:
                continue
            chunk = RetrievedChunk.from_metadata(_strip_reserved(document), score=score)
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

        low, high = adjacent_bounds(index, adjacent_count)
        query_filter = {"docId": doc_id, "chunkIndex": {"$gte": low, "$lte": high}}
        try:
            collection = self.database.get_collection(collection_name(namespace))
            documents = await asyncio.to_thread(lambda: list(collection.find(filter=query_filter)))
        except Exception as exc:
            logger.error(
                "Adjacent chunk lookup failed: namespace=%s doc_id=%s error=%s",
                namespace,
                doc_id,
                exc,
            )
            return []

        # The range filter includes the anchor chunk; keep_adjacent drops it.
        chunks = [RetrievedChunk.from_metadata(_strip_reserved(doc)) for doc in documents]
        return keep_adjacent(chunks, index, exclude_ids)


def _strip_reserved(document: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in document.items() if k not in {"_id", "$vector", "$similarity"}}
