"""PostgreSQL + pgvector backend over asyncpg."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Collection
from typing import Any

from react_rag.config import Settings
from react_rag.retrieval.vector_store import (
    adjacent_bounds,
    chunk_metadata,
    keep_adjacent,
)
from react_rag.types import DocumentChunk, RetrievedChunk, coerce_chunk_index

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PGVectorStore:
    """Vector backend storing one row per chunk with a jsonb metadata column.

    `client` is anything with asyncpg's `fetch`/`fetchval`/`executemany`
    coroutines, usually an `asyncpg.Pool`.
    """

    def __init__(self, client: Any, *, table_name: str = "react_rag_vectors") -> None:
        if not _TABLE_NAME.match(table_name):
            raise ValueError(f"Invalid pgvector table name: {table_name!r}")
        self.client = client
        self.table_name = table_name

    @classmethod
    async def from_settings(cls, settings: Settings) -> "PGVectorStore":
        if not settings.pgvector_connection_string:
            raise ValueError("PGVECTOR_CONNECTION_STRING is required for VECTOR_DB=pgvector")

        import asyncpg

        pool = await asyncpg.create_pool(settings.pgvector_connection_string)
        return cls(pool, table_name=settings.pgvector_table_name)

    async def has_namespace(self, namespace: str) -> bool:
        return await self.namespace_count(namespace) > 0

    async def namespace_count(self, namespace: str) -> int:
        count = await self.client.fetchval(
            f"SELECT COUNT(id) FROM {self.table_name} WHERE namespace = $1",
            namespace,
        )
        return int(count or 0)

    async def upsert(
        self,
        namespace: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        rows = [
            (
                chunk.chunk_id,
                namespace,
                _vector_literal(embedding),
                json.dumps(chunk_metadata(chunk)),
            )
            for chunk, embedding in zip(chunks, embeddings, strict=True)
        ]
        await self.client.executemany(
            f"INSERT INTO {self.table_name} (id, namespace, embedding, metadata) "
            "VALUES ($1, $2, $3::vector, $4::jsonb) "
            "ON CONFLICT (id) DO UPDATE SET embedding = EXCLUDED.embedding, "
            "metadata = EXCLUDED.metadata",
            rows,
        )

    async def similarity_search(
        self,
        namespace: str,
        query_vector: list[float],
        *,
        similarity_threshold: float,
        top_n: int,
        exclude_identifiers: Collection[tuple[str, str]] = (),
    ) -> list[RetrievedChunk]:
        rows = await self.client.fetch(
            f"SELECT metadata, 1 - (embedding <=> $2::vector) AS similarity "
            f"FROM {self.table_name} WHERE namespace = $1 "
            "ORDER BY embedding <=> $2::vector LIMIT $3",
            namespace,
            _vector_literal(query_vector),
            top_n,
        )

        excluded = set(exclude_identifiers)
        results: list[RetrievedChunk] = []
        for row in rows:
            score = float(row["similarity"])
            if score < similarity_threshold:
                continue
            chunk = RetrievedChunk.from_metadata(_load_metadata(row["metadata"]), score=score)
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
        sql = (
            f"SELECT metadata FROM {self.table_name} "
            "WHERE namespace = $1 AND metadata->>'docId' = $2 "
            "AND (metadata->>'chunkIndex')::int >= $3 "
            "AND (metadata->>'chunkIndex')::int <= $4 "
            "AND (metadata->>'chunkIndex')::int != $5 "
            "ORDER BY (metadata->>'chunkIndex')::int"
        )
        try:
            rows = await self.client.fetch(sql, namespace, doc_id, low, high, index)
        except Exception as exc:
            logger.error(
                "Adjacent chunk lookup failed: namespace=%s doc_id=%s error=%s",
                namespace,
                doc_id,
                exc,
            )
            return []

        chunks = [RetrievedChunk.from_metadata(_load_metadata(row["metadata"])) for row in rows]
        return keep_adjacent(chunks, index, exclude_ids)


def _load_metadata(value: Any) -> dict[str, Any]:
    # asyncpg hands jsonb back as text unless a codec is registered.
    if isinstance(value, str):
        return json.loads(value)
    return dict(value or {})


def _vector_literal(vector: list[float]) -> str:
    return "[" + ",".join(str(float(value)) for value in vector) + "]"
