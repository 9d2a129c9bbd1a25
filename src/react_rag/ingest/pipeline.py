"""End-to-end ingest pipeline: split -> embed -> upsert."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from react_rag.ingest.chunker import TextSplitter
from react_rag.ingest.embedder import Embedder
from react_rag.retrieval.vector_store import VectorStore
from react_rag.types import DocumentChunk

logger = logging.getLogger(__name__)


class IngestPipeline:
    """Coordinates splitter/embedder/vector store stages.

    Every stored chunk carries `docId`, `chunkIndex` and `totalChunks`, which
    adjacent-chunk retrieval depends on.
    """

    def __init__(
        self,
        splitter: TextSplitter,
        embedder: Embedder,
        vector_store: VectorStore,
    ) -> None:
        self._splitter = splitter
        self._embedder = embedder
        self._vector_store = vector_store

    async def ingest_text(
        self,
        namespace: str,
        text: str,
        *,
        doc_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[DocumentChunk]:
        """Ingest one document's text into `namespace` and return the created chunks."""

        doc_id = doc_id or str(uuid.uuid4())
        chunks = self._splitter.chunk_document(doc_id, text, metadata)
        if not chunks:
            logger.warning("Document produced no chunks: namespace=%s doc_id=%s", namespace, doc_id)
            return []

        embeddings = await self._embedder.embed_documents([chunk.text for chunk in chunks])
        if len(embeddings) != len(chunks):
            raise ValueError(
                f"Embedder returned {len(embeddings)} vectors for {len(chunks)} chunks"
            )
        await self._vector_store.upsert(namespace, chunks, embeddings)
        logger.info(
            "Ingested document: namespace=%s doc_id=%s chunks=%d", namespace, doc_id, len(chunks)
        )
        return chunks
