"""Text splitting for ingestion."""

from __future__ import annotations

from typing import Any

from langchain_text_splitters import RecursiveCharacterTextSplitter

from react_rag.config import ChunkingConfig
from react_rag.types import DocumentChunk

_PARAGRAPH_SEPARATORS = ["\n\n", "\n"]


class TextSplitter:
    """Splits document text into chunks for embedding.

    `chunk_mode="character"` uses the recursive splitter's default separator
    ladder, falling down to single characters so every chunk respects
    `chunk_size`. `chunk_mode="paragraph"` only breaks on blank lines and
    newlines; a paragraph longer than `chunk_size` stays whole.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()
        separators = _PARAGRAPH_SEPARATORS if self.config.chunk_mode == "paragraph" else None
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.config.chunk_size,
            chunk_overlap=self.config.chunk_overlap,
            separators=separators,
        )

    def split_text(self, text: str, header_meta: dict[str, Any] | None = None) -> list[str]:
        if self.config.chunk_mode == "paragraph":
            text = text.replace("\r\n", "\n")
        chunks = [chunk for chunk in self._splitter.split_text(text) if chunk.strip()]
        lead = self.config.chunk_prefix + _stringify_header(header_meta)
        if lead:
            chunks = [f"{lead}{chunk}" for chunk in chunks]
        return chunks

    def chunk_document(
        self, doc_id: str, text: str, metadata: dict[str, Any] | None = None
    ) -> list[DocumentChunk]:
        """Split `text` into ordered chunks carrying their position in the document."""
        base = dict(metadata or {})
        pieces = self.split_text(text, self.build_header_meta(base))
        return [
            DocumentChunk(
                chunk_id=f"{doc_id}-chunk-{index:04d}",
                doc_id=doc_id,
                text=piece,
                chunk_index=index,
                total_chunks=len(pieces),
                metadata=base,
            )
            for index, piece in enumerate(pieces)
        ]

    @staticmethod
    def build_header_meta(metadata: dict[str, Any] | None) -> dict[str, Any]:
        """Document header fields worth repeating in front of every chunk."""
        if not metadata:
            return {}
        header = {
            "sourceDocument": metadata.get("title"),
            "source": metadata.get("url"),
            "published": metadata.get("published"),
        }
        return {key: value for key, value in header.items() if value}


def _stringify_header(header_meta: dict[str, Any] | None) -> str:
    if not header_meta:
        return ""
    lines = "".join(f"{key}: {value}\n" for key, value in header_meta.items())
    return f"<document_metadata>\n{lines}</document_metadata>\n\n"
