"""Embedding abstractions, a deterministic baseline and the OpenAI engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

from react_rag.config import EmbeddingConfig, Settings
from react_rag.ingest.batching import EmbeddingBatcher, SleepFn


class Embedder(ABC):
    """Embedder interface used by ingest and retrieval components."""

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used when no provider key is configured and throughout the test-suite.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class OpenAiEmbedder(Embedder):
    """OpenAI embeddings, one batch at a time under the per-minute token quota."""

    def __init__(
        self,
        client: Any,
        *,
        model: str = "text-embedding-ada-002",
        config: EmbeddingConfig | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.client = client
        self.model = model
        batch_config = (config or EmbeddingConfig()).model_copy(update={"sequential": True})
        self.batcher = EmbeddingBatcher(
            self._create, batch_config, name="OpenAiEmbedder", sleep=sleep
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAiEmbedder":
        if not settings.openai_api_key:
            raise ValueError("No OpenAI API key was set.")

        from openai import AsyncOpenAI

        return cls(
            AsyncOpenAI(api_key=settings.openai_api_key),
            model=settings.embedding_model_pref,
            config=settings.embedding_config(),
        )

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return await self.batcher.embed(texts)

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.batcher.embed([text])
        return vectors[0] if vectors else []

    async def _create(self, texts: list[str]) -> list[list[float]]:
        response = await self.client.embeddings.create(model=self.model, input=texts)
        return [list(item.embedding) for item in response.data]
