"""Configuration models for the ReAct chat system."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentConfig(BaseModel):
    """Configures the ReAct loop bounds."""

    max_iterations: int = Field(default=5, ge=1)
    observation_max_chars: int = Field(default=2000, ge=100)
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    history_limit: int = Field(default=20, ge=0)


class RetrievalConfig(BaseModel):
    """Configures similarity search and adjacent-chunk stitching."""

    similarity_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    top_n: int = Field(default=4, ge=1)
    adjacent_chunks: int = Field(default=0, ge=0, le=10)


class CompressionConfig(BaseModel):
    """Configures context-window budgeting.

    `policy="proportional"` enforces the system/history/user shares
    independently; `policy="history_only"` never touches system or user content
    and gives history whatever is left of the window.
    """

    enabled: bool = True
    policy: Literal["proportional", "history_only"] = "proportional"
    token_buffer: int = Field(default=600, ge=0)
    system_share: float = Field(default=0.15, gt=0.0, le=1.0)
    history_share: float = Field(default=0.15, gt=0.0, le=1.0)
    user_share: float = Field(default=0.70, gt=0.0, le=1.0)
    warn_ratio: float = Field(default=0.9, gt=0.0, le=1.0)


class EmbeddingConfig(BaseModel):
    """Configures embedding batching and rate-limit recovery."""

    max_tokens_per_request: int = Field(default=150_000, ge=1)
    max_concurrent_chunks: int = Field(default=500, ge=1)
    chars_per_token: int = Field(default=2, ge=1)
    sequential: bool = True
    batch_delay_ms: int = Field(default=1000, ge=500)
    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=60_000, ge=0)


class ChunkingConfig(BaseModel):
    """Configures text splitting at ingestion time."""

    chunk_size: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=20, ge=0)
    chunk_mode: str = "character"
    chunk_prefix: str = ""

    @field_validator("chunk_mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        return value if value in {"character", "paragraph"} else "character"

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "ChunkingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        return self


class WorkspaceConfig(BaseModel):
    """Per-workspace chat settings handed to the ReAct controller."""

    id: int = Field(default=1, ge=0)
    slug: str = Field(min_length=1)
    name: str = ""
    system_prompt: str = (
        "Given the following conversation, relevant context, and a follow up question, "
        "reply with an answer to the current question the user is asking. Return only "
        "your response to the question given the above information following the users "
        "instructions as needed."
    )
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    history_limit: int = Field(default=20, ge=0)
    prompt_window_limit: int = Field(default=8192, ge=256)
    similarity_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    top_n: int = Field(default=4, ge=1)
    adjacent_chunks: int = Field(default=0, ge=0, le=10)

    def retrieval(self) -> RetrievalConfig:
        return RetrievalConfig(
            similarity_threshold=self.similarity_threshold,
            top_n=self.top_n,
            adjacent_chunks=self.adjacent_chunks,
        )


class Settings(BaseSettings):
    """Process-level settings read from the environment."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    embedding_model_pref: str = "text-embedding-ada-002"

    openai_embedding_batch_delay_ms: int = 1000
    openai_embedding_max_retries: int = 3
    openai_embedding_retry_base_delay_ms: int = 1000
    openai_embedding_retry_max_delay_ms: int = 60_000

    disable_message_compression: bool = False
    compress_only_history: bool = False

    vector_db: Literal["memory", "pgvector", "pinecone", "astra"] = "memory"
    pgvector_connection_string: str | None = None
    pgvector_table_name: str = "react_rag_vectors"
    pinecone_api_key: str | None = None
    pinecone_index: str | None = None
    astra_db_application_token: str | None = None
    astra_db_endpoint: str | None = None

    chat_db_path: str | None = None
    log_level: str = "INFO"

    @field_validator(
        "openai_embedding_batch_delay_ms",
        "openai_embedding_max_retries",
        "openai_embedding_retry_base_delay_ms",
        "openai_embedding_retry_max_delay_ms",
        mode="before",
    )
    @classmethod
    def _numeric_or_default(cls, value: object, info: ValidationInfo) -> object:
        if value is None or isinstance(value, int):
            return value
        try:
            return int(float(str(value)))
        except (ValueError, OverflowError):
            return cls.model_fields[info.field_name].default

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            batch_delay_ms=max(500, self.openai_embedding_batch_delay_ms),
            max_retries=max(0, self.openai_embedding_max_retries),
            base_delay_ms=max(0, self.openai_embedding_retry_base_delay_ms),
            max_delay_ms=max(0, self.openai_embedding_retry_max_delay_ms),
        )

    def compression_config(self) -> CompressionConfig:
        return CompressionConfig(
            enabled=not self.disable_message_compression,
            policy="history_only" if self.compress_only_history else "proportional",
        )
