"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, Union

Role = Literal["system", "user", "assistant"]


@dataclass(slots=True, frozen=True)
class ConversationMessage:
    """One entry of the ordered message list sent to the language model."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True, frozen=True)
class ActionStep:
    """The model asked to run a tool."""

    type: ClassVar[str] = "action"

    thought: str
    action: str
    action_input: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "thought": self.thought,
            "action": self.action,
            "actionInput": self.action_input,
        }


@dataclass(slots=True, frozen=True)
class FinalAnswerStep:
    """The model produced its answer; terminates the loop."""

    type: ClassVar[str] = "final_answer"

    thought: str
    answer: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "thought": self.thought, "answer": self.answer}


@dataclass(slots=True, frozen=True)
class IncompleteStep:
    """The completion matched neither the action nor the final-answer format."""

    type: ClassVar[str] = "incomplete"

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


ParsedOutput = Union[ActionStep, FinalAnswerStep, IncompleteStep]


@dataclass(slots=True)
class ReasoningStep:
    """Trace entry for one completion and how it was parsed."""

    iteration: int
    raw_output: str
    parsed: ParsedOutput

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "llmOutput": self.raw_output,
            "parsed": self.parsed.to_dict(),
        }


@dataclass(slots=True)
class ObservationRecord:
    """Trace entry for an executed (or rejected) action."""

    iteration: int
    observation: str
    search_query: str | None = None
    source_count: int = 0
    observation_length: int = 0

    def to_dict(self) -> dict[str, Any]:
        if self.search_query is None:
            return {"iteration": self.iteration, "observation": self.observation}
        return {
            "iteration": self.iteration,
            "searchQuery": self.search_query,
            "sourceCount": self.source_count,
            "observationLength": self.observation_length,
        }


TraceEntry = Union[ReasoningStep, ObservationRecord]


@dataclass(slots=True)
class RetrievedChunk:
    """A text chunk returned by a vector backend, with its source metadata."""

    doc_id: str | None
    text: str
    title: str = ""
    published: str = ""
    chunk_index: int | None = None
    score: float | None = None
    is_adjacent_chunk: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_key(self) -> str | None:
        """Adjacency identity `docId-chunkIndex`, or None for legacy chunks."""
        if self.doc_id is None or self.chunk_index is None:
            return None
        return f"{self.doc_id}-{self.chunk_index}"

    @property
    def source_key(self) -> tuple[str, str]:
        return (self.title or "", self.published or "")

    @classmethod
    def from_metadata(
        cls,
        metadata: dict[str, Any],
        *,
        score: float | None = None,
        is_adjacent_chunk: bool = False,
    ) -> "RetrievedChunk":
        return cls(
            doc_id=_optional_str(metadata.get("docId")),
            text=str(metadata.get("text", "")),
            title=str(metadata.get("title", "") or ""),
            published=str(metadata.get("published", "") or ""),
            chunk_index=coerce_chunk_index(metadata.get("chunkIndex")),
            score=score,
            is_adjacent_chunk=is_adjacent_chunk,
            metadata={k: v for k, v in metadata.items() if k != "text"},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            **self.metadata,
            "docId": self.doc_id,
            "title": self.title,
            "published": self.published,
            "text": self.text,
        }
        if self.chunk_index is not None:
            payload["chunkIndex"] = self.chunk_index
        if self.score is not None:
            payload["score"] = self.score
        if self.is_adjacent_chunk:
            payload["isAdjacentChunk"] = True
        return payload


@dataclass(slots=True)
class SearchResult:
    """Outcome of one retrieval call; failures travel in `error_message`."""

    context_texts: list[str] = field(default_factory=list)
    sources: list[RetrievedChunk] = field(default_factory=list)
    error_message: str | None = None


@dataclass(slots=True)
class ChatTranscript:
    """Everything persisted for one ReAct turn."""

    prompt_text: str
    final_answer_text: str
    sources: list[RetrievedChunk]
    react_trace: list[TraceEntry]
    attachments: list[dict[str, Any]] = field(default_factory=list)
    type: str = "react"

    def response_payload(self) -> dict[str, Any]:
        return {
            "text": self.final_answer_text,
            "sources": [source.to_dict() for source in self.sources],
            "type": self.type,
            "attachments": list(self.attachments),
            "reactTrace": [entry.to_dict() for entry in self.react_trace],
        }


@dataclass(slots=True)
class EmbeddingBatch:
    """A token-bounded group of texts sent in one embedding request."""

    index: int
    texts: list[str]
    estimated_tokens: int


@dataclass(slots=True)
class DocumentChunk:
    """A chunked section of an ingested document."""

    chunk_id: str
    doc_id: str
    text: str
    chunk_index: int
    total_chunks: int
    metadata: dict[str, Any]


def coerce_chunk_index(value: Any) -> int | None:
    """Return an integral chunk index, or None for missing/non-numeric values.

    Some engines hand numeric metadata back as floats (`2.0`).
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
