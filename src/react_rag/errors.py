"""Exception hierarchy for the ReAct chat system."""

from __future__ import annotations


class ReactRagError(Exception):
    """Base class for errors raised by this package."""


class EmptyCompletionError(ReactRagError):
    """The language model returned no text for a reasoning step."""


class EmbeddingBatchError(ReactRagError):
    """An embedding batch failed for good; the whole embedding call is aborted."""

    def __init__(
        self,
        message: str,
        *,
        batch_index: int,
        total_batches: int,
        error_type: str = "failed_to_embed",
    ) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.total_batches = total_batches
        self.error_type = error_type


class PersistenceError(ReactRagError):
    """A chat transcript could not be written by the chat store."""
