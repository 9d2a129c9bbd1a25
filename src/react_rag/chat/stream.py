"""Server-sent event stream for one chat turn."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

ChunkType = Literal["statusResponse", "textResponseChunk", "finalizeResponseStream", "abort"]


class StreamChunk(BaseModel):
    """One record pushed to the client; serialized with camelCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    uuid: str
    type: ChunkType
    text_response: str | None = None
    sources: list[dict[str, Any]] = Field(default_factory=list)
    close: bool = False
    error: str | bool | None = None
    chat_id: int | str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        if payload["chatId"] is None:
            del payload["chatId"]
        return payload

    def to_sse(self) -> str:
        return "data: " + json.dumps(self.to_payload()) + "\n\n"


_END = object()


class ResponseStream:
    """Append-only chunk channel between a chat turn and the HTTP response.

    Once closed (turn finished or client gone) further writes are dropped;
    callers check `closed` to stop work early.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.written: list[StreamChunk] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, chunk: StreamChunk) -> bool:
        if self._closed:
            logger.debug("Dropping %s chunk on closed stream", chunk.type)
            return False
        self.written.append(chunk)
        self._queue.put_nowait(chunk)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    async def events(self) -> AsyncIterator[str]:
        """Yield SSE frames until the stream closes."""
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item.to_sse()


def status_chunk(uuid: str, text: str) -> StreamChunk:
    return StreamChunk(uuid=uuid, type="statusResponse", text_response=text, close=False)


def abort_chunk(uuid: str, error: str) -> StreamChunk:
    return StreamChunk(uuid=uuid, type="abort", text_response=None, close=True, error=error)
