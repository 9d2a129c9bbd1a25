"""Token-aware embedding batches with rate-limit retry."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any

from react_rag.config import EmbeddingConfig
from react_rag.errors import EmbeddingBatchError
from react_rag.types import EmbeddingBatch

logger = logging.getLogger(__name__)

EmbedBatchFn = Callable[[list[str]], Awaitable[list[list[float]]]]
SleepFn = Callable[[float], Awaitable[None]]

_RATE_LIMIT_MARKERS = {"rate_limit_error", "rate_limit_exceeded"}


def estimate_tokens(text: str, chars_per_token: int = 2) -> int:
    """Conservative token estimate; two characters per token suits CJK-heavy text."""
    return math.ceil(len(text) / chars_per_token)


def pack_batches(
    texts: list[str],
    *,
    max_tokens_per_request: int = 150_000,
    max_items: int = 500,
    chars_per_token: int = 2,
) -> list[EmbeddingBatch]:
    """Group texts into batches bounded by estimated tokens and item count.

    A single text above the token ceiling still goes out, alone in its own
    batch, so the provider can reject it with a proper error.
    """

    batches: list[EmbeddingBatch] = []
    current: list[str] = []
    current_tokens = 0

    def flush() -> None:
        nonlocal current, current_tokens
        if current:
            batches.append(
                EmbeddingBatch(index=len(batches), texts=current, estimated_tokens=current_tokens)
            )
        current = []
        current_tokens = 0

    for text in texts:
        tokens = estimate_tokens(text, chars_per_token)

        if tokens > max_tokens_per_request:
            flush()
            current, current_tokens = [text], tokens
            flush()
            continue

        if current and current_tokens + tokens > max_tokens_per_request:
            flush()
        current.append(text)
        current_tokens += tokens

        if len(current) >= max_items:
            flush()

    flush()
    return batches


def is_rate_limit_error(error: BaseException) -> bool:
    """Recognise HTTP 429s from the OpenAI SDK, httpx, or a provider error type."""
    if _status_of(error) == 429:
        return True
    response = getattr(error, "response", None)
    if response is not None and _status_of(response) == 429:
        return True
    markers = {getattr(error, "type", None), getattr(error, "code", None)}
    return bool(markers & _RATE_LIMIT_MARKERS)


def retry_after_ms(error: BaseException) -> int | None:
    """Milliseconds requested by a `Retry-After` header, if it holds positive seconds."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(seconds) or seconds <= 0:
        return None
    return math.ceil(seconds * 1000)


def backoff_delay_ms(retry: int, *, base_delay_ms: int, max_delay_ms: int) -> int:
    return min(max_delay_ms, base_delay_ms * 2**retry)


def error_type(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    status = _status_of(error) or _status_of(getattr(error, "response", None))
    if status:
        return str(status)
    return "failed_to_embed"


class EmbeddingBatcher:
    """Sends packed batches through `embed_batch`, retrying rate limits.

    Sequential mode suits per-minute quota providers: one batch in flight and
    a fixed pause between batches. Otherwise all batches run concurrently and
    results are reassembled in input order.
    """

    def __init__(
        self,
        embed_batch: EmbedBatchFn,
        config: EmbeddingConfig | None = None,
        *,
        name: str = "Embedder",
        sleep: SleepFn | None = None,
    ) -> None:
        self._embed_batch = embed_batch
        self.config = config or EmbeddingConfig()
        self.name = name
        self._sleep = sleep or asyncio.sleep

    def pack(self, texts: list[str]) -> list[EmbeddingBatch]:
        return pack_batches(
            texts,
            max_tokens_per_request=self.config.max_tokens_per_request,
            max_items=self.config.max_concurrent_chunks,
            chars_per_token=self.config.chars_per_token,
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        started = time.perf_counter()
        batches = self.pack(texts)
        logger.info("[%s] Created %d batches from %d chunks", self.name, len(batches), len(texts))

        if self.config.sequential:
            vectors = await self._embed_sequential(batches)
        else:
            vectors = await self._embed_concurrent(batches)

        logger.info(
            "[%s] Embedded %d chunks in %.2fs",
            self.name,
            len(vectors),
            time.perf_counter() - started,
        )
        return vectors

    async def execute_with_retry(
        self, batch: EmbeddingBatch, total_batches: int
    ) -> list[list[float]]:
        """Embed one batch; retries only rate limits, up to `max_retries` times."""

        label = f"[{self.name}] [Batch {batch.index + 1}/{total_batches}]"
        retry = 0
        while True:
            logger.debug(
                "%s Sending %d chunks, ~%d tokens%s",
                label,
                len(batch.texts),
                batch.estimated_tokens,
                f" (retry {retry})" if retry else "",
            )
            try:
                return await self._embed_batch(batch.texts)
            except Exception as exc:
                kind = error_type(exc)
                if not is_rate_limit_error(exc):
                    logger.debug("%s Failed - %s: %s", label, kind, exc)
                    raise self._batch_error(batch, total_batches, kind, exc) from exc

                if retry >= self.config.max_retries:
                    logger.warning(
                        "%s Failed after %d retries - %s: %s",
                        label,
                        self.config.max_retries,
                        kind,
                        exc,
                    )
                    raise self._batch_error(batch, total_batches, kind, exc) from exc

                delay_ms = retry_after_ms(exc)
                source = "Retry-After header"
                if delay_ms is None:
                    delay_ms = backoff_delay_ms(
                        retry,
                        base_delay_ms=self.config.base_delay_ms,
                        max_delay_ms=self.config.max_delay_ms,
                    )
                    source = "exponential backoff"
                logger.warning(
                    "%s Rate limit (429) - retrying in %dms (%s)", label, delay_ms, source
                )
                await self._sleep(delay_ms / 1000)
                retry += 1

    async def _embed_sequential(self, batches: list[EmbeddingBatch]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for batch in batches:
            vectors.extend(await self.execute_with_retry(batch, len(batches)))
            if batch.index < len(batches) - 1 and self.config.batch_delay_ms:
                logger.debug("[%s] Delaying next batch for %dms", self.name, self.config.batch_delay_ms)
                await self._sleep(self.config.batch_delay_ms / 1000)
        return vectors

    async def _embed_concurrent(self, batches: list[EmbeddingBatch]) -> list[list[float]]:
        tasks = [
            asyncio.create_task(self.execute_with_retry(batch, len(batches))) for batch in batches
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # One failed batch fails the whole call; stop the rest from retrying.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [vector for batch_vectors in results for vector in batch_vectors]

    def _batch_error(
        self, batch: EmbeddingBatch, total: int, kind: str, exc: BaseException
    ) -> EmbeddingBatchError:
        return EmbeddingBatchError(
            f"{self.name} Failed to embed batch {batch.index + 1}/{total}: [{kind}] {exc}",
            batch_index=batch.index,
            total_batches=total,
            error_type=kind,
        )


def _status_of(obj: Any) -> int | None:
    if obj is None:
        return None
    for attr in ("status_code", "status"):
        value = getattr(obj, attr, None)
        if isinstance(value, int):
            return value
    return None
