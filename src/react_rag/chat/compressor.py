"""Fits system prompt, history and user input into the model context window."""

from __future__ import annotations

import logging
from typing import Protocol

from react_rag.config import CompressionConfig
from react_rag.types import ConversationMessage

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n--prompt truncated for brevity--\n\n"

# Below this many tokens a partially kept history message is noise.
_MIN_PARTIAL_TOKENS = 50


class TokenCounter(Protocol):
    def encode(self, text: str) -> list[int]:
        """Tokenize text."""

    def decode(self, tokens: list[int]) -> str:
        """Rebuild text from tokens."""

    def count(self, text: str) -> int:
        """Number of tokens in text."""


class TiktokenCounter:
    """Token counter backed by tiktoken's encoding for the chat model."""

    def __init__(self, model: str = "gpt-4o-mini") -> None:
        import tiktoken

        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def encode(self, text: str) -> list[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)

    def count(self, text: str) -> int:
        return len(self.encode(text))


def cannonball(text: str, target_tokens: int, counter: TokenCounter) -> str:
    """Cut the middle out of `text` so it fits `target_tokens`, keeping both ends."""
    tokens = counter.encode(text)
    if len(tokens) <= target_tokens:
        return text
    keep = max(0, target_tokens)
    head = keep // 2
    tail = keep - head
    left = counter.decode(tokens[:head])
    right = counter.decode(tokens[len(tokens) - tail :]) if tail else ""
    return f"{left}{TRUNCATION_MARKER}{right}"


class MessageArrayCompressor:
    """Applies the configured compression policy to one prompt.

    Nothing is touched when the whole prompt plus `token_buffer` fits the
    window. Otherwise `proportional` caps each part at its share of the window,
    and `history_only` leaves system and user content alone and gives history
    whatever room is left.
    """

    def __init__(self, counter: TokenCounter, config: CompressionConfig | None = None) -> None:
        self.counter = counter
        self.config = config or CompressionConfig()

    def compress(
        self,
        system: ConversationMessage,
        history: list[ConversationMessage],
        user: ConversationMessage,
        *,
        window_limit: int,
    ) -> list[ConversationMessage]:
        original = [system, *history, user]
        if not self.config.enabled:
            return original

        total = sum(self.counter.count(message.content) for message in original)
        if total + self.config.token_buffer <= window_limit:
            return original

        if self.config.policy == "history_only":
            return self._compress_history_only(system, history, user, window_limit=window_limit)
        return self._compress_proportional(system, history, user, window_limit=window_limit)

    def _compress_proportional(
        self,
        system: ConversationMessage,
        history: list[ConversationMessage],
        user: ConversationMessage,
        *,
        window_limit: int,
    ) -> list[ConversationMessage]:
        system_limit = int(window_limit * self.config.system_share)
        history_limit = int(window_limit * self.config.history_share)
        user_limit = int(window_limit * self.config.user_share)

        if self.counter.count(user.content) > user_limit:
            # An oversized user prompt runs alone.
            logger.warning(
                "User prompt exceeds %d tokens; sending it alone and truncated", user_limit
            )
            return [ConversationMessage("user", cannonball(user.content, user_limit, self.counter))]

        compressed_system = ConversationMessage(
            "system", cannonball(system.content, system_limit, self.counter)
        )
        kept = self._fit_history(history, history_limit)
        return [compressed_system, *kept, user]

    def _compress_history_only(
        self,
        system: ConversationMessage,
        history: list[ConversationMessage],
        user: ConversationMessage,
        *,
        window_limit: int,
    ) -> list[ConversationMessage]:
        fixed = self.counter.count(system.content) + self.counter.count(user.content)
        if fixed > window_limit * self.config.warn_ratio:
            logger.warning(
                "[COMPRESS_ONLY_HISTORY] Warning: system and user prompts use %d of %d tokens "
                "(over %d%% of the window); the request may exceed the model context",
                fixed,
                window_limit,
                round(self.config.warn_ratio * 100),
            )

        budget = window_limit - fixed - self.config.token_buffer
        kept = self._fit_history(history, budget)
        logger.info(
            "[COMPRESS_ONLY_HISTORY] Compressed history only: kept %d/%d messages, "
            "history budget %d tokens, system+user %d tokens",
            len(kept),
            len(history),
            max(0, budget),
            fixed,
        )
        return [system, *kept, user]

    def _fit_history(
        self, history: list[ConversationMessage], budget: int
    ) -> list[ConversationMessage]:
        """Keep the newest messages that fit; trim the first one that does not."""
        kept: list[ConversationMessage] = []
        remaining = budget
        for message in reversed(history):
            if remaining <= 0:
                break
            size = self.counter.count(message.content)
            if size <= remaining:
                kept.append(message)
                remaining -= size
                continue
            if remaining >= _MIN_PARTIAL_TOKENS:
                kept.append(
                    ConversationMessage(
                        message.role, cannonball(message.content, remaining, self.counter)
                    )
                )
            break
        kept.reverse()
        return kept
