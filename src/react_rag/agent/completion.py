"""Non-streaming chat completion capability used by the ReAct loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from react_rag.config import Settings
from react_rag.types import ConversationMessage


@dataclass(slots=True)
class CompletionResult:
    text: str | None


class ChatCompletion(Protocol):
    default_temperature: float

    async def complete(
        self, messages: list[ConversationMessage], *, temperature: float
    ) -> CompletionResult:
        """Return the model's full reply to `messages`."""


class LangChainChatCompletion:
    """Wraps a LangChain chat model (usually `ChatOpenAI`)."""

    def __init__(self, llm: Any, *, default_temperature: float = 0.7) -> None:
        self.llm = llm
        self.default_temperature = default_temperature

    @classmethod
    def from_settings(cls, settings: Settings) -> "LangChainChatCompletion | None":
        if not settings.openai_api_key:
            return None

        from langchain_openai import ChatOpenAI

        return cls(ChatOpenAI(model=settings.openai_model, api_key=settings.openai_api_key))

    async def complete(
        self, messages: list[ConversationMessage], *, temperature: float
    ) -> CompletionResult:
        reply = await self.llm.bind(temperature=temperature).ainvoke(to_langchain_messages(messages))
        return CompletionResult(text=_extract_text(reply))


def to_langchain_messages(messages: list[ConversationMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def _extract_text(reply: Any) -> str:
    content = getattr(reply, "content", reply)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    if content is None:
        return ""
    return str(content)
