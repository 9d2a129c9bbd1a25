from typing import Any

from react_rag.agent.completion import CompletionResult
from react_rag.agent.react_loop import (
    CONCLUDE_NOW_PROMPT,
    EMPTY_ANSWER_ERROR,
    EMPTY_COMPLETION_ERROR,
    GENERIC_ERROR,
    NO_DOCUMENTS_OBSERVATION,
    TRUNCATION_SUFFIX,
    ReactChatController,
    begin_reasoning_turn,
)
from react_rag.chat.stream import ResponseStream
from react_rag.config import AgentConfig, WorkspaceConfig
from react_rag.errors import PersistenceError
from react_rag.obs.tracing import MetricsRecorder
from react_rag.store.chat_store import InMemoryChatStore
from react_rag.types import ConversationMessage, RetrievedChunk, SearchResult

SEARCH = (
    "Thought: I should look this up\n"
    "Action: search_documents\n"
    'Action Input: {"query": "refund window"}'
)
ANSWER = "Thought: I know enough\nFinal Answer: Refunds are accepted within 14 days."


class ScriptedCompletion:
    def __init__(self, replies: list[Any], *, on_call: Any = None) -> None:
        self.replies = list(replies)
        self.on_call = on_call
        self.default_temperature = 0.7
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self, messages: list[ConversationMessage], *, temperature: float
    ) -> CompletionResult:
        self.calls.append({"messages": list(messages), "temperature": temperature})
        if self.on_call is not None:
            self.on_call(len(self.calls))
        reply = self.replies.pop(0) if self.replies else ANSWER
        if isinstance(reply, Exception):
            raise reply
        return CompletionResult(text=reply)


class FakeVectorStore:
    def __init__(self, count: int = 3) -> None:
        self.count = count

    async def has_namespace(self, namespace: str) -> bool:
        return self.count > 0

    async def namespace_count(self, namespace: str) -> int:
        return self.count


class FakeRetriever:
    def __init__(
        self, result: SearchResult | None = None, vector_store: FakeVectorStore | None = None
    ) -> None:
        self.vector_store = vector_store or FakeVectorStore()
        text = "Refunds are accepted within 14 days of delivery."
        self.result = result or SearchResult(
            context_texts=[text],
            sources=[RetrievedChunk(doc_id="doc-1", text=text, title="faq.md", chunk_index=0)],
        )
        self.queries: list[dict[str, Any]] = []

    async def search(self, namespace: str, query_text: str, **kwargs: Any) -> SearchResult:
        self.queries.append({"namespace": namespace, "query": query_text, **kwargs})
        return self.result


class FailingChatStore(InMemoryChatStore):
    async def save_turn(self, *args: Any, **kwargs: Any) -> Any:
        raise PersistenceError("disk full")


def _workspace(**overrides: Any) -> WorkspaceConfig:
    return WorkspaceConfig(slug="support", system_prompt="You answer support questions.", **overrides)


def _controller(
    completion: ScriptedCompletion,
    *,
    retriever: FakeRetriever | None = None,
    chat_store: InMemoryChatStore | None = None,
    config: AgentConfig | None = None,
    metrics: MetricsRecorder | None = None,
) -> ReactChatController:
    return ReactChatController(
        completion=completion,
        retriever=retriever or FakeRetriever(),  # type: ignore[arg-type]
        chat_store=chat_store or InMemoryChatStore(),
        config=config,
        metrics=metrics,
    )


def _types(stream: ResponseStream) -> list[str]:
    return [chunk.type for chunk in stream.written]


async def test_search_then_answer_streams_and_stores_turn() -> None:
    completion = ScriptedCompletion([SEARCH, ANSWER])
    retriever = FakeRetriever()
    store = InMemoryChatStore()
    metrics = MetricsRecorder()
    stream = ResponseStream()

    controller = _controller(completion, retriever=retriever, chat_store=store, metrics=metrics)
    transcript = await controller.stream_react_chat(
        stream, _workspace(adjacent_chunks=1), "How long do I have to return an item?"
    )

    assert transcript is not None
    assert transcript.final_answer_text == "Refunds are accepted within 14 days."
    assert len(transcript.react_trace) == 3
    assert len(transcript.sources) == 1
    assert retriever.queries == [
        {
            "namespace": "support",
            "query": "refund window",
            "similarity_threshold": 0.25,
            "top_n": 4,
            "adjacent_count": 1,
        }
    ]

    second_call = completion.calls[1]["messages"]
    assert second_call[-2] == ConversationMessage("assistant", SEARCH)
    assert second_call[-1].content == "Observation: [1] Refunds are accepted within 14 days of delivery."

    assert _types(stream)[-2:] == ["textResponseChunk", "finalizeResponseStream"]
    text_chunk = stream.written[-2]
    assert text_chunk.close is True and text_chunk.error is False
    assert text_chunk.sources[0]["title"] == "faq.md"
    assert stream.written[-1].chat_id == 1
    statuses = [chunk.text_response for chunk in stream.written if chunk.type == "statusResponse"]
    assert '**Searching documents:** "refund window"' in statuses
    assert "**Search results:** 1 document(s) found" in statuses

    record = await store.get(1)
    assert record.response["type"] == "react"
    assert record.response["reactTrace"][1]["searchQuery"] == "refund window"
    assert record.response["reactTrace"][1]["sourceCount"] == 1
    assert metrics.summary()["answered_turns"] == 1
    assert metrics.summary()["total_searches"] == 1


async def test_unknown_action_is_corrected_without_retrieval() -> None:
    completion = ScriptedCompletion(
        ["Thought: try the web\nAction: web_search\nAction Input: refunds", ANSWER]
    )
    retriever = FakeRetriever()
    stream = ResponseStream()

    transcript = await _controller(completion, retriever=retriever).stream_react_chat(
        stream, _workspace(), "refunds?"
    )

    assert transcript is not None
    assert len(transcript.react_trace) == 3
    assert transcript.react_trace[1].to_dict() == {
        "iteration": 1,
        "observation": "Unknown action: web_search",
    }
    assert retriever.queries == []
    assert 'Unknown action "web_search"' in completion.calls[1]["messages"][-1].content


async def test_iteration_cap_forces_a_concluding_answer() -> None:
    completion = ScriptedCompletion([SEARCH] * 5 + ["Final Answer: best effort summary"])
    retriever = FakeRetriever()
    stream = ResponseStream()

    transcript = await _controller(completion, retriever=retriever).stream_react_chat(
        stream, _workspace(), "refunds?"
    )

    assert transcript is not None
    assert len(completion.calls) == 6
    assert len(retriever.queries) == 5
    assert len(transcript.react_trace) == 10
    assert transcript.final_answer_text == "best effort summary"
    assert completion.calls[-1]["messages"][-1] == ConversationMessage("user", CONCLUDE_NOW_PROMPT)
    assert len(transcript.sources) == 1
    assert len(stream.written[-2].sources) == 5


async def test_concluding_reply_without_format_is_used_verbatim() -> None:
    completion = ScriptedCompletion([SEARCH, SEARCH, "Refunds: 14 days."])

    transcript = await _controller(completion, config=AgentConfig(max_iterations=2)).stream_react_chat(
        ResponseStream(), _workspace(), "refunds?"
    )

    assert transcript is not None
    assert transcript.final_answer_text == "Refunds: 14 days."


async def test_empty_completion_aborts_without_storing() -> None:
    completion = ScriptedCompletion([""])
    store = InMemoryChatStore()
    metrics = MetricsRecorder()
    stream = ResponseStream()

    transcript = await _controller(completion, chat_store=store, metrics=metrics).stream_react_chat(
        stream, _workspace(), "hello?"
    )

    assert transcript is None
    assert _types(stream) == ["abort"]
    assert stream.written[0].error == EMPTY_COMPLETION_ERROR
    assert stream.written[0].close is True
    assert await store.count() == 0
    assert metrics.summary()["aborted_turns"] == 1


async def test_blank_final_answer_aborts() -> None:
    stream = ResponseStream()

    transcript = await _controller(ScriptedCompletion(["Final Answer:    "])).stream_react_chat(
        stream, _workspace(), "hello?"
    )

    assert transcript is None
    assert _types(stream) == ["abort"]
    assert stream.written[0].error == EMPTY_ANSWER_ERROR


async def test_unexpected_failure_sends_sanitised_abort() -> None:
    completion = ScriptedCompletion([RuntimeError("api key sk-secret rejected")])
    stream = ResponseStream()

    transcript = await _controller(completion).stream_react_chat(stream, _workspace(), "hello?")

    assert transcript is None
    assert _types(stream) == ["abort"]
    assert stream.written[0].error == GENERIC_ERROR
    assert "sk-secret" not in stream.written[0].to_sse()


async def test_client_disconnect_stops_the_turn_silently() -> None:
    stream = ResponseStream()
    completion = ScriptedCompletion([SEARCH, ANSWER], on_call=lambda _: stream.close())
    retriever = FakeRetriever()
    store = InMemoryChatStore()
    metrics = MetricsRecorder()

    controller = _controller(completion, retriever=retriever, chat_store=store, metrics=metrics)
    transcript = await controller.stream_react_chat(
        stream, _workspace(), "hello?"
    )

    assert transcript is None
    assert len(completion.calls) == 1
    assert retriever.queries == []
    assert stream.written == []
    assert await store.count() == 0
    assert metrics.summary()["cancelled_turns"] == 1


async def test_persistence_failure_keeps_answer_but_skips_finalize() -> None:
    stream = ResponseStream()

    controller = _controller(ScriptedCompletion([ANSWER]), chat_store=FailingChatStore())
    transcript = await controller.stream_react_chat(
        stream, _workspace(), "hello?"
    )

    assert transcript is not None
    assert _types(stream)[-1] == "textResponseChunk"
    assert "finalizeResponseStream" not in _types(stream)


async def test_free_text_reply_becomes_the_answer() -> None:
    completion = ScriptedCompletion(["Refunds take two weeks."])
    stream = ResponseStream()

    transcript = await _controller(completion).stream_react_chat(stream, _workspace(), "refunds?")

    assert transcript is not None
    assert transcript.final_answer_text == "Refunds take two weeks."
    assert len(completion.calls) == 1
    assert transcript.react_trace[0].to_dict()["parsed"]["type"] == "incomplete"


async def test_empty_workspace_answers_without_searching() -> None:
    retriever = FakeRetriever(vector_store=FakeVectorStore(count=0))
    completion = ScriptedCompletion([SEARCH, ANSWER])

    transcript = await _controller(completion, retriever=retriever).stream_react_chat(
        ResponseStream(), _workspace(), "refunds?"
    )

    assert transcript is not None
    assert retriever.queries == []
    assert completion.calls[1]["messages"][-1].content == f"Observation: {NO_DOCUMENTS_OBSERVATION}"
    assert transcript.sources == []


async def test_search_errors_and_long_results_become_observations() -> None:
    failing = FakeRetriever(SearchResult(error_message="connection refused"))
    completion = ScriptedCompletion([SEARCH, ANSWER])

    await _controller(completion, retriever=failing).stream_react_chat(ResponseStream(), _workspace(), "q")

    assert completion.calls[1]["messages"][-1].content == "Observation: Search failed: connection refused"

    long_text = "x" * 5000
    verbose = FakeRetriever(
        SearchResult(context_texts=[long_text], sources=[RetrievedChunk(doc_id="d", text=long_text)])
    )
    completion = ScriptedCompletion([SEARCH, ANSWER])

    controller = _controller(
        completion, retriever=verbose, config=AgentConfig(observation_max_chars=500)
    )
    transcript = await controller.stream_react_chat(
        ResponseStream(), _workspace(), "q"
    )

    observation = completion.calls[1]["messages"][-1].content
    assert observation.endswith(TRUNCATION_SUFFIX)
    assert len(observation) == len("Observation: ") + 500 + len(TRUNCATION_SUFFIX)
    assert transcript is not None
    assert transcript.react_trace[1].to_dict()["observationLength"] == 500 + len(TRUNCATION_SUFFIX)


class _UncountableVectorStore(FakeVectorStore):
    async def namespace_count(self, namespace: str) -> int:
        raise RuntimeError("too many documents to count")


async def test_vector_count_failure_still_answers() -> None:
    retriever = FakeRetriever(
        SearchResult(error_message="backend unavailable"), vector_store=_UncountableVectorStore()
    )
    completion = ScriptedCompletion([SEARCH, ANSWER])
    stream = ResponseStream()

    transcript = await _controller(completion, retriever=retriever).stream_react_chat(
        stream, _workspace(), "q"
    )

    assert transcript is not None
    assert len(retriever.queries) == 1
    assert completion.calls[1]["messages"][-1].content == (
        "Observation: Search failed: backend unavailable"
    )
    assert "abort" not in _types(stream)
    assert _types(stream)[-2:] == ["textResponseChunk", "finalizeResponseStream"]


async def test_history_and_workspace_temperature_reach_the_model() -> None:
    store = InMemoryChatStore()
    controller = _controller(ScriptedCompletion([ANSWER]), chat_store=store)
    await controller.stream_react_chat(ResponseStream(), _workspace(), "first question", thread_id=4)

    completion = ScriptedCompletion([ANSWER])
    controller = _controller(completion, chat_store=store)
    await controller.stream_react_chat(
        ResponseStream(), _workspace(temperature=0.2), "second question", thread_id=4
    )

    messages = completion.calls[0]["messages"]
    assert completion.calls[0]["temperature"] == 0.2
    assert messages[0].role == "system"
    assert "Tool: search_documents" in messages[0].content
    assert [message.content for message in messages[1:]] == [
        "first question",
        "Refunds are accepted within 14 days.",
        "second question",
    ]


async def test_background_turn_closes_its_stream() -> None:
    controller = _controller(ScriptedCompletion([ANSWER]))

    stream, task = begin_reasoning_turn(controller, _workspace(), "hello?")
    frames = [frame async for frame in stream.events()]
    transcript = await task

    assert transcript is not None
    assert stream.closed is True
    assert len(frames) == 3
    assert '"type": "finalizeResponseStream"' in frames[-1]
