"""ReAct (Thought -> Action -> Observation) chat turns streamed over SSE."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from react_rag.agent.completion import ChatCompletion
from react_rag.agent.output_parser import parse_react_output
from react_rag.chat.compressor import MessageArrayCompressor
from react_rag.chat.stream import ResponseStream, StreamChunk, abort_chunk, status_chunk
from react_rag.config import AgentConfig, WorkspaceConfig
from react_rag.errors import EmptyCompletionError
from react_rag.obs.tracing import MetricsRecorder, Timer, TurnMetrics, TurnOutcome
from react_rag.retrieval.retriever import DocumentRetriever, deduplicate_sources
from react_rag.retrieval.vector_store import VectorStore
from react_rag.store.chat_store import ChatStore
from react_rag.types import (
    ActionStep,
    ChatTranscript,
    ConversationMessage,
    FinalAnswerStep,
    ObservationRecord,
    ReasoningStep,
    RetrievedChunk,
    TraceEntry,
)

logger = logging.getLogger(__name__)

SEARCH_ACTION = "search_documents"
TRUNCATION_SUFFIX = "\n...(truncated)"

NO_DOCUMENTS_OBSERVATION = "No documents are embedded in this workspace. No search results found."
NO_RESULTS_OBSERVATION = "No relevant documents found for this search query."
CONCLUDE_NOW_PROMPT = (
    "You have reached the maximum number of search iterations. Based on all the "
    "information gathered so far, please provide your Final Answer now."
)
EXHAUSTED_FALLBACK_ANSWER = "Unable to generate a response after multiple reasoning steps."
EMPTY_COMPLETION_ERROR = "LLM returned an empty response during ReAct reasoning."
EMPTY_ANSWER_ERROR = "Unable to generate a response."
GENERIC_ERROR = "An error occurred while processing your request. Please try again."

# Strong references so background turns are not garbage collected mid-flight.
_running_turns: set[asyncio.Task[Any]] = set()


def build_react_system_prompt(base_prompt: str) -> str:
    """Append the tool description and ReAct format rules to a workspace prompt."""
    return f"""{base_prompt}

You have access to the following tool to help answer the user's question:

Tool: {SEARCH_ACTION}
Description: Search workspace documents for relevant information. Use this when you need specific information from the available documents.
Parameters: {{"query": "search query string"}}

You must use the following format for EVERY response:

Thought: Think about what information you need and why
Action: {SEARCH_ACTION}
Action Input: {{"query": "your search query"}}

After receiving an Observation (search results), either search again or give your final answer:

Thought: Analyze the search results and decide if you have enough information
Final Answer: Your comprehensive answer based on the information gathered

Important rules:
- Always start with a Thought
- You may search multiple times if needed to gather sufficient information
- When you have enough information, provide a Final Answer
- If no relevant documents are found, provide a Final Answer based on your general knowledge and say that no relevant documents were found
- Keep your search queries focused and specific"""


def truncate_observation(observation: str, max_chars: int) -> str:
    if len(observation) <= max_chars:
        return observation
    return observation[:max_chars] + TRUNCATION_SUFFIX


@dataclass(slots=True)
class _TurnState:
    """Mutable state owned by exactly one turn."""

    uuid: str
    messages: list[ConversationMessage] = field(default_factory=list)
    trace: list[TraceEntry] = field(default_factory=list)
    sources: list[RetrievedChunk] = field(default_factory=list)
    iterations: int = 0
    searches: int = 0
    outcome: TurnOutcome = "cancelled"


class ReactChatController:
    """Drives one ReAct chat turn per call and streams its progress.

    Every turn ends in exactly one of: a `textResponseChunk` followed (when the
    transcript was stored) by `finalizeResponseStream`; a single `abort`
    chunk; or silence, when the client went away mid-turn.
    """

    def __init__(
        self,
        *,
        completion: ChatCompletion,
        retriever: DocumentRetriever,
        chat_store: ChatStore,
        vector_store: VectorStore | None = None,
        compressor: MessageArrayCompressor | None = None,
        config: AgentConfig | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self.completion = completion
        self.retriever = retriever
        self.vector_store = vector_store or retriever.vector_store
        self.chat_store = chat_store
        self.compressor = compressor
        self.config = config or AgentConfig()
        self.metrics = metrics

    async def stream_react_chat(
        self,
        stream: ResponseStream,
        workspace: WorkspaceConfig,
        message: str,
        *,
        user: dict[str, Any] | None = None,
        thread_id: int | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> ChatTranscript | None:
        """Run one turn; returns the stored transcript, or None if none was produced."""

        state = _TurnState(uuid=str(uuid.uuid4()))
        transcript: ChatTranscript | None = None
        with Timer() as timer:
            try:
                transcript = await self._run_turn(
                    state,
                    stream,
                    workspace,
                    message,
                    user=user,
                    thread_id=thread_id,
                    attachments=list(attachments or []),
                )
            except EmptyCompletionError as exc:
                logger.error(
                    "Empty completion: workspace_id=%s iteration=%d",
                    workspace.id,
                    state.iterations,
                )
                state.outcome = "aborted"
                self._write(stream, abort_chunk(state.uuid, str(exc)))
            except Exception:
                logger.exception("ReAct chat turn failed: workspace_id=%s", workspace.id)
                state.outcome = "aborted"
                self._write(stream, abort_chunk(state.uuid, GENERIC_ERROR))

        if self.metrics is not None:
            self.metrics.record(
                TurnMetrics(
                    outcome=state.outcome,
                    latency_ms=timer.elapsed_ms,
                    iterations=state.iterations,
                    searches=state.searches,
                    source_count=len(state.sources),
                )
            )
        return transcript

    async def _run_turn(
        self,
        state: _TurnState,
        stream: ResponseStream,
        workspace: WorkspaceConfig,
        message: str,
        *,
        user: dict[str, Any] | None,
        thread_id: int | None,
        attachments: list[dict[str, Any]],
    ) -> ChatTranscript | None:
        namespace = workspace.slug
        try:
            has_vectors = (
                await self.vector_store.has_namespace(namespace)
                and await self.vector_store.namespace_count(namespace) > 0
            )
        except Exception as exc:
            # Searches still run so the retriever reports the backend error as an observation.
            logger.error(
                "Vector count failed: workspace_id=%s namespace=%s error=%s",
                workspace.id,
                namespace,
                exc,
            )
            has_vectors = True
        history = await self.chat_store.recent_history(
            workspace.id, thread_id=thread_id, user=user, limit=workspace.history_limit
        )
        state.messages = self._initial_messages(workspace, list(history), message)
        temperature = (
            workspace.temperature
            if workspace.temperature is not None
            else self.completion.default_temperature
        )

        final_answer: str | None = None
        for iteration in range(1, self.config.max_iterations + 1):
            if stream.closed:
                return None
            result = await self.completion.complete(list(state.messages), temperature=temperature)
            if stream.closed:
                return None

            state.iterations = iteration
            text = result.text
            if not text:
                raise EmptyCompletionError(EMPTY_COMPLETION_ERROR)

            parsed = parse_react_output(text)
            state.trace.append(ReasoningStep(iteration=iteration, raw_output=text, parsed=parsed))

            if isinstance(parsed, FinalAnswerStep):
                if parsed.thought:
                    self._write(stream, status_chunk(state.uuid, f"**Thought:** {parsed.thought}"))
                final_answer = parsed.answer
                break

            if isinstance(parsed, ActionStep):
                if parsed.thought:
                    self._write(stream, status_chunk(state.uuid, f"**Thought:** {parsed.thought}"))

                if parsed.action != SEARCH_ACTION:
                    state.messages.append(ConversationMessage("assistant", text))
                    state.messages.append(
                        ConversationMessage(
                            "user",
                            f'Observation: Unknown action "{parsed.action}". The only '
                            f'available action is "{SEARCH_ACTION}". Please try again.',
                        )
                    )
                    state.trace.append(
                        ObservationRecord(
                            iteration=iteration, observation=f"Unknown action: {parsed.action}"
                        )
                    )
                    continue

                completed = await self._search(
                    state,
                    stream,
                    workspace,
                    iteration=iteration,
                    llm_output=text,
                    query=parsed.action_input,
                    has_vectors=has_vectors,
                )
                if not completed:
                    return None
                continue

            logger.error(
                "Completion ignored the ReAct format: iteration=%d workspace_id=%s raw_output=%r",
                iteration,
                workspace.id,
                text[:200],
            )
            final_answer = parsed.text or None
            break

        if final_answer is None:
            final_answer = await self._conclude(state, stream, workspace, temperature)
            if final_answer is None:
                return None

        if not final_answer.strip():
            logger.error("Final answer is empty: workspace_id=%s", workspace.id)
            state.outcome = "aborted"
            self._write(stream, abort_chunk(state.uuid, EMPTY_ANSWER_ERROR))
            return None

        return await self._finalize(
            state,
            stream,
            workspace,
            message,
            final_answer,
            user=user,
            thread_id=thread_id,
            attachments=attachments,
        )

    def _initial_messages(
        self, workspace: WorkspaceConfig, history: list[ConversationMessage], message: str
    ) -> list[ConversationMessage]:
        system = ConversationMessage("system", build_react_system_prompt(workspace.system_prompt))
        user_message = ConversationMessage("user", message)
        if self.compressor is None:
            return [system, *history, user_message]
        return self.compressor.compress(
            system, history, user_message, window_limit=workspace.prompt_window_limit
        )

    async def _search(
        self,
        state: _TurnState,
        stream: ResponseStream,
        workspace: WorkspaceConfig,
        *,
        iteration: int,
        llm_output: str,
        query: str,
        has_vectors: bool,
    ) -> bool:
        """Run one `search_documents` action; False means the client went away."""

        self._write(stream, status_chunk(state.uuid, f'**Searching documents:** "{query}"'))
        state.searches += 1

        source_count = 0
        if not has_vectors:
            observation = NO_DOCUMENTS_OBSERVATION
        else:
            if stream.closed:
                return False
            result = await self.retriever.search(
                workspace.slug,
                query,
                similarity_threshold=workspace.similarity_threshold,
                top_n=workspace.top_n,
                adjacent_count=workspace.adjacent_chunks,
            )
            if stream.closed:
                return False

            if result.error_message:
                logger.error(
                    "Vector search returned an error: workspace_id=%s query=%r error=%s",
                    workspace.id,
                    query,
                    result.error_message,
                )
                observation = f"Search failed: {result.error_message}"
            elif not result.context_texts:
                observation = NO_RESULTS_OBSERVATION
            else:
                state.sources.extend(result.sources)
                source_count = len(result.sources)
                observation = "\n\n".join(
                    f"[{index}] {text}" for index, text in enumerate(result.context_texts, start=1)
                )

        observation = truncate_observation(observation, self.config.observation_max_chars)
        self._write(
            stream, status_chunk(state.uuid, f"**Search results:** {source_count} document(s) found")
        )
        state.trace.append(
            ObservationRecord(
                iteration=iteration,
                observation=observation,
                search_query=query,
                source_count=source_count,
                observation_length=len(observation),
            )
        )
        state.messages.append(ConversationMessage("assistant", llm_output))
        state.messages.append(ConversationMessage("user", f"Observation: {observation}"))
        return True

    async def _conclude(
        self,
        state: _TurnState,
        stream: ResponseStream,
        workspace: WorkspaceConfig,
        temperature: float,
    ) -> str | None:
        """One last completion asking for an answer; None means the client went away."""

        self._write(
            stream,
            status_chunk(
                state.uuid,
                "**Reached maximum reasoning steps.** Summarizing collected information...",
            ),
        )
        state.messages.append(ConversationMessage("user", CONCLUDE_NOW_PROMPT))

        if stream.closed:
            return None
        result = await self.completion.complete(list(state.messages), temperature=temperature)
        if stream.closed:
            return None

        text = result.text or ""
        if not text:
            logger.error(
                "Summary completion returned nothing after the iteration cap: workspace_id=%s",
                workspace.id,
            )
        parsed = parse_react_output(text)
        if isinstance(parsed, FinalAnswerStep):
            return parsed.answer
        fallback = parsed.text if not isinstance(parsed, ActionStep) else ""
        return fallback or text or EXHAUSTED_FALLBACK_ANSWER

    async def _finalize(
        self,
        state: _TurnState,
        stream: ResponseStream,
        workspace: WorkspaceConfig,
        message: str,
        final_answer: str,
        *,
        user: dict[str, Any] | None,
        thread_id: int | None,
        attachments: list[dict[str, Any]],
    ) -> ChatTranscript:
        # The client receives every source; the stored record keeps unique ones.
        self._write(
            stream,
            StreamChunk(
                uuid=state.uuid,
                type="textResponseChunk",
                text_response=final_answer,
                sources=[source.to_dict() for source in state.sources],
                close=True,
                error=False,
            ),
        )
        state.outcome = "answered"

        transcript = ChatTranscript(
            prompt_text=message,
            final_answer_text=final_answer,
            sources=deduplicate_sources(state.sources),
            react_trace=list(state.trace),
            attachments=attachments,
        )
        try:
            record = await self.chat_store.save_turn(
                workspace.id, message, transcript, thread_id=thread_id, user=user
            )
        except Exception as exc:
            # The answer is already out; nothing useful can be sent after it.
            logger.error("Failed to persist chat: workspace_id=%s error=%s", workspace.id, exc)
            return transcript

        self._write(
            stream,
            StreamChunk(
                uuid=state.uuid,
                type="finalizeResponseStream",
                close=True,
                error=False,
                chat_id=record.id,
            ),
        )
        return transcript

    @staticmethod
    def _write(stream: ResponseStream, chunk: StreamChunk) -> None:
        if not stream.closed:
            stream.write(chunk)


def begin_reasoning_turn(
    controller: ReactChatController,
    workspace: WorkspaceConfig,
    message: str,
    *,
    user: dict[str, Any] | None = None,
    thread_id: int | None = None,
    attachments: list[dict[str, Any]] | None = None,
) -> tuple[ResponseStream, asyncio.Task[ChatTranscript | None]]:
    """Start a turn in the background; the stream closes when the turn ends."""

    stream = ResponseStream()

    async def _run() -> ChatTranscript | None:
        try:
            return await controller.stream_react_chat(
                stream,
                workspace,
                message,
                user=user,
                thread_id=thread_id,
                attachments=attachments,
            )
        finally:
            stream.close()

    task = asyncio.create_task(_run())
    _running_turns.add(task)
    task.add_done_callback(_running_turns.discard)
    return stream, task
