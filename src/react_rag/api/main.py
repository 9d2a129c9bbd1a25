"""FastAPI entrypoint for workspace, ingest and streaming chat endpoints."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from react_rag.agent.completion import ChatCompletion, LangChainChatCompletion
from react_rag.agent.react_loop import ReactChatController, begin_reasoning_turn
from react_rag.chat.compressor import MessageArrayCompressor, TiktokenCounter, TokenCounter
from react_rag.chat.stream import ResponseStream
from react_rag.config import AgentConfig, ChunkingConfig, Settings, WorkspaceConfig
from react_rag.ingest.chunker import TextSplitter
from react_rag.ingest.embedder import Embedder, HashingEmbedder, OpenAiEmbedder
from react_rag.ingest.pipeline import IngestPipeline
from react_rag.obs.logging_config import configure_logging
from react_rag.obs.tracing import MetricsRecorder
from react_rag.retrieval.retriever import DocumentRetriever
from react_rag.retrieval.vector_store import InMemoryVectorStore, VectorStore
from react_rag.store.chat_store import ChatStore, InMemoryChatStore, SqliteChatStore

logger = logging.getLogger(__name__)

_DISCONNECT_POLL_SECONDS = 0.5


class WorkspaceRequest(BaseModel):
    name: str = ""
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    history_limit: int = Field(default=20, ge=0)
    prompt_window_limit: int = Field(default=8192, ge=256)
    similarity_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    top_n: int = Field(default=4, ge=1)
    adjacent_chunks: int = Field(default=0, ge=0, le=10)


class IngestRequest(BaseModel):
    text: str = Field(min_length=1)
    doc_id: str | None = None
    title: str = ""
    published: str = ""
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    thread_id: int | None = None
    user_id: int | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)


@dataclass(slots=True)
class AppServices:
    """Collaborators shared by all requests of one app instance."""

    settings: Settings
    embedder: Embedder
    vector_store: VectorStore
    chat_store: ChatStore
    completion: ChatCompletion | None
    retriever: DocumentRetriever
    pipeline: IngestPipeline
    controller: ReactChatController | None
    metrics: MetricsRecorder
    workspaces: dict[str, WorkspaceConfig] = field(default_factory=dict)

    @classmethod
    def assemble(
        cls,
        settings: Settings,
        *,
        embedder: Embedder,
        vector_store: VectorStore,
        chat_store: ChatStore,
        completion: ChatCompletion | None,
        token_counter: TokenCounter | None = None,
        chunking: ChunkingConfig | None = None,
        agent_config: AgentConfig | None = None,
    ) -> "AppServices":
        retriever = DocumentRetriever(vector_store, embedder)
        pipeline = IngestPipeline(TextSplitter(chunking), embedder, vector_store)
        metrics = MetricsRecorder()

        compression = settings.compression_config()
        compressor = None
        if compression.enabled:
            compressor = MessageArrayCompressor(
                token_counter or TiktokenCounter(settings.openai_model), compression
            )

        controller = None
        if completion is not None:
            controller = ReactChatController(
                completion=completion,
                retriever=retriever,
                chat_store=chat_store,
                vector_store=vector_store,
                compressor=compressor,
                config=agent_config,
                metrics=metrics,
            )
        return cls(
            settings=settings,
            embedder=embedder,
            vector_store=vector_store,
            chat_store=chat_store,
            completion=completion,
            retriever=retriever,
            pipeline=pipeline,
            controller=controller,
            metrics=metrics,
        )


async def build_services(settings: Settings) -> AppServices:
    embedder: Embedder = (
        OpenAiEmbedder.from_settings(settings) if settings.openai_api_key else HashingEmbedder()
    )
    chat_store: ChatStore = (
        SqliteChatStore(settings.chat_db_path) if settings.chat_db_path else InMemoryChatStore()
    )
    return AppServices.assemble(
        settings,
        embedder=embedder,
        vector_store=await _create_vector_store(settings),
        chat_store=chat_store,
        completion=LangChainChatCompletion.from_settings(settings),
    )


async def _create_vector_store(settings: Settings) -> VectorStore:
    if settings.vector_db == "pgvector":
        from react_rag.retrieval.pgvector import PGVectorStore

        return await PGVectorStore.from_settings(settings)
    if settings.vector_db == "pinecone":
        from react_rag.retrieval.pinecone_store import PineconeVectorStore

        return PineconeVectorStore.from_settings(settings)
    if settings.vector_db == "astra":
        from react_rag.retrieval.astra import AstraVectorStore

        return AstraVectorStore.from_settings(settings)
    return InMemoryVectorStore()


def create_app(services: AppServices | None = None) -> FastAPI:
    """Build the API; without `services` they are created from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "services", None) is None:
            settings = Settings()
            configure_logging(settings.log_level)
            app.state.services = await build_services(settings)
            logger.info(
                "Services ready: vector_db=%s llm_configured=%s",
                settings.vector_db,
                app.state.services.completion is not None,
            )
        yield

    app = FastAPI(title="ReAct RAG Chat", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    def _services(request: Request) -> AppServices:
        current = request.app.state.services
        if current is None:
            raise HTTPException(status_code=503, detail="Services are not initialised")
        return current

    def _workspace(current: AppServices, slug: str) -> WorkspaceConfig:
        workspace = current.workspaces.get(slug)
        if workspace is None:
            raise HTTPException(status_code=404, detail=f"Workspace not found: {slug}")
        return workspace

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        current = _services(request)
        return {
            "status": "ok",
            "llm_configured": current.completion is not None,
            "vector_db": current.settings.vector_db,
            "chat_count": await current.chat_store.count(),
        }

    @app.put("/workspaces/{slug}")
    async def upsert_workspace(slug: str, body: WorkspaceRequest, request: Request) -> dict[str, Any]:
        current = _services(request)
        existing = current.workspaces.get(slug)
        workspace_id = existing.id if existing is not None else len(current.workspaces) + 1
        workspace = WorkspaceConfig(id=workspace_id, slug=slug, **body.model_dump(exclude_none=True))
        current.workspaces[slug] = workspace
        return workspace.model_dump()

    @app.post("/workspaces/{slug}/documents")
    async def ingest_document(slug: str, body: IngestRequest, request: Request) -> dict[str, Any]:
        current = _services(request)
        _workspace(current, slug)
        metadata = {**body.metadata, "title": body.title, "published": body.published}
        if body.url:
            metadata["url"] = body.url
        try:
            chunks = await current.pipeline.ingest_text(
                slug, body.text, doc_id=body.doc_id, metadata=metadata
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        return {
            "doc_id": chunks[0].doc_id if chunks else body.doc_id,
            "chunks_created": len(chunks),
            "chunk_ids": [chunk.chunk_id for chunk in chunks],
        }

    @app.post("/workspaces/{slug}/stream-chat")
    async def stream_chat(slug: str, body: ChatRequest, request: Request) -> StreamingResponse:
        current = _services(request)
        workspace = _workspace(current, slug)
        if current.controller is None:
            raise HTTPException(status_code=503, detail="No language model is configured")

        user = {"id": body.user_id} if body.user_id is not None else None
        stream, _ = begin_reasoning_turn(
            current.controller,
            workspace,
            body.message,
            user=user,
            thread_id=body.thread_id,
            attachments=body.attachments,
        )

        async def event_source() -> AsyncIterator[str]:
            watcher = asyncio.create_task(_close_on_disconnect(request, stream))
            try:
                async for frame in stream.events():
                    yield frame
            finally:
                stream.close()
                watcher.cancel()

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/workspaces/{slug}/chats")
    async def workspace_chats(slug: str, request: Request, limit: int = 20) -> dict[str, Any]:
        current = _services(request)
        workspace = _workspace(current, slug)
        records = await current.chat_store.list_for_workspace(workspace.id, limit=limit)
        return {"items": [record.to_dict() for record in records]}

    @app.get("/chats/{chat_id}")
    async def chat_detail(chat_id: int, request: Request) -> dict[str, Any]:
        current = _services(request)
        try:
            record = await current.chat_store.get(chat_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return record.to_dict()

    @app.get("/metrics")
    async def metrics(request: Request) -> dict[str, Any]:
        current = _services(request)
        return {**current.metrics.summary(), "stored_chats": await current.chat_store.count()}

    return app


async def _close_on_disconnect(request: Request, stream: ResponseStream) -> None:
    while not stream.closed:
        if await request.is_disconnected():
            logger.info("Client disconnected; closing chat stream")
            stream.close()
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


app = create_app()
