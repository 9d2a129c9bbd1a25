import json
from typing import Any

from fastapi.testclient import TestClient

from react_rag.agent.completion import CompletionResult
from react_rag.api.main import AppServices, create_app
from react_rag.config import Settings
from react_rag.ingest.embedder import HashingEmbedder
from react_rag.retrieval.vector_store import InMemoryVectorStore
from react_rag.store.chat_store import InMemoryChatStore
from react_rag.types import ConversationMessage


class _TwoStepCompletion:
    """Searches once, then answers from whatever the observation said."""

    default_temperature = 0.7

    async def complete(
        self, messages: list[ConversationMessage], *, temperature: float
    ) -> CompletionResult:
        last = messages[-1].content
        if last.startswith("Observation:"):
            return CompletionResult(
                text="Thought: The handbook covers it\nFinal Answer: The refund window is 14 days."
            )
        return CompletionResult(
            text='Thought: Check the handbook\nAction: search_documents\nAction Input: {"query": "refund window"}'
        )


def _services(completion: Any = None) -> AppServices:
    return AppServices.assemble(
        Settings(_env_file=None, disable_message_compression=True),
        embedder=HashingEmbedder(),
        vector_store=InMemoryVectorStore(),
        chat_store=InMemoryChatStore(),
        completion=completion,
    )


def _events(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(frame[len("data: ") :])
        for frame in body.split("\n\n")
        if frame.startswith("data: ")
    ]


def test_api_workspace_ingest_stream_chat_history_metrics() -> None:
    client = TestClient(create_app(_services(_TwoStepCompletion())))

    workspace_resp = client.put(
        "/workspaces/support",
        json={"name": "Support", "similarity_threshold": 0.0, "adjacent_chunks": 1},
    )
    assert workspace_resp.status_code == 200
    assert workspace_resp.json()["id"] == 1

    ingest_resp = client.post(
        "/workspaces/support/documents",
        json={
            "text": "The refund window is 14 days from delivery. Items must be unused.",
            "doc_id": "handbook",
            "title": "handbook.md",
            "published": "2024-05-01",
        },
    )
    assert ingest_resp.status_code == 200
    assert ingest_resp.json()["doc_id"] == "handbook"
    assert ingest_resp.json()["chunks_created"] >= 1

    chat_resp = client.post(
        "/workspaces/support/stream-chat", json={"message": "How long can I return items?"}
    )
    assert chat_resp.status_code == 200
    assert chat_resp.headers["content-type"].startswith("text/event-stream")

    events = _events(chat_resp.text)
    assert [event["type"] for event in events[-2:]] == ["textResponseChunk", "finalizeResponseStream"]
    assert events[-2]["textResponse"] == "The refund window is 14 days."
    assert events[-2]["sources"][0]["title"] == "handbook.md"
    assert events[-1]["chatId"] == 1
    assert len({event["uuid"] for event in events}) == 1

    chats_resp = client.get("/workspaces/support/chats")
    assert chats_resp.status_code == 200
    assert [item["prompt"] for item in chats_resp.json()["items"]] == ["How long can I return items?"]

    detail_resp = client.get("/chats/1")
    assert detail_resp.status_code == 200
    assert detail_resp.json()["response"]["type"] == "react"
    assert len(detail_resp.json()["response"]["reactTrace"]) == 3

    metrics_resp = client.get("/metrics")
    assert metrics_resp.status_code == 200
    assert metrics_resp.json()["total_turns"] == 1
    assert metrics_resp.json()["stored_chats"] == 1

    health_resp = client.get("/health")
    assert health_resp.json() == {
        "status": "ok",
        "llm_configured": True,
        "vector_db": "memory",
        "chat_count": 1,
    }


def test_api_unknown_workspace_and_missing_chat() -> None:
    client = TestClient(create_app(_services(_TwoStepCompletion())))

    assert client.post("/workspaces/nope/stream-chat", json={"message": "hi"}).status_code == 404
    assert client.post("/workspaces/nope/documents", json={"text": "hello"}).status_code == 404
    assert client.get("/chats/99").status_code == 404


def test_api_stream_chat_requires_a_language_model() -> None:
    client = TestClient(create_app(_services(completion=None)))
    client.put("/workspaces/support", json={})

    resp = client.post("/workspaces/support/stream-chat", json={"message": "hi"})

    assert resp.status_code == 503
    assert client.get("/health").json()["llm_configured"] is False


def test_api_workspace_update_keeps_id() -> None:
    client = TestClient(create_app(_services()))
    client.put("/workspaces/alpha", json={})
    client.put("/workspaces/beta", json={})

    updated = client.put("/workspaces/alpha", json={"top_n": 8})

    assert updated.json()["id"] == 1
    assert updated.json()["top_n"] == 8
