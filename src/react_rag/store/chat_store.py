"""Chat transcript persistence."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from react_rag.errors import PersistenceError
from react_rag.types import ChatTranscript, ConversationMessage


@dataclass(slots=True)
class ChatRecord:
    id: int
    workspace_id: int
    prompt: str
    response: dict[str, Any]
    thread_id: int | None = None
    user_id: int | None = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "prompt": self.prompt,
            "response": self.response,
            "threadId": self.thread_id,
            "userId": self.user_id,
            "createdAt": self.created_at,
        }


class ChatStore(Protocol):
    """Storage contract for finished chat turns."""

    async def save_turn(
        self,
        workspace_id: int,
        prompt: str,
        transcript: ChatTranscript,
        *,
        thread_id: int | None = None,
        user: dict[str, Any] | None = None,
    ) -> ChatRecord:
        """Persist one turn and return the stored record."""

    async def recent_history(
        self,
        workspace_id: int,
        *,
        thread_id: int | None = None,
        user: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[ConversationMessage]:
        """Oldest-first user/assistant messages of the last `limit` turns."""

    async def get(self, chat_id: int) -> ChatRecord:
        """Return one record; raises KeyError if missing."""

    async def list_for_workspace(self, workspace_id: int, limit: int = 20) -> list[ChatRecord]:
        """Most recent records of a workspace, oldest first."""

    async def count(self) -> int:
        """Number of stored turns."""


class InMemoryChatStore:
    """Process-local chat store used for tests and local runs."""

    def __init__(self) -> None:
        self._records: dict[int, ChatRecord] = {}
        self._next_id = 1

    async def save_turn(
        self,
        workspace_id: int,
        prompt: str,
        transcript: ChatTranscript,
        *,
        thread_id: int | None = None,
        user: dict[str, Any] | None = None,
    ) -> ChatRecord:
        record = ChatRecord(
            id=self._next_id,
            workspace_id=workspace_id,
            prompt=prompt,
            response=transcript.response_payload(),
            thread_id=thread_id,
            user_id=_user_id(user),
        )
        self._records[record.id] = record
        self._next_id += 1
        return record

    async def recent_history(
        self,
        workspace_id: int,
        *,
        thread_id: int | None = None,
        user: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[ConversationMessage]:
        user_id = _user_id(user)
        matching = [
            record
            for record in self._records.values()
            if record.workspace_id == workspace_id
            and record.thread_id == thread_id
            and record.user_id == user_id
        ]
        return _as_history(matching[-limit:] if limit else [])

    async def get(self, chat_id: int) -> ChatRecord:
        record = self._records.get(chat_id)
        if record is None:
            raise KeyError(f"Chat not found: {chat_id}")
        return record

    async def list_for_workspace(self, workspace_id: int, limit: int = 20) -> list[ChatRecord]:
        records = [r for r in self._records.values() if r.workspace_id == workspace_id]
        return records[-limit:]

    async def count(self) -> int:
        return len(self._records)


class SqliteChatStore:
    """SQLite-backed chat store; blocking calls run in a worker thread."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS workspace_chats ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "workspace_id INTEGER NOT NULL, "
                "prompt TEXT NOT NULL, "
                "response TEXT NOT NULL, "
                "thread_id INTEGER, "
                "user_id INTEGER, "
                "created_at TEXT NOT NULL)"
            )
            conn.commit()

    async def save_turn(
        self,
        workspace_id: int,
        prompt: str,
        transcript: ChatTranscript,
        *,
        thread_id: int | None = None,
        user: dict[str, Any] | None = None,
    ) -> ChatRecord:
        record = ChatRecord(
            id=0,
            workspace_id=workspace_id,
            prompt=prompt,
            response=transcript.response_payload(),
            thread_id=thread_id,
            user_id=_user_id(user),
        )
        try:
            record.id = await asyncio.to_thread(self._insert, record)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to store chat: {exc}") from exc
        return record

    async def recent_history(
        self,
        workspace_id: int,
        *,
        thread_id: int | None = None,
        user: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[ConversationMessage]:
        if not limit:
            return []
        rows = await asyncio.to_thread(
            self._select,
            "SELECT * FROM workspace_chats WHERE workspace_id = ? "
            "AND thread_id IS ? AND user_id IS ? ORDER BY id DESC LIMIT ?",
            (workspace_id, thread_id, _user_id(user), limit),
        )
        return _as_history(list(reversed(rows)))

    async def get(self, chat_id: int) -> ChatRecord:
        rows = await asyncio.to_thread(
            self._select, "SELECT * FROM workspace_chats WHERE id = ?", (chat_id,)
        )
        if not rows:
            raise KeyError(f"Chat not found: {chat_id}")
        return rows[0]

    async def list_for_workspace(self, workspace_id: int, limit: int = 20) -> list[ChatRecord]:
        rows = await asyncio.to_thread(
            self._select,
            "SELECT * FROM workspace_chats WHERE workspace_id = ? ORDER BY id DESC LIMIT ?",
            (workspace_id, limit),
        )
        return list(reversed(rows))

    async def count(self) -> int:
        def _count() -> int:
            with sqlite3.connect(self.path) as conn:
                return int(conn.execute("SELECT COUNT(*) FROM workspace_chats").fetchone()[0])

        return await asyncio.to_thread(_count)

    def _insert(self, record: ChatRecord) -> int:
        with sqlite3.connect(self.path) as conn:
            cur = conn.execute(
                "INSERT INTO workspace_chats"
                "(workspace_id, prompt, response, thread_id, user_id, created_at) "
                "VALUES(?, ?, ?, ?, ?, ?)",
                (
                    record.workspace_id,
                    record.prompt,
                    json.dumps(record.response),
                    record.thread_id,
                    record.user_id,
                    record.created_at,
                ),
            )
            conn.commit()
            return int(cur.lastrowid)

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[ChatRecord]:
        with sqlite3.connect(self.path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(sql, params).fetchall()
        return [
            ChatRecord(
                id=row["id"],
                workspace_id=row["workspace_id"],
                prompt=row["prompt"],
                response=json.loads(row["response"]),
                thread_id=row["thread_id"],
                user_id=row["user_id"],
                created_at=row["created_at"],
            )
            for row in rows
        ]


def _as_history(records: list[ChatRecord]) -> list[ConversationMessage]:
    messages: list[ConversationMessage] = []
    for record in records:
        messages.append(ConversationMessage("user", record.prompt))
        messages.append(ConversationMessage("assistant", str(record.response.get("text", ""))))
    return messages


def _user_id(user: dict[str, Any] | None) -> int | None:
    if not user:
        return None
    value = user.get("id")
    return int(value) if value is not None else None
