from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .document_store import JsonDocumentStore
from .models import utcnow

logger = logging.getLogger(__name__)

STORAGE_KEY = "threads"

_MESSAGE_KEYS = frozenset({"id", "role", "content", "timestamp", "toolCalls", "hasActionableItem"})
_THREAD_KEYS = frozenset({"id", "title", "messages", "createdAt", "updatedAt", "isStreaming"})


@dataclass(frozen=True)
class Message:
    id: str
    role: str  # user | assistant | system
    content: str
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    tool_calls: tuple[str, ...] | None = None
    has_actionable_item: bool | None = None
    # Fields the chat UI stores (perf metrics etc.) that this service only carries through.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update({"id": self.id, "role": self.role, "content": self.content, "timestamp": self.timestamp})
        if self.tool_calls:
            payload["toolCalls"] = list(self.tool_calls)
        if self.has_actionable_item is not None:
            payload["hasActionableItem"] = self.has_actionable_item
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Message":
        tool_calls = payload.get("toolCalls")
        return cls(
            id=str(payload["id"]),
            role=str(payload["role"]),
            content=str(payload.get("content", "")),
            timestamp=payload.get("timestamp") or utcnow().isoformat(),
            tool_calls=tuple(tool_calls) if tool_calls else None,
            has_actionable_item=payload.get("hasActionableItem"),
            extra={k: v for k, v in payload.items() if k not in _MESSAGE_KEYS},
        )


@dataclass(frozen=True)
class Thread:
    id: str
    title: str = "New thread"
    messages: tuple[Message, ...] = ()
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())
    is_streaming: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def with_messages(self, messages: list[Message] | tuple[Message, ...], **changes: Any) -> "Thread":
        return replace(self, messages=tuple(messages), **changes)

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "messages": [message.to_dict() for message in self.messages],
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
                "isStreaming": self.is_streaming,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Thread":
        now = utcnow().isoformat()
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or "New thread"),
            messages=tuple(Message.from_dict(raw) for raw in payload.get("messages") or []),
            created_at=payload.get("createdAt") or now,
            updated_at=payload.get("updatedAt") or now,
            is_streaming=bool(payload.get("isStreaming", False)),
            extra={k: v for k, v in payload.items() if k not in _THREAD_KEYS},
        )


def _validate_schema(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("threads"), list)


class ThreadStore:
    """Chat transcripts in a single ``threads`` document.

    There is no lock: the chat stream handler and the background chat executor
    both read-modify-write this document, which is why their writes go through
    ``reconciler.reconcile_flush`` first.
    """

    def __init__(self, store: JsonDocumentStore):
        self.store = store

    async def read_threads(self) -> list[Thread]:
        payload = await self.store.read(STORAGE_KEY, {"threads": []}, _validate_schema)
        threads = []
        for raw in payload["threads"]:
            try:
                threads.append(Thread.from_dict(raw))
            except (KeyError, TypeError):
                logger.warning("Skipping malformed thread record")
        return threads

    async def write_threads(self, threads: list[Thread]) -> None:
        await self.store.write(STORAGE_KEY, {"threads": [thread.to_dict() for thread in threads]})

    async def get_thread_by_id(self, thread_id: str) -> Thread | None:
        for thread in await self.read_threads():
            if thread.id == thread_id:
                return thread
        return None

    async def update_thread(self, thread: Thread) -> Thread:
        """Upsert ``thread``; existing threads get a fresh ``updatedAt``, new ones go first."""
        threads = await self.read_threads()
        for index, existing in enumerate(threads):
            if existing.id == thread.id:
                thread = replace(thread, updated_at=utcnow().isoformat())
                threads[index] = thread
                break
        else:
            threads.insert(0, thread)
        await self.write_threads(threads)
        return thread

    async def apply(self, thread_id: str, change: Callable[[Thread], Thread | None]) -> Thread | None:
        """Read ``thread_id``, run ``change`` on it and store the result unless it is None."""
        thread = await self.get_thread_by_id(thread_id)
        if thread is None:
            return None
        updated = change(thread)
        if updated is None:
            return None
        return await self.update_thread(updated)
