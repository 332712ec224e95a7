"""Server-sent event generators for the push-stream endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator

from fastapi import Request

from .activity import ActivityEvent, ActivityLog
from .active_stream import ActiveStreamStore
from .content import detect_actionable_content
from .models import ActiveStreamEntry
from .prompts import build_chat_prompt
from .reconciler import Flush, insert_placeholder, reconcile_flush
from .schemas import ChatStreamRequest
from .sessions import AISession, SessionProvider
from .threads import ThreadStore

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}
HEARTBEAT = ": heartbeat\n\n"


def sse(payload: Any) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def activity_events(request: Request, activity: ActivityLog, heartbeat: float) -> AsyncIterator[str]:
    queue: asyncio.Queue[ActivityEvent] = asyncio.Queue()
    unsubscribe = activity.subscribe(queue.put_nowait)
    logger.debug("Activity stream subscriber connected")
    try:
        yield sse({"type": "init", "events": [event.to_dict() for event in activity.get_events()]})
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT
                continue
            yield sse({"type": "event", "event": event.to_dict()})
    finally:
        unsubscribe()
        logger.debug("Activity stream subscriber disconnected")


async def active_stream_events(
    request: Request,
    store: ActiveStreamStore,
    job_id: str,
    heartbeat: float,
) -> AsyncIterator[str]:
    """Replay the latest partial reply for ``job_id``, then follow it until it ends."""
    queue: asyncio.Queue[ActiveStreamEntry | None] = asyncio.Queue()
    unsubscribe = await store.watch(job_id, queue.put_nowait)
    try:
        while not await request.is_disconnected():
            try:
                entry = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT
                continue
            yield sse({"type": "snapshot", "entry": entry.to_dict() if entry else None})
            if entry is None or entry.is_terminal:
                break
    finally:
        unsubscribe()


class ChatStreamRelay:
    """Relays one chat reply from the AI session to the browser as SSE.

    When the request names both a thread and a job, the reply is also written
    into the thread: a placeholder at start, periodic non-final flushes and one
    final flush, all through the reconciler so the background chat job for the
    same request cannot produce a second reply.
    """

    def __init__(
        self,
        request: Request,
        body: ChatStreamRequest,
        provider: SessionProvider,
        threads: ThreadStore,
        save_interval: float = 0.4,
    ):
        self.request = request
        self.body = body
        self.provider = provider
        self.threads = threads
        self.save_interval = save_interval
        self.content = ""
        self.tool_calls: list[str] = []
        self.session: AISession | None = None
        self._started = time.monotonic()

    async def open(self) -> None:
        """Create the AI session and the thread placeholder before any event is sent."""
        label = "Learning Chat (streaming)" if self.body.learning_mode else "Chat (streaming)"
        self._started = time.monotonic()
        self.session = await self.provider.create_session(label)
        logger.debug("%s session created in %dms", label, (time.monotonic() - self._started) * 1000)
        await self._insert_placeholder()

    @property
    def persists(self) -> bool:
        return bool(self.body.thread_id and self.body.job_id)

    async def _flush(self, is_final: bool, has_actionable_item: bool = False) -> None:
        if not self.persists:
            return
        flush = Flush(
            job_id=self.body.job_id,
            prompt=self.body.prompt,
            content=self.content,
            is_final=is_final,
            tool_calls=tuple(self.tool_calls),
            has_actionable_item=has_actionable_item,
        )
        try:
            await self.threads.apply(self.body.thread_id, lambda thread: reconcile_flush(thread, flush))
        except (OSError, ValueError):
            logger.warning("Failed to save chat stream progress for thread %s", self.body.thread_id, exc_info=True)

    async def _insert_placeholder(self) -> None:
        if not self.persists:
            return
        try:
            await self.threads.apply(
                self.body.thread_id,
                lambda thread: insert_placeholder(thread, self.body.prompt, self.body.job_id),
            )
        except (OSError, ValueError):
            logger.warning("Failed to insert placeholder for thread %s", self.body.thread_id, exc_info=True)

    async def events(self) -> AsyncIterator[str]:
        if self.session is None:
            await self.open()
        session = self.session
        started = self._started
        first_delta_ms: int | None = None
        prompt = build_chat_prompt(self.body.prompt, self.body.repos, self.body.use_github_tools)
        last_save = time.monotonic()
        failed = False
        disconnected = False
        try:
            async for event in session.stream(prompt):
                if await self.request.is_disconnected():
                    logger.info("Chat stream client disconnected after %d chars", len(self.content))
                    disconnected = True
                    break
                if event.type == "delta":
                    if first_delta_ms is None:
                        first_delta_ms = int((time.monotonic() - started) * 1000)
                    self.content += event.content
                    now = time.monotonic()
                    if now - last_save >= self.save_interval:
                        await self._flush(is_final=False)
                        last_save = now
                elif event.type == "tool_start" and event.name:
                    self.tool_calls.append(event.name)
                elif event.type == "done":
                    self.content = event.total_content or self.content
                elif event.type == "error":
                    failed = True
                    logger.error("Stream error: %s", event.message)
                yield sse(event.to_dict())
                if failed:
                    break
        finally:
            await session.destroy()

        # A dropped connection leaves finalizing to the background job.
        if disconnected:
            return

        has_actionable_item = self.body.learning_mode and detect_actionable_content(self.content)
        if not failed:
            await self._flush(is_final=True, has_actionable_item=has_actionable_item)
        yield sse(
            {
                "type": "meta",
                "totalMs": int((time.monotonic() - started) * 1000),
                "firstDeltaMs": first_delta_ms,
                "threadId": self.body.thread_id,
                "learningMode": self.body.learning_mode,
                "hasActionableItem": has_actionable_item,
            }
        )
        yield "data: [DONE]\n\n"
