"""Disk-backed recovery buffer for in-progress chat streams.

Entries are keyed by job id and stored apart from the job ledger, so a client
reconnecting mid-stream (or a freshly restarted process) can pick up the latest
partial text without loading every job. Terminal entries expire after a TTL:
a timer evicts them, and reads also drop them lazily in case a timer was lost
with a previous process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable

from .document_store import JsonDocumentStore
from .models import ActiveStreamEntry, parse_datetime, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STREAM_DIR = "active-streams"

ActiveStreamSubscriber = Callable[[ActiveStreamEntry | None], None]


def _validate_entry(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    return all(isinstance(data.get(key), str) for key in ("jobId", "threadId", "content", "status", "updatedAt"))


class ActiveStreamStore:
    def __init__(self, store: JsonDocumentStore, ttl_seconds: float = 5 * 60):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, ActiveStreamEntry] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._subscribers: dict[str, set[ActiveStreamSubscriber]] = {}
        self._removals: set[asyncio.Task] = set()

    @staticmethod
    def _document_name(job_id: str) -> str:
        if not job_id or "/" in job_id or "\\" in job_id or ".." in job_id:
            raise ValueError(f"Unsafe job id for active stream: {job_id!r}")
        return f"{ACTIVE_STREAM_DIR}/{job_id}"

    def _age_seconds(self, entry: ActiveStreamEntry) -> float | None:
        try:
            updated = parse_datetime(entry.updated_at)
        except ValueError:
            return None
        return (utcnow() - updated).total_seconds()

    def _is_expired(self, entry: ActiveStreamEntry) -> bool:
        if not entry.is_terminal:
            return False
        age = self._age_seconds(entry)
        if age is None:
            return True
        return age > self.ttl_seconds

    def _notify(self, job_id: str, entry: ActiveStreamEntry | None) -> None:
        for callback in list(self._subscribers.get(job_id, ())):
            try:
                callback(entry)
            except Exception:
                logger.warning("Active stream subscriber failed for %s", job_id, exc_info=True)

    def _clear_timer(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

    def _schedule_cleanup(self, entry: ActiveStreamEntry) -> None:
        self._clear_timer(entry.job_id)
        if not entry.is_terminal:
            return
        age = self._age_seconds(entry) or 0.0
        delay = max(self.ttl_seconds - age, 0.0)
        loop = asyncio.get_running_loop()
        self._timers[entry.job_id] = loop.call_later(delay, self._expire, entry.job_id)

    def _expire(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        task = asyncio.ensure_future(self.remove(job_id))
        self._removals.add(task)
        task.add_done_callback(self._removals.discard)

    async def _load_from_disk(self, job_id: str) -> ActiveStreamEntry | None:
        payload = await self.store.read(self._document_name(job_id), None, _validate_entry)
        if payload is None:
            return None
        return ActiveStreamEntry.from_dict(payload)

    async def set(self, entry: ActiveStreamEntry) -> ActiveStreamEntry:
        name = self._document_name(entry.job_id)
        normalized = replace(entry, updated_at=entry.updated_at or utcnow().isoformat())
        self._entries[normalized.job_id] = normalized
        self._schedule_cleanup(normalized)
        await self.store.write(name, normalized.to_dict())
        self._notify(normalized.job_id, normalized)
        return normalized

    async def get(self, job_id: str) -> ActiveStreamEntry | None:
        cached = self._entries.get(job_id)
        if cached is not None:
            if self._is_expired(cached):
                await self.remove(job_id)
                return None
            return cached

        loaded = await self._load_from_disk(job_id)
        if loaded is None:
            return None
        if self._is_expired(loaded):
            await self.remove(job_id)
            return None
        self._entries[job_id] = loaded
        self._schedule_cleanup(loaded)
        return loaded

    async def remove(self, job_id: str) -> None:
        self._entries.pop(job_id, None)
        self._clear_timer(job_id)
        await self.store.delete(self._document_name(job_id))
        self._notify(job_id, None)

    async def watch(self, job_id: str, callback: ActiveStreamSubscriber) -> Callable[[], None]:
        """Subscribe to updates for ``job_id``; the current value is delivered right away."""
        self._subscribers.setdefault(job_id, set()).add(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(job_id)
            if not callbacks:
                return
            callbacks.discard(callback)
            if not callbacks:
                del self._subscribers[job_id]

        try:
            entry = await self.get(job_id)
        except (OSError, ValueError):
            logger.warning("Failed to load active stream %s for subscriber", job_id, exc_info=True)
            entry = None
        callback(entry)
        return unsubscribe

    async def prune_expired(self) -> int:
        """Drop expired terminal entries left on disk, e.g. by a previous process."""
        removed = 0
        for name in await self.store.list_names(ACTIVE_STREAM_DIR):
            job_id = name.split("/", 1)[1]
            if await self.get(job_id) is None:
                removed += 1
        if removed:
            logger.info("Pruned %d expired active streams", removed)
        return removed

    def close(self) -> None:
        for job_id in list(self._timers):
            self._clear_timer(job_id)
