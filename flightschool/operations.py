"""Client-side tracker for long-running AI operations.

Background operations wrap a server job: the manager creates it through
``POST /jobs`` and then polls ``GET /jobs/{id}`` until a terminal status, so the
result is still handled after whatever started it has gone away. Local
operations run a caller-supplied coroutine in a task and can be aborted.

At most one operation is tracked per ``type:targetId`` key; starting another
one for the same key aborts the previous one first.

Example::

    manager = ActiveOperationsManager(httpx.AsyncClient(base_url="http://127.0.0.1:8000"))
    register_focus_handlers(manager, focus_store)
    await manager.initialize()
    await manager.start_background_job(
        "topic-regeneration", "topic-123", {"existingTopicTitles": ["Topic A"]}
    )
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx

from .models import utcnow

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.0
MAX_POLL_TIME_SECONDS = 120.0

CLEANUP_DELAYS = {"complete": 1.0, "failed": 5.0, "aborted": 0.1}

CompletionHandler = Callable[[Any, str], Awaitable[None]]
OnComplete = Callable[[Any], Any]
OnError = Callable[[Exception], Any]
Listener = Callable[[], None]


@dataclass
class OperationMeta:
    type: str
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    target_id: str | None = None
    job_id: str | None = None
    description: str | None = None
    context: dict[str, Any] | None = None


@dataclass
class Operation:
    id: str
    meta: OperationMeta
    status: str = "in-progress"  # pending | in-progress | complete | failed | aborted
    result: Any = None
    error: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in ("pending", "in-progress")


class OperationError(RuntimeError):
    pass


class ActiveOperationsManager:
    def __init__(
        self,
        client: httpx.AsyncClient,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_time: float = MAX_POLL_TIME_SECONDS,
        cleanup_delays: dict[str, float] | None = None,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_time = max_poll_time
        self.cleanup_delays = dict(CLEANUP_DELAYS, **(cleanup_delays or {}))
        self._operations: dict[str, Operation] = {}
        self._listeners: set[Listener] = set()
        self._polling: dict[str, asyncio.Task] = {}
        self._completion_handlers: dict[str, CompletionHandler] = {}
        self._cleanups: set[asyncio.TimerHandle] = set()
        self._background: set[asyncio.Task] = set()
        self._initialized = False

    def register_completion_handler(self, job_type: str, handler: CompletionHandler) -> None:
        """Handle completed jobs of ``job_type`` that finish without a caller callback."""
        self._completion_handlers[job_type] = handler

    async def initialize(self) -> None:
        """Resume tracking of pending and running server jobs, e.g. after a restart."""
        if self._initialized:
            return
        self._initialized = True

        try:
            active_jobs: list[dict[str, Any]] = []
            for status in ("pending", "running"):
                response = await self.client.get("/jobs", params={"status": status})
                response.raise_for_status()
                active_jobs.extend(response.json().get("jobs") or [])
        except (httpx.HTTPError, ValueError):
            logger.warning("Failed to check for active jobs", exc_info=True)
            return

        if active_jobs:
            logger.info("Found %d active jobs on init", len(active_jobs))

        restored = 0
        for job in active_jobs:
            operation_id = f"{job['type']}:{job.get('targetId') or job['id']}"
            if operation_id in self._operations:
                continue
            operation = Operation(
                id=operation_id,
                meta=OperationMeta(type=job["type"], target_id=job.get("targetId"), job_id=job["id"]),
            )
            self._operations[operation_id] = operation
            self._start_polling(job["id"], operation)
            restored += 1

        if restored:
            self._notify()

    async def start_background_job(
        self,
        job_type: str,
        target_id: str,
        input: dict[str, Any],
        on_complete: OnComplete | None = None,
        on_error: OnError | None = None,
    ) -> str | None:
        """Create a server job and track it; returns the operation id or None on failure."""
        operation_id = f"{job_type}:{target_id}"
        if operation_id in self._operations:
            logger.warning("Operation %s already exists, aborting previous", operation_id)
            self.abort(operation_id)

        # Tracked as pending while the job is being created.
        operation = Operation(
            id=operation_id,
            meta=OperationMeta(type=job_type, target_id=target_id),
            status="pending",
        )
        self._operations[operation_id] = operation
        self._notify()

        try:
            response = await self.client.post("/jobs", json={"type": job_type, "targetId": target_id, "input": input})
            response.raise_for_status()
            job_id = response.json().get("id")
            if not job_id:
                raise OperationError("Failed to create background job")
        except (httpx.HTTPError, ValueError, OperationError) as exc:
            logger.error("Failed to start background job %s: %s", operation_id, exc)
            if self._operations.get(operation_id) is operation:
                del self._operations[operation_id]
                self._notify()
            await self._call(on_error, exc, what="onError")
            return None

        operation.meta.job_id = job_id
        if operation.status == "aborted":
            logger.info("Operation %s was aborted while creating job %s", operation_id, job_id)
            self._spawn(self._cancel_job(job_id))
            return None

        logger.info("Created background job: %s for %s", job_id, operation_id)
        self._set_status(operation, "in-progress")
        self._start_polling(job_id, operation, on_complete, on_error)
        return operation_id

    def _start_polling(
        self,
        job_id: str,
        operation: Operation,
        on_complete: OnComplete | None = None,
        on_error: OnError | None = None,
    ) -> None:
        self._stop_polling(job_id)
        self._polling[job_id] = asyncio.create_task(
            self._poll(job_id, operation, on_complete, on_error), name=f"poll-{job_id}"
        )

    def _stop_polling(self, job_id: str) -> None:
        task = self._polling.pop(job_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll(
        self,
        job_id: str,
        operation: Operation,
        on_complete: OnComplete | None,
        on_error: OnError | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            while True:
                try:
                    response = await self.client.get(f"/jobs/{job_id}")
                    if response.status_code == 404:
                        logger.warning("Job %s not found", job_id)
                        await self._finish(operation, "failed", error="Job not found", on_error=on_error)
                        return
                    response.raise_for_status()
                    job = response.json()
                except (httpx.HTTPError, ValueError):
                    # Transient errors keep polling.
                    logger.error("Error polling job %s", job_id, exc_info=True)
                    job = None

                if job is not None:
                    status = job.get("status")
                    if status == "completed":
                        logger.info("Job %s completed", job_id)
                        await self._complete_job(operation, job, on_complete)
                        return
                    if status == "failed":
                        logger.error("Job %s failed: %s", job_id, job.get("error"))
                        await self._finish(operation, "failed", error=job.get("error") or "Job failed", on_error=on_error)
                        return
                    if status == "cancelled":
                        logger.info("Job %s was cancelled", job_id)
                        await self._finish(operation, "aborted", error=job.get("error"))
                        return
                    logger.debug("Job %s status: %s", job_id, status)

                if loop.time() - started > self.max_poll_time:
                    logger.warning("Job %s polling timed out", job_id)
                    await self._finish(operation, "failed", error="Operation timed out", on_error=on_error)
                    return

                await asyncio.sleep(self.poll_interval)
        finally:
            if self._polling.get(job_id) is asyncio.current_task():
                del self._polling[job_id]

    async def _complete_job(self, operation: Operation, job: dict[str, Any], on_complete: OnComplete | None) -> None:
        result = job.get("result")
        self._set_status(operation, "complete", result=result)

        if on_complete is not None and result:
            await self._call(on_complete, result, what="onComplete")
        elif result and job.get("targetId"):
            handler = self._completion_handlers.get(job["type"])
            if handler is not None:
                try:
                    await handler(result, job["targetId"])
                    logger.info("Registered handler completed for %s", job["type"])
                except Exception:
                    logger.error("Registered completion handler failed for %s", job["type"], exc_info=True)

        self._schedule_cleanup(operation)

    async def _finish(
        self,
        operation: Operation,
        status: str,
        error: str | None = None,
        on_error: OnError | None = None,
    ) -> None:
        self._set_status(operation, status, error=error)
        if status == "failed":
            await self._call(on_error, OperationError(error or "Job failed"), what="onError")
        self._schedule_cleanup(operation)

    async def _call(self, callback: Callable[[Any], Any] | None, arg: Any, what: str) -> None:
        if callback is None:
            return
        try:
            outcome = callback(arg)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.error("%s callback failed", what, exc_info=True)

    def start(
        self,
        type: str,
        executor: Callable[[], Awaitable[Any]],
        *,
        target_id: str | None = None,
        id: str | None = None,
        description: str | None = None,
        context: dict[str, Any] | None = None,
        on_complete: OnComplete | None = None,
        on_error: OnError | None = None,
    ) -> str:
        """Run ``executor`` as a local, abortable operation and return its id."""
        operation_id = id or f"{type}:{target_id or uuid4()}"
        if operation_id in self._operations:
            logger.warning("Operation %s already exists, aborting previous", operation_id)
            self.abort(operation_id)

        operation = Operation(
            id=operation_id,
            meta=OperationMeta(type=type, target_id=target_id, description=description, context=context),
        )
        self._operations[operation_id] = operation
        operation.task = asyncio.create_task(
            self._execute(operation, executor, on_complete, on_error), name=f"operation-{operation_id}"
        )
        self._notify()
        logger.debug("Started operation: %s (type=%s, target=%s)", operation_id, type, target_id)
        return operation_id

    async def _execute(
        self,
        operation: Operation,
        executor: Callable[[], Awaitable[Any]],
        on_complete: OnComplete | None,
        on_error: OnError | None,
    ) -> None:
        try:
            result = await executor()
        except asyncio.CancelledError:
            logger.debug("Operation %s aborted", operation.id)
            if operation.status != "aborted":
                self._set_status(operation, "aborted")
                self._schedule_cleanup(operation)
            return
        except Exception as exc:
            logger.error("Operation %s failed: %s", operation.id, exc)
            await self._finish(operation, "failed", error=str(exc), on_error=on_error)
            return

        if operation.status == "aborted":
            logger.debug("Operation %s was aborted during execution", operation.id)
            return
        self._set_status(operation, "complete", result=result)
        logger.debug("Operation %s completed successfully", operation.id)
        await self._call(on_complete, result, what="onComplete")
        self._schedule_cleanup(operation)

    def abort(self, operation_id: str) -> bool:
        """Abort a tracked operation; background operations also cancel their server job."""
        operation = self._operations.get(operation_id)
        if operation is None:
            return False

        if operation.task is not None and not operation.task.done():
            operation.task.cancel()
        job_id = operation.meta.job_id
        if job_id and operation.is_active:
            self._stop_polling(job_id)
            self._spawn(self._cancel_job(job_id))

        self._set_status(operation, "aborted")
        logger.debug("Aborted operation: %s", operation_id)
        self._schedule_cleanup(operation)
        return True

    async def _cancel_job(self, job_id: str) -> None:
        try:
            response = await self.client.delete(f"/jobs/{job_id}")
            if response.status_code not in (200, 404):
                response.raise_for_status()
        except httpx.HTTPError:
            logger.warning("Failed to cancel job %s", job_id, exc_info=True)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def is_active(self, operation_id: str) -> bool:
        operation = self._operations.get(operation_id)
        return operation is not None and operation.is_active

    def has_active_of_type(self, type: str) -> bool:
        return any(op.meta.type == type and op.is_active for op in self._operations.values())

    def get_active_ids_of_type(self, type: str) -> set[str]:
        """Target ids (operation ids when untargeted) of pending or in-progress operations of ``type``."""
        return {
            op.meta.target_id or op.id
            for op in self._operations.values()
            if op.meta.type == type and op.is_active
        }

    def get(self, operation_id: str) -> Operation | None:
        return self._operations.get(operation_id)

    def get_snapshot(self) -> dict[str, dict[str, Operation]]:
        snapshot: dict[str, dict[str, Operation]] = {}
        for operation_id, operation in self._operations.items():
            snapshot.setdefault(operation.meta.type, {})[operation_id] = operation
        return snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.add(listener)

        def unsubscribe() -> None:
            self._listeners.discard(listener)

        return unsubscribe

    def _set_status(self, operation: Operation, status: str, result: Any = None, error: str | None = None) -> None:
        operation.status = status
        if result is not None:
            operation.result = result
        if error:
            operation.error = error
        if self._operations.get(operation.id) is operation:
            self._notify()

    def _schedule_cleanup(self, operation: Operation) -> None:
        delay = self.cleanup_delays.get(operation.status, 0.0)
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def run() -> None:
            self._cleanups.discard(handle)
            self._cleanup(operation)

        handle = loop.call_later(delay, run)
        self._cleanups.add(handle)

    def _cleanup(self, operation: Operation) -> None:
        # An operation replaced under the same id is left alone.
        if self._operations.get(operation.id) is operation:
            del self._operations[operation.id]
            self._notify()
            logger.debug("Cleaned up operation: %s", operation.id)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.debug("Operations listener failed", exc_info=True)

    async def close(self) -> None:
        """Stop all polling and local work and forget every operation."""
        for handle in list(self._cleanups):
            handle.cancel()
        self._cleanups.clear()
        tasks = list(self._polling.values()) + list(self._background)
        tasks += [op.task for op in self._operations.values() if op.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._polling.clear()
        self._background.clear()
        self._operations.clear()
        self._initialized = False
