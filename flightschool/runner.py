from __future__ import annotations

import asyncio
import logging

from .executors import JobExecutors
from .logging_config import bind_job_context
from .models import JobRecord

logger = logging.getLogger(__name__)


class JobRunner:
    """Fire-and-forget dispatch of jobs onto the running event loop.

    Tasks are tracked per job id so a job is never executed twice concurrently
    and shutdown can cancel whatever is still in flight.
    """

    def __init__(self, executors: JobExecutors):
        self.executors = executors
        self._tasks: dict[str, asyncio.Task] = {}

    def submit(self, record: JobRecord) -> asyncio.Task:
        existing = self._tasks.get(record.id)
        if existing and not existing.done():
            return existing
        task = asyncio.create_task(self._run(record), name=f"job-{record.id}")
        self._tasks[record.id] = task
        task.add_done_callback(lambda t, job_id=record.id: self._on_done(job_id, t))
        return task

    async def _run(self, record: JobRecord) -> None:
        bind_job_context(record.id, record.type)
        await self.executors.run(record)

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            logger.info("[Job %s] Execution task cancelled", job_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[Job %s] Unhandled error in executor", job_id, exc_info=exc)

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
