from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .document_store import JsonDocumentStore
from .models import ACTIVE_STATUSES, TERMINAL_STATUSES, JobRecord, utcnow

logger = logging.getLogger(__name__)

STORAGE_KEY = "background-jobs"
SCHEMA_VERSION = 1

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _default_schema() -> dict[str, Any]:
    return {"jobs": {}, "version": SCHEMA_VERSION}


def _validate_schema(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    return isinstance(data.get("jobs"), dict) and isinstance(data.get("version"), int)


class JobLedger:
    """Persisted map of job id -> job record, read through a process-local cache.

    Readers in this process see the cache until ``invalidate_cache()`` is called;
    readers in other processes only see what was last written to the store.
    """

    def __init__(
        self,
        store: JsonDocumentStore,
        max_age: timedelta = timedelta(hours=1),
        max_jobs: int = 100,
    ):
        self.store = store
        self.max_age = max_age
        self.max_jobs = max(max_jobs, 1)
        self._cache: dict[str, JobRecord] | None = None

    async def _load(self) -> dict[str, JobRecord]:
        if self._cache is not None:
            return self._cache

        jobs: dict[str, JobRecord] = {}
        try:
            payload = await self.store.read(STORAGE_KEY, _default_schema(), _validate_schema)
            for job_id, raw in payload["jobs"].items():
                try:
                    jobs[job_id] = JobRecord.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping malformed job record %s", job_id)
        except (OSError, ValueError):
            logger.warning("Failed to load jobs from storage, using default", exc_info=True)
            jobs = {}

        self._cache = jobs
        return jobs

    async def _save(self, jobs: dict[str, JobRecord]) -> None:
        # The cache is updated before the write; a failed write leaves memory ahead of disk.
        self._cache = jobs
        payload = {"jobs": {job_id: record.to_dict() for job_id, record in jobs.items()}, "version": SCHEMA_VERSION}
        try:
            await self.store.write(STORAGE_KEY, payload)
        except OSError:
            logger.error("Failed to save jobs to storage")
            raise

    def _cleanup(self, jobs: dict[str, JobRecord]) -> int:
        now = utcnow()
        cutoff = now - self.max_age
        expired = [
            job_id
            for job_id, record in jobs.items()
            if record.status in TERMINAL_STATUSES and (record.completed_at or _EPOCH) < cutoff
        ]

        remaining = len(jobs) - len(expired)
        if remaining > self.max_jobs:
            evictable = sorted(
                (record for job_id, record in jobs.items() if record.is_terminal and job_id not in expired),
                key=lambda record: record.created_at,
            )
            excess = remaining - self.max_jobs
            expired.extend(record.id for record in evictable[:excess])

        for job_id in expired:
            jobs.pop(job_id, None)
        if expired:
            logger.debug("Cleaned up %d old jobs", len(expired))
        return len(expired)

    async def create(
        self,
        job_id: str,
        job_type: str,
        input: dict[str, Any] | None = None,
        target_id: str | None = None,
    ) -> JobRecord:
        jobs = await self._load()
        self._cleanup(jobs)
        if job_id in jobs:
            raise ValueError(f"Job {job_id} already exists")

        record = JobRecord(
            id=job_id,
            type=job_type,
            target_id=target_id,
            input=dict(input or {}),
            created_at=utcnow(),
        )
        jobs[job_id] = record
        await self._save(jobs)
        logger.info("Created job: %s (%s)", job_id, job_type)
        return record

    async def get(self, job_id: str) -> JobRecord | None:
        jobs = await self._load()
        return jobs.get(job_id)

    async def update(self, job_id: str, **kwargs) -> JobRecord | None:
        jobs = await self._load()
        record = jobs.get(job_id)
        if record is None:
            return None
        if record.is_terminal:
            logger.warning(
                "[Job %s] Ignoring update to terminal job (status=%s, requested=%s)",
                job_id,
                record.status,
                kwargs.get("status"),
            )
            return record

        for k, v in kwargs.items():
            setattr(record, k, v)
        await self._save(jobs)
        logger.debug("Updated job %s: status=%s", job_id, record.status)
        return record

    async def mark_running(self, job_id: str) -> JobRecord | None:
        return await self.update(job_id, status="running", started_at=utcnow())

    async def mark_completed(self, job_id: str, result: Any) -> JobRecord | None:
        return await self.update(job_id, status="completed", result=result, completed_at=utcnow())

    async def mark_failed(self, job_id: str, error: str) -> JobRecord | None:
        return await self.update(job_id, status="failed", error=error, completed_at=utcnow())

    async def mark_cancelled(self, job_id: str, reason: str = "Cancelled by user") -> JobRecord | None:
        logger.info("Marking job %s as cancelled", job_id)
        return await self.update(job_id, status="cancelled", error=reason, completed_at=utcnow())

    async def get_by_type(self, job_type: str) -> list[JobRecord]:
        jobs = await self._load()
        return [record for record in jobs.values() if record.type == job_type]

    async def get_active(self) -> list[JobRecord]:
        jobs = await self._load()
        return [record for record in jobs.values() if record.status in ACTIVE_STATUSES]

    async def get_all(self) -> list[JobRecord]:
        jobs = await self._load()
        return list(jobs.values())

    async def delete(self, job_id: str) -> bool:
        jobs = await self._load()
        if job_id not in jobs:
            return False
        del jobs[job_id]
        await self._save(jobs)
        return True

    async def clear(self) -> None:
        self._cache = {}
        await self.store.delete(STORAGE_KEY)

    def invalidate_cache(self) -> None:
        self._cache = None
