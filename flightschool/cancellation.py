from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol

from .job_manager import JobLedger

logger = logging.getLogger(__name__)


class Destroyable(Protocol):
    async def destroy(self) -> None: ...


class CallbackDestroyable:
    """Adapts a plain async callback to the ``destroy()`` capability."""

    def __init__(self, callback: Callable[[], Awaitable[None]]):
        self._callback = callback

    async def destroy(self) -> None:
        await self._callback()


class CancellationRegistry:
    """Process-local map of job id -> live session capable of being destroyed.

    Entries are never persisted. After a restart the registry is empty, so
    cancelling a job owned by a dead process can only flip its stored status;
    whichever executor still runs it must notice that on its next liveness check.
    """

    def __init__(self, ledger: JobLedger):
        self.ledger = ledger
        self._sessions: dict[str, Destroyable] = {}

    def register(self, job_id: str, session: Destroyable) -> None:
        self._sessions[job_id] = session
        logger.debug("[Job %s] Session registered for cancellation", job_id)

    def unregister(self, job_id: str) -> None:
        self._sessions.pop(job_id, None)

    def get(self, job_id: str) -> Destroyable | None:
        return self._sessions.get(job_id)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._sessions

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job: persist ``cancelled`` first, then destroy its live session.

        Returns False when the job is unknown or already terminal.
        """
        self.ledger.invalidate_cache()
        record = await self.ledger.get(job_id)
        if record is None:
            logger.debug("[Job %s] Job not found in storage", job_id)
            return False
        if record.is_terminal:
            logger.debug("[Job %s] Job already in terminal state: %s", job_id, record.status)
            return False

        logger.info("[Job %s] Marking job as cancelled in storage", job_id)
        await self.ledger.mark_cancelled(job_id)

        session = self._sessions.pop(job_id, None)
        if session is None:
            logger.debug("[Job %s] No active session to destroy (may be between stages)", job_id)
            return True

        logger.info("[Job %s] Destroying AI session...", job_id)
        try:
            await session.destroy()
        except Exception:
            logger.warning("[Job %s] Error destroying session", job_id, exc_info=True)
        return True

    async def is_job_still_valid(self, job_id: str) -> bool:
        """Liveness check: re-read the job from storage, bypassing the cache."""
        self.ledger.invalidate_cache()
        record = await self.ledger.get(job_id)
        if record is None:
            logger.info("[Job %s] Job no longer exists in storage - stopping", job_id)
            return False
        if record.status == "cancelled":
            logger.info("[Job %s] Job marked as cancelled - stopping", job_id)
            return False
        return True
