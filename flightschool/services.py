from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from .active_stream import ActiveStreamStore
from .activity import ActivityLog
from .cancellation import CancellationRegistry
from .config import Settings
from .document_store import JsonDocumentStore
from .evaluations import EvaluationStore
from .executors import ContextProvider, JobExecutors
from .focus_store import FocusStore
from .job_manager import JobLedger
from .runner import JobRunner
from .sessions import OllamaSessionProvider, SessionProvider
from .threads import ThreadStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide collaborators, constructed once and handed to the app."""

    settings: Settings
    store: JsonDocumentStore
    ledger: JobLedger
    registry: CancellationRegistry
    provider: SessionProvider
    threads: ThreadStore
    active_streams: ActiveStreamStore
    activity: ActivityLog
    evaluations: EvaluationStore
    focus: FocusStore
    executors: JobExecutors
    runner: JobRunner

    async def startup(self) -> None:
        pruned = await self.active_streams.prune_expired()
        active = await self.ledger.get_active()
        logger.info(
            "Job service ready (data_dir=%s, active_jobs=%d, pruned_streams=%d)",
            self.settings.data_dir,
            len(active),
            pruned,
        )

    async def aclose(self) -> None:
        await self.runner.shutdown()
        self.active_streams.close()
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()


def build_services(
    settings: Settings,
    provider: SessionProvider | None = None,
    context_provider: ContextProvider | None = None,
) -> Services:
    store = JsonDocumentStore(settings.data_dir)
    ledger = JobLedger(
        store,
        max_age=timedelta(seconds=settings.job_max_age_seconds),
        max_jobs=settings.job_max_count,
    )
    registry = CancellationRegistry(ledger)
    if provider is None:
        provider = OllamaSessionProvider(settings.ai_base_url, settings.ai_model, timeout=settings.ai_timeout_seconds)
    threads = ThreadStore(store)
    active_streams = ActiveStreamStore(store, ttl_seconds=settings.active_stream_ttl_seconds)
    activity = ActivityLog(settings.activity_max_events)
    evaluations = EvaluationStore(store)
    executors = JobExecutors(
        ledger,
        registry,
        provider,
        threads,
        active_streams,
        activity,
        evaluations,
        ai_timeout=settings.ai_timeout_seconds,
        save_interval=settings.chat_save_interval_seconds,
        context_provider=context_provider,
    )
    return Services(
        settings=settings,
        store=store,
        ledger=ledger,
        registry=registry,
        provider=provider,
        threads=threads,
        active_streams=active_streams,
        activity=activity,
        evaluations=evaluations,
        focus=FocusStore(store),
        executors=executors,
        runner=JobRunner(executors),
    )
