"""Executors for background AI jobs, one per job type.

Every executor drives its job from ``pending`` to exactly one terminal status.
Cancellation is cooperative: executors re-read the job at explicit checkpoints
and, when it has been cancelled or deleted, return without writing anything,
because the cancellation path already stored the terminal status.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import uuid4

from .active_stream import ActiveStreamStore
from .activity import ActivityLog
from .cancellation import CancellationRegistry
from .content import (
    detect_actionable_content,
    extract_json,
    extract_streaming_feedback,
    parse_evaluation_response,
    parse_partial_evaluation,
)
from .evaluations import EvaluationStore
from .job_manager import JobLedger
from .models import ActiveStreamEntry, JobRecord
from .prompts import (
    COACH_SYSTEM_PROMPT,
    EVALUATION_SYSTEM_PROMPT,
    build_challenge_prompt,
    build_chat_prompt,
    build_evaluation_prompt,
    build_goal_prompt,
    build_topic_prompt,
)
from .reconciler import Flush, reconcile_flush
from .sessions import SessionProvider
from .threads import ThreadStore

logger = logging.getLogger(__name__)

ContextProvider = Callable[[], Awaitable[str]]


@dataclass
class _ChatProgress:
    job_id: str
    thread_id: str
    prompt: str
    content: str = ""
    tool_calls: list[str] = field(default_factory=list)
    has_actionable_item: bool = False

    def flush(self, is_final: bool) -> Flush:
        return Flush(
            job_id=self.job_id,
            prompt=self.prompt,
            content=self.content,
            is_final=is_final,
            tool_calls=tuple(self.tool_calls),
            has_actionable_item=self.has_actionable_item,
        )


@dataclass
class _EvaluationProgress:
    job_id: str
    challenge_id: str
    content: str = ""
    feedback: str = ""
    partial: dict[str, Any] | None = None
    result: dict[str, Any] | None = None


class JobExecutors:
    def __init__(
        self,
        ledger: JobLedger,
        registry: CancellationRegistry,
        provider: SessionProvider,
        threads: ThreadStore,
        active_streams: ActiveStreamStore,
        activity: ActivityLog,
        evaluations: EvaluationStore,
        *,
        ai_timeout: float = 120.0,
        save_interval: float = 0.4,
        context_provider: ContextProvider | None = None,
    ):
        self.ledger = ledger
        self.registry = registry
        self.provider = provider
        self.threads = threads
        self.active_streams = active_streams
        self.activity = activity
        self.evaluations = evaluations
        self.ai_timeout = ai_timeout
        self.save_interval = save_interval
        self.context_provider = context_provider
        self._handlers: dict[str, Callable[[str, dict[str, Any]], Awaitable[None]]] = {
            "topic-regeneration": self.execute_topic_regeneration,
            "challenge-regeneration": self.execute_challenge_regeneration,
            "goal-regeneration": self.execute_goal_regeneration,
            "chat-response": self.execute_chat_response,
            "challenge-evaluation": self.execute_challenge_evaluation,
        }

    async def run(self, record: JobRecord) -> None:
        handler = self._handlers.get(record.type)
        if handler is None:
            logger.error("[Job %s] No executor for job type %s", record.id, record.type)
            await self.ledger.mark_failed(record.id, f"Unknown job type: {record.type}")
            return
        await handler(record.id, record.input)

    async def _build_context(self, job_id: str) -> str:
        if self.context_provider is None:
            return ""
        try:
            return await self.context_provider()
        except Exception:
            logger.warning("[Job %s] Failed to build context", job_id, exc_info=True)
            return ""

    async def _fail(self, job_id: str, exc: BaseException, label: str) -> None:
        # A session destroyed by cancellation surfaces here as an error; the job is already terminal.
        if not await self.registry.is_job_still_valid(job_id):
            logger.info("[Job %s] Stopped after cancellation (%s)", job_id, exc)
            return
        message = str(exc) or type(exc).__name__
        logger.error("[Job %s] Failed: %s", job_id, message)
        await self.ledger.mark_failed(job_id, message)
        self.activity.record("job", label, job_id=job_id, status="failed", details={"error": message})

    async def _run_regeneration(
        self,
        job_id: str,
        job_type: str,
        result_key: str,
        build_prompt: Callable[[str], str],
    ) -> None:
        label = f"Job: {job_type}"
        await self.ledger.mark_running(job_id)
        self.activity.record("job", label, job_id=job_id, status="running")

        try:
            if not await self.registry.is_job_still_valid(job_id):
                return

            context = await self._build_context(job_id)

            if not await self.registry.is_job_still_valid(job_id):
                return

            prompt = build_prompt(context)
            session = await self.provider.create_session(label, system_prompt=COACH_SYSTEM_PROMPT)
            self.registry.register(job_id, session)

            logger.info("[Job %s] Sending %s prompt (%d chars)...", job_id, result_key, len(prompt))
            try:
                result = await session.send_and_wait(prompt, timeout=self.ai_timeout)
            finally:
                self.registry.unregister(job_id)

            if not await self.registry.is_job_still_valid(job_id):
                await session.destroy()
                return

            await session.destroy()
            logger.info("[Job %s] Complete: %dms", job_id, result.total_time_ms)

            parsed = extract_json(result.response_text, label)
            item = parsed.get(result_key) if isinstance(parsed, dict) else None
            if not isinstance(item, dict):
                raise ValueError(f"Failed to parse {result_key} response")
            if not item.get("id"):
                item["id"] = str(uuid4())

            await self.ledger.mark_completed(job_id, {result_key: item})
            self.activity.record("job", label, job_id=job_id, status="completed")
            logger.info("[Job %s] Completed successfully", job_id)
        except Exception as exc:
            await self._fail(job_id, exc, label)

    async def execute_topic_regeneration(self, job_id: str, input: dict[str, Any]) -> None:
        await self._run_regeneration(
            job_id,
            "topic-regeneration",
            "learningTopic",
            lambda context: build_topic_prompt(
                context, input.get("existingTopicTitles") or (), input.get("skillProfile")
            ),
        )

    async def execute_challenge_regeneration(self, job_id: str, input: dict[str, Any]) -> None:
        await self._run_regeneration(
            job_id,
            "challenge-regeneration",
            "challenge",
            lambda context: build_challenge_prompt(
                context, input.get("existingChallengeTitles") or (), input.get("skillProfile")
            ),
        )

    async def execute_goal_regeneration(self, job_id: str, input: dict[str, Any]) -> None:
        await self._run_regeneration(
            job_id,
            "goal-regeneration",
            "goal",
            lambda context: build_goal_prompt(
                context, input.get("existingGoalTitles") or (), input.get("skillProfile")
            ),
        )

    async def save_chat_progress(self, progress: _ChatProgress, is_final: bool) -> bool:
        """Flush the reply so far into the thread and the recovery store; failures are logged only."""
        try:
            await self.active_streams.set(
                ActiveStreamEntry(
                    job_id=progress.job_id,
                    thread_id=progress.thread_id,
                    content=progress.content,
                    status="completed" if is_final else "streaming",
                )
            )
            flush = progress.flush(is_final)
            if await self.threads.apply(progress.thread_id, lambda thread: reconcile_flush(thread, flush)) is None:
                logger.debug("[Job %s] Flush skipped (final=%s)", progress.job_id, is_final)
                return False
        except (OSError, ValueError):
            logger.warning("[Job %s] Failed to save progress", progress.job_id, exc_info=True)
            return False
        logger.debug("[Job %s] Saved progress: %d chars, final=%s", progress.job_id, len(progress.content), is_final)
        return True

    async def _mark_stream_failed(self, progress: _ChatProgress) -> None:
        try:
            await self.active_streams.set(
                ActiveStreamEntry(
                    job_id=progress.job_id,
                    thread_id=progress.thread_id,
                    content=progress.content,
                    status="failed",
                )
            )
        except (OSError, ValueError):
            logger.warning("[Job %s] Failed to update active stream", progress.job_id, exc_info=True)

    async def execute_chat_response(self, job_id: str, input: dict[str, Any]) -> None:
        label = "Job: chat-response"
        await self.ledger.mark_running(job_id)
        self.activity.record("job", label, job_id=job_id, status="running")

        thread_id = str(input.get("threadId") or "")
        progress = _ChatProgress(job_id=job_id, thread_id=thread_id, prompt=str(input.get("prompt") or ""))

        try:
            if not thread_id or not progress.prompt:
                raise ValueError("Chat response requires threadId and prompt")

            logger.info("[Job %s] Starting chat response for thread %s", job_id, thread_id)
            if await self.threads.get_thread_by_id(thread_id) is None:
                raise LookupError(f"Thread {thread_id} not found")

            prompt = build_chat_prompt(
                progress.prompt, input.get("repos") or (), bool(input.get("useGitHubTools", False))
            )
            session = await self.provider.create_session(f"Job: {job_id}")
            self.registry.register(job_id, session)

            cancelled = False
            last_save = time.monotonic()
            try:
                async for event in session.stream(prompt):
                    if not await self.registry.is_job_still_valid(job_id):
                        logger.info("[Job %s] Job cancelled - breaking out of stream loop", job_id)
                        cancelled = True
                        break

                    if event.type == "delta":
                        progress.content += event.content
                        now = time.monotonic()
                        if now - last_save >= self.save_interval:
                            await self.save_chat_progress(progress, is_final=False)
                            last_save = now
                    elif event.type == "tool_start" and event.name:
                        progress.tool_calls.append(event.name)
                    elif event.type == "done":
                        progress.has_actionable_item = detect_actionable_content(progress.content)
                    elif event.type == "error":
                        raise RuntimeError(event.message or "Stream error")
            finally:
                self.registry.unregister(job_id)
                await session.destroy()

            if cancelled:
                logger.info("[Job %s] Chat response cancelled after %d chars", job_id, len(progress.content))
                await self._mark_stream_failed(progress)
                return

            await self.save_chat_progress(progress, is_final=True)
            result: dict[str, Any] = {
                "threadId": thread_id,
                "content": progress.content,
                "hasActionableItem": progress.has_actionable_item,
            }
            if progress.tool_calls:
                result["toolCalls"] = progress.tool_calls
            await self.ledger.mark_completed(job_id, result)
            self.activity.record("job", label, job_id=job_id, status="completed")
            logger.info("[Job %s] Chat response completed: %d chars", job_id, len(progress.content))
        except Exception as exc:
            if thread_id:
                await self._mark_stream_failed(progress)
            await self._fail(job_id, exc, label)

    async def _save_evaluation(self, challenge_id: str, job_id: str, **changes: Any) -> None:
        try:
            await self.evaluations.update_progress(challenge_id, jobId=job_id, **changes)
        except (OSError, ValueError):
            logger.warning("[Job %s] Failed to save evaluation progress", job_id, exc_info=True)

    async def save_evaluation_progress(self, progress: _EvaluationProgress, is_final: bool) -> None:
        """Publish the verdict once its JSON block is complete, then the feedback as it grows."""
        changes: dict[str, Any] = {}
        if progress.partial is None:
            progress.partial = parse_partial_evaluation(progress.content)
            if progress.partial is not None and not is_final:
                changes["partial"] = progress.partial
        if is_final:
            progress.result = parse_evaluation_response(progress.content) or {
                "isCorrect": False,
                "feedback": progress.content or "Unable to parse evaluation.",
                "strengths": [],
                "improvements": ["Please try submitting again."],
            }
            await self._save_evaluation(
                progress.challenge_id,
                progress.job_id,
                status="completed",
                result=progress.result,
                streamingFeedback=progress.result["feedback"],
                partial=progress.partial,
            )
            return

        feedback = extract_streaming_feedback(progress.content)
        if len(feedback) > len(progress.feedback):
            progress.feedback = feedback
            changes["streamingFeedback"] = feedback
        if changes:
            await self._save_evaluation(progress.challenge_id, progress.job_id, status="streaming", **changes)

    async def execute_challenge_evaluation(self, job_id: str, input: dict[str, Any]) -> None:
        label = "Job: challenge-evaluation"
        await self.ledger.mark_running(job_id)
        self.activity.record("job", label, job_id=job_id, status="running")

        challenge_id = str(input.get("challengeId") or "")
        progress = _EvaluationProgress(job_id=job_id, challenge_id=challenge_id)

        try:
            challenge = input.get("challenge")
            files = input.get("files")
            if not challenge_id or not isinstance(challenge, dict) or not isinstance(files, list):
                raise ValueError("Challenge evaluation requires challengeId, challenge and files")

            await self._save_evaluation(challenge_id, job_id, status="pending", streamingFeedback="")
            prompt = build_evaluation_prompt(challenge, files)
            session = await self.provider.create_session(label, system_prompt=EVALUATION_SYSTEM_PROMPT)
            self.registry.register(job_id, session)
            logger.info("[Job %s] Evaluating challenge %s (%d files)", job_id, challenge_id, len(files))

            cancelled = False
            last_save = time.monotonic()
            try:
                async for event in session.stream(prompt):
                    if not await self.registry.is_job_still_valid(job_id):
                        cancelled = True
                        break

                    if event.type == "delta":
                        progress.content += event.content
                        now = time.monotonic()
                        if now - last_save >= self.save_interval:
                            await self.save_evaluation_progress(progress, is_final=False)
                            last_save = now
                    elif event.type == "done":
                        progress.content = event.total_content or progress.content
                    elif event.type == "error":
                        raise RuntimeError(event.message or "Stream error")
            finally:
                self.registry.unregister(job_id)
                await session.destroy()

            if cancelled:
                logger.info("[Job %s] Evaluation cancelled after %d chars", job_id, len(progress.content))
                await self._save_evaluation(challenge_id, job_id, status="failed", error="Cancelled by user")
                return

            await self.save_evaluation_progress(progress, is_final=True)
            result = dict(progress.result or {})
            result.update(
                {"challengeId": challenge_id, "streamingFeedback": result.get("feedback", ""), "partial": progress.partial}
            )
            await self.ledger.mark_completed(job_id, result)
            self.activity.record("job", label, job_id=job_id, status="completed")
            logger.info("[Job %s] Evaluation completed (correct=%s)", job_id, result.get("isCorrect"))
        except Exception as exc:
            if challenge_id:
                still_valid = await self.registry.is_job_still_valid(job_id)
                error = (str(exc) or type(exc).__name__) if still_valid else "Cancelled by user"
                await self._save_evaluation(challenge_id, job_id, status="failed", error=error)
            await self._fail(job_id, exc, label)
