from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path

from fakes import FakeSessionProvider, chat_events, wait_until

from flightschool.config import Settings
from flightschool.reconciler import insert_placeholder
from flightschool.services import build_services
from flightschool.sessions import SessionTimeoutError, StreamEvent
from flightschool.threads import Message, Thread

TOPIC_REPLY = 'Here you go:\n```json\n{"learningTopic": {"title": "Async iterators", "type": "concept"}}\n```'
PROMPT = "Explain asyncio.gather"


class ExecutorTestCase(unittest.IsolatedAsyncioTestCase):
    provider: FakeSessionProvider

    async def asyncSetUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings = Settings(data_dir=Path(self.temp_dir.name), chat_save_interval_seconds=0.0)
        self.provider = FakeSessionProvider(reply=TOPIC_REPLY)
        self.services = build_services(self.settings, provider=self.provider)

    async def asyncTearDown(self) -> None:
        await self.services.aclose()
        self.temp_dir.cleanup()

    async def _status(self, job_id: str):
        self.services.ledger.invalidate_cache()
        record = await self.services.ledger.get(job_id)
        assert record is not None
        return record


class RegenerationExecutorTest(ExecutorTestCase):
    async def test_topic_regeneration_completes_with_generated_id(self) -> None:
        record = await self.services.ledger.create("job-1", "topic-regeneration", {"existingTopicTitles": ["A"]}, "t1")
        await self.services.executors.run(record)

        done = await self._status("job-1")
        self.assertEqual(done.status, "completed")
        topic = done.result["learningTopic"]
        self.assertEqual(topic["title"], "Async iterators")
        self.assertTrue(topic["id"])
        self.assertIn("- A", self.provider.sessions[0].prompts[0])
        self.assertTrue(self.provider.sessions[0].destroyed)
        self.assertNotIn("job-1", self.services.registry)

    async def test_existing_id_is_kept(self) -> None:
        self.provider.reply = '{"goal": {"id": "g-42", "title": "Write tests"}}'
        record = await self.services.ledger.create("job-1", "goal-regeneration", {})
        await self.services.executors.run(record)
        self.assertEqual((await self._status("job-1")).result, {"goal": {"id": "g-42", "title": "Write tests"}})

    async def test_unparseable_reply_fails_job(self) -> None:
        self.provider.reply = "Sorry, I cannot help with that."
        record = await self.services.ledger.create("job-1", "challenge-regeneration", {})
        await self.services.executors.run(record)

        failed = await self._status("job-1")
        self.assertEqual(failed.status, "failed")
        self.assertEqual(failed.error, "Failed to parse challenge response")

    async def test_timeout_is_a_normal_failure(self) -> None:
        self.provider.error = SessionTimeoutError("AI request timed out after 120s")
        record = await self.services.ledger.create("job-1", "topic-regeneration", {})
        await self.services.executors.run(record)

        failed = await self._status("job-1")
        self.assertEqual(failed.status, "failed")
        self.assertIn("timed out", failed.error)
        self.assertNotIn("job-1", self.services.registry)

    async def test_cancel_before_start_never_completes(self) -> None:
        record = await self.services.ledger.create("job-1", "topic-regeneration", {})
        self.assertTrue(await self.services.registry.cancel("job-1"))

        await self.services.executors.run(record)
        cancelled = await self._status("job-1")
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(self.provider.sessions, [])

    async def test_cancel_while_waiting_on_ai(self) -> None:
        self.provider.gate = asyncio.Event()
        record = await self.services.ledger.create("job-1", "topic-regeneration", {})
        self.services.runner.submit(record)
        await wait_until(lambda: "job-1" in self.services.registry)

        self.assertTrue(await self.services.registry.cancel("job-1"))
        await self.services.runner.wait("job-1")

        cancelled = await self._status("job-1")
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cancelled.error, "Cancelled by user")
        self.assertIsNone(cancelled.result)
        self.assertTrue(self.provider.sessions[0].destroyed)

    async def test_unknown_type_fails(self) -> None:
        record = await self.services.ledger.create("job-1", "mystery", {})
        await self.services.executors.run(record)
        self.assertEqual((await self._status("job-1")).error, "Unknown job type: mystery")

    async def test_lifecycle_is_recorded_in_activity_log(self) -> None:
        record = await self.services.ledger.create("job-1", "topic-regeneration", {})
        await self.services.executors.run(record)
        statuses = [e.status for e in self.services.activity.get_events() if e.job_id == "job-1"]
        self.assertEqual(statuses, ["running", "completed"])


class ChatExecutorTest(ExecutorTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.provider.events = chat_events("Use gather ", "to run awaitables ", "concurrently. You could try adding a timeout.")
        await self.services.threads.update_thread(
            Thread(id="t1", messages=(Message(id="u1", role="user", content=PROMPT),))
        )

    async def _messages(self) -> tuple[Message, ...]:
        thread = await self.services.threads.get_thread_by_id("t1")
        assert thread is not None
        return thread.messages

    async def test_chat_response_writes_one_final_reply(self) -> None:
        record = await self.services.ledger.create("job-1", "chat-response", {"threadId": "t1", "prompt": PROMPT})
        await self.services.executors.run(record)

        done = await self._status("job-1")
        self.assertEqual(done.status, "completed")
        self.assertEqual(done.result["threadId"], "t1")
        self.assertTrue(done.result["hasActionableItem"])
        messages = await self._messages()
        self.assertEqual(len(messages), 2)
        self.assertEqual(messages[1].content, done.result["content"])

        stream = await self.services.active_streams.get("job-1")
        assert stream is not None
        self.assertEqual(stream.status, "completed")

    async def test_progress_updates_existing_placeholder(self) -> None:
        await self.services.threads.apply("t1", lambda thread: insert_placeholder(thread, PROMPT, "job-1"))
        self.provider.events = [StreamEvent(type="tool_start", name="search_code")] + self.provider.events

        record = await self.services.ledger.create("job-1", "chat-response", {"threadId": "t1", "prompt": PROMPT})
        await self.services.executors.run(record)

        messages = await self._messages()
        self.assertEqual(len(messages), 2)
        self.assertFalse(messages[1].id.startswith("streaming-"))
        self.assertEqual(messages[1].tool_calls, ("search_code",))
        self.assertEqual((await self._status("job-1")).result["toolCalls"], ["search_code"])

    async def test_reply_already_finalized_by_stream_is_left_alone(self) -> None:
        finalized = Message(id="msg-1-x", role="assistant", content="The push stream answered this already.")
        await self.services.threads.update_thread(
            Thread(id="t1", messages=(Message(id="u1", role="user", content=PROMPT), finalized))
        )
        record = await self.services.ledger.create("job-1", "chat-response", {"threadId": "t1", "prompt": PROMPT})
        await self.services.executors.run(record)

        self.assertEqual((await self._status("job-1")).status, "completed")
        messages = await self._messages()
        self.assertEqual([(m.id, m.content) for m in messages], [("u1", PROMPT), (finalized.id, finalized.content)])

    async def test_cancel_mid_stream_stops_without_final_write(self) -> None:
        self.provider.gate = asyncio.Event()
        record = await self.services.ledger.create("job-1", "chat-response", {"threadId": "t1", "prompt": PROMPT})
        self.services.runner.submit(record)
        await wait_until(lambda: self.provider.sessions and self.provider.sessions[0].prompts)

        self.assertTrue(await self.services.registry.cancel("job-1"))
        await self.services.runner.wait("job-1")

        self.assertEqual((await self._status("job-1")).status, "cancelled")
        self.assertEqual(len(await self._messages()), 1)
        stream = await self.services.active_streams.get("job-1")
        assert stream is not None
        self.assertEqual(stream.status, "failed")

    async def test_missing_thread_fails(self) -> None:
        record = await self.services.ledger.create("job-1", "chat-response", {"threadId": "nope", "prompt": PROMPT})
        await self.services.executors.run(record)
        failed = await self._status("job-1")
        self.assertEqual((failed.status, failed.error), ("failed", "Thread nope not found"))

    async def test_stream_error_fails_job(self) -> None:
        self.provider.events = [StreamEvent(type="delta", content="Par"), StreamEvent(type="error", message="model crashed")]
        record = await self.services.ledger.create("job-1", "chat-response", {"threadId": "t1", "prompt": PROMPT})
        await self.services.executors.run(record)
        self.assertEqual((await self._status("job-1")).error, "model crashed")

EVALUATION_INPUT = {
    "challengeId": "c1",
    "challenge": {
        "title": "Reverse a string",
        "description": "Return the input reversed.",
        "language": "python",
        "difficulty": "beginner",
        "testCases": '[{"input": "abc", "expectedOutput": "cba"}]',
    },
    "files": [{"name": "solution.py", "content": "def solve(s):\n    return s[::-1]"}],
}
VERDICT = '```json\n{"isCorrect": true, "score": 110, "strengths": ["Idiomatic slicing"], "improvements": []}\n```\n'


class EvaluationExecutorTest(ExecutorTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.provider.events = chat_events(VERDICT, "---FEEDBACK---\nGreat job, ", "concise and correct.\n---END FEEDBACK---")
        self.saved: list[dict] = []
        update_progress = self.services.evaluations.update_progress

        async def recording(challenge_id, **changes):
            self.saved.append(changes)
            return await update_progress(challenge_id, **changes)

        self.services.evaluations.update_progress = recording

    async def test_verdict_and_feedback_are_published_while_streaming(self) -> None:
        record = await self.services.ledger.create("job-1", "challenge-evaluation", EVALUATION_INPUT, "c1")
        await self.services.executors.run(record)

        done = await self._status("job-1")
        self.assertEqual(done.status, "completed")
        self.assertEqual(done.result["challengeId"], "c1")
        self.assertTrue(done.result["isCorrect"])
        self.assertEqual(done.result["score"], 110)
        self.assertEqual(done.result["feedback"], "Great job, concise and correct.")
        self.assertEqual(done.result["partial"]["strengths"], ["Idiomatic slicing"])

        statuses = [changes.get("status") for changes in self.saved]
        self.assertEqual((statuses[0], statuses[-1]), ("pending", "completed"))
        partial_saves = [changes for changes in self.saved if "partial" in changes and changes["status"] == "streaming"]
        self.assertEqual(len(partial_saves), 1)
        feedback_saves = [
            changes["streamingFeedback"]
            for changes in self.saved
            if changes["status"] == "streaming" and "streamingFeedback" in changes
        ]
        self.assertEqual(feedback_saves, ["Great job,", "Great job, concise and correct."])

        progress = await self.services.evaluations.get_progress("c1")
        self.assertEqual((progress["status"], progress["jobId"]), ("completed", "job-1"))
        self.assertEqual(progress["result"]["feedback"], "Great job, concise and correct.")

        prompt = self.provider.sessions[0].prompts[0]
        self.assertIn("1. Input: abc -> Expected: cba", prompt)
        self.assertIn("```py\ndef solve(s):", prompt)
        self.assertTrue(self.provider.sessions[0].destroyed)
        self.assertNotIn("job-1", self.services.registry)

    async def test_unparseable_reply_completes_with_retry_hint(self) -> None:
        self.provider.events = chat_events("I could not read this submission.")
        record = await self.services.ledger.create("job-1", "challenge-evaluation", EVALUATION_INPUT, "c1")
        await self.services.executors.run(record)

        done = await self._status("job-1")
        self.assertEqual(done.status, "completed")
        self.assertFalse(done.result["isCorrect"])
        self.assertEqual(done.result["feedback"], "I could not read this submission.")
        self.assertEqual(done.result["improvements"], ["Please try submitting again."])

    async def test_cancel_mid_stream_marks_progress_failed(self) -> None:
        self.provider.gate = asyncio.Event()
        record = await self.services.ledger.create("job-1", "challenge-evaluation", EVALUATION_INPUT, "c1")
        self.services.runner.submit(record)
        await wait_until(lambda: self.provider.sessions and self.provider.sessions[0].prompts)

        self.assertTrue(await self.services.registry.cancel("job-1"))
        await self.services.runner.wait("job-1")

        cancelled = await self._status("job-1")
        self.assertEqual(cancelled.status, "cancelled")
        self.assertIsNone(cancelled.result)
        progress = await self.services.evaluations.get_progress("c1")
        self.assertEqual((progress["status"], progress["error"]), ("failed", "Cancelled by user"))
        self.assertNotIn("completed", [changes.get("status") for changes in self.saved])

    async def test_stream_error_fails_job_and_progress(self) -> None:
        self.provider.events = [StreamEvent(type="delta", content=VERDICT), StreamEvent(type="error", message="model crashed")]
        record = await self.services.ledger.create("job-1", "challenge-evaluation", EVALUATION_INPUT, "c1")
        await self.services.executors.run(record)

        failed = await self._status("job-1")
        self.assertEqual((failed.status, failed.error), ("failed", "model crashed"))
        progress = await self.services.evaluations.get_progress("c1")
        self.assertEqual((progress["status"], progress["error"]), ("failed", "model crashed"))
        self.assertEqual(progress["partial"]["isCorrect"], True)

    async def test_missing_files_fail_before_any_session(self) -> None:
        record = await self.services.ledger.create("job-1", "challenge-evaluation", {"challengeId": "c1", "challenge": {}})
        await self.services.executors.run(record)

        failed = await self._status("job-1")
        self.assertEqual(failed.error, "Challenge evaluation requires challengeId, challenge and files")
        self.assertEqual(self.provider.sessions, [])



if __name__ == "__main__":
    unittest.main()
