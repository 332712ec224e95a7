from __future__ import annotations

import unittest

from flightschool.activity import ActivityLog
from flightschool.content import (
    detect_actionable_content,
    extract_json,
    extract_streaming_feedback,
    parse_evaluation_response,
    parse_partial_evaluation,
)

EVALUATION_REPLY = (
    '```json\n{"isCorrect": true, "score": 115, "strengths": ["Readable"], "improvements": [], "nextSteps": ["Add tests"]}\n```\n'
    "---FEEDBACK---\nSolid work, the edge cases are handled.\n---END FEEDBACK---"
)


class ExtractJsonTest(unittest.TestCase):
    def test_prefers_fenced_json_block(self) -> None:
        text = 'Sure!\n```json\n{"goal": {"title": "Ship"}}\n```\nAlso {"ignored": true}'
        self.assertEqual(extract_json(text), {"goal": {"title": "Ship"}})

    def test_generic_fence_must_look_like_json(self) -> None:
        self.assertEqual(extract_json('```\n[1, 2]\n```'), [1, 2])
        self.assertEqual(extract_json('```\nprint("hi")\n```\nthen {"a": 1}'), {"a": 1})

    def test_first_balanced_object_in_prose(self) -> None:
        text = 'The answer is {"challenge": {"title": "Two sum", "hints": {"first": "hash"}}} as requested.'
        self.assertEqual(extract_json(text)["challenge"]["hints"], {"first": "hash"})

    def test_whole_text_and_failure(self) -> None:
        self.assertEqual(extract_json("  [3]  "), [3])
        self.assertIsNone(extract_json(""))
        with self.assertLogs("flightschool.content", level="WARNING"):
            self.assertIsNone(extract_json("no json here", context="goal reply"))


class EvaluationParsingTest(unittest.TestCase):
    def test_full_reply_uses_feedback_section(self) -> None:
        result = parse_evaluation_response(EVALUATION_REPLY)
        self.assertEqual(
            result,
            {
                "isCorrect": True,
                "feedback": "Solid work, the edge cases are handled.",
                "strengths": ["Readable"],
                "improvements": [],
                "score": 115,
                "nextSteps": ["Add tests"],
            },
        )

    def test_reply_without_feedback_gets_default(self) -> None:
        result = parse_evaluation_response('{"isCorrect": false}')
        self.assertEqual(result["feedback"], "Unable to provide detailed feedback.")
        self.assertIsNone(parse_evaluation_response("I cannot grade this."))

    def test_partial_needs_complete_verdict(self) -> None:
        self.assertIsNone(parse_partial_evaluation('```json\n{"isCorrect": tr'))
        self.assertIsNone(parse_partial_evaluation('{"score": 40}'))
        partial = parse_partial_evaluation(EVALUATION_REPLY[:120])
        self.assertEqual(partial["isCorrect"], True)
        self.assertEqual(partial["score"], 115)

    def test_streaming_feedback_grows_until_end_marker(self) -> None:
        self.assertEqual(extract_streaming_feedback('{"isCorrect": true}'), "")
        self.assertEqual(extract_streaming_feedback("---FEEDBACK---\n Nice wo"), "Nice wo")
        self.assertEqual(extract_streaming_feedback(EVALUATION_REPLY + "\ntrailing"), "Solid work, the edge cases are handled.")


class ActionableContentTest(unittest.TestCase):
    def test_detects_suggestions(self) -> None:
        self.assertTrue(detect_actionable_content("You could try rewriting it with a generator."))
        self.assertTrue(detect_actionable_content("Here's an exercise for you."))
        self.assertTrue(detect_actionable_content("1. Try adding type hints"))

    def test_plain_answer_is_not_actionable(self) -> None:
        self.assertFalse(detect_actionable_content("A list is mutable; a tuple is not."))


class ActivityLogTest(unittest.TestCase):
    def test_keeps_most_recent_events_and_fans_out(self) -> None:
        log = ActivityLog(max_events=2)
        seen = []
        unsubscribe = log.subscribe(seen.append)

        log.record("job", "Regenerating topic", job_id="a", status="running")
        log.record("job", "Regenerating topic", job_id="a", status="completed")
        unsubscribe()
        log.record("job", "Regenerating goal", job_id="b", status="running")

        self.assertEqual([e.job_id for e in log.get_events()], ["a", "b"])
        self.assertEqual([e.status for e in seen], ["running", "completed"])
        self.assertEqual(log.get_events()[-1].to_dict()["jobId"], "b")

    def test_failing_subscriber_does_not_block_others(self) -> None:
        log = ActivityLog()
        seen = []

        def broken(event):
            raise RuntimeError("gone")

        log.subscribe(broken)
        log.subscribe(seen.append)
        with self.assertLogs("flightschool.activity", level="WARNING"):
            log.record("job", "x")
        self.assertEqual(len(seen), 1)


if __name__ == "__main__":
    unittest.main()
