from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from flightschool.cancellation import CallbackDestroyable, CancellationRegistry
from flightschool.document_store import JsonDocumentStore
from flightschool.job_manager import JobLedger


class CancellationRegistryTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = JsonDocumentStore(Path(self.temp_dir.name))
        self.ledger = JobLedger(self.store)
        self.registry = CancellationRegistry(self.ledger)
        self.destroyed: list[str] = []

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _session(self, name: str) -> CallbackDestroyable:
        async def destroy() -> None:
            self.destroyed.append(name)

        return CallbackDestroyable(destroy)

    async def test_cancel_flips_status_and_destroys_session(self) -> None:
        await self.ledger.create("job-1", "topic-regeneration")
        await self.ledger.mark_running("job-1")
        self.registry.register("job-1", self._session("s1"))

        self.assertTrue(await self.registry.cancel("job-1"))

        record = await self.ledger.get("job-1")
        assert record is not None
        self.assertEqual(record.status, "cancelled")
        self.assertEqual(record.error, "Cancelled by user")
        self.assertEqual(self.destroyed, ["s1"])
        self.assertNotIn("job-1", self.registry)

    async def test_cancel_without_session_still_succeeds(self) -> None:
        await self.ledger.create("job-1", "topic-regeneration")
        self.assertTrue(await self.registry.cancel("job-1"))
        self.assertFalse(await self.registry.is_job_still_valid("job-1"))

    async def test_cancel_is_idempotent(self) -> None:
        await self.ledger.create("job-1", "topic-regeneration")
        self.assertTrue(await self.registry.cancel("job-1"))
        first = await self.ledger.get("job-1")

        self.assertFalse(await self.registry.cancel("job-1"))
        second = await self.ledger.get("job-1")
        assert first is not None and second is not None
        self.assertEqual(second.status, "cancelled")
        self.assertEqual(second.completed_at, first.completed_at)

    async def test_cancel_unknown_or_finished_job_returns_false(self) -> None:
        self.assertFalse(await self.registry.cancel("missing"))
        await self.ledger.create("job-1", "topic-regeneration")
        await self.ledger.mark_completed("job-1", {})
        self.assertFalse(await self.registry.cancel("job-1"))

    async def test_destroy_failure_is_not_propagated(self) -> None:
        async def explode() -> None:
            raise RuntimeError("already gone")

        await self.ledger.create("job-1", "topic-regeneration")
        self.registry.register("job-1", CallbackDestroyable(explode))
        with self.assertLogs("flightschool.cancellation", level="WARNING"):
            self.assertTrue(await self.registry.cancel("job-1"))

    async def test_liveness_sees_cancellation_from_another_process(self) -> None:
        await self.ledger.create("job-1", "topic-regeneration")
        self.assertTrue(await self.registry.is_job_still_valid("job-1"))

        other_process = CancellationRegistry(JobLedger(self.store))
        self.assertTrue(await other_process.cancel("job-1"))

        self.assertFalse(await self.registry.is_job_still_valid("job-1"))

    async def test_deleted_job_is_not_valid(self) -> None:
        await self.ledger.create("job-1", "topic-regeneration")
        await self.ledger.delete("job-1")
        self.assertFalse(await self.registry.is_job_still_valid("job-1"))


if __name__ == "__main__":
    unittest.main()
