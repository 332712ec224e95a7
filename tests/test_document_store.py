from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from flightschool.document_store import JsonDocumentStore


def _is_mapping(data) -> bool:
    return isinstance(data, dict) and "items" in data


class JsonDocumentStoreTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        self.store = JsonDocumentStore(self.base)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    async def test_missing_document_returns_default_without_writing(self) -> None:
        self.assertEqual(await self.store.read("absent", {"items": []}), {"items": []})
        self.assertFalse(self.store.path_for("absent").exists())

    async def test_write_then_read(self) -> None:
        await self.store.write("doc", {"items": [1, 2]})
        self.assertEqual(await self.store.read("doc", None, _is_mapping), {"items": [1, 2]})
        self.assertEqual(list(self.base.glob("*.tmp")), [])

    async def test_corrupt_document_is_moved_aside(self) -> None:
        self.store.path_for("doc").write_text("{broken", encoding="utf-8")

        self.assertEqual(await self.store.read("doc", {"items": []}), {"items": []})
        self.assertFalse(self.store.path_for("doc").exists())
        quarantined = list(self.base.glob("doc.json.corrupt-*"))
        self.assertEqual(len(quarantined), 1)
        self.assertEqual(quarantined[0].read_text(encoding="utf-8"), "{broken")

    async def test_schema_invalid_document_is_moved_aside(self) -> None:
        await self.store.write("doc", {"other": True})
        self.assertIsNone(await self.store.read("doc", None, _is_mapping))
        self.assertEqual(len(list(self.base.glob("doc.json.corrupt-*"))), 1)

    async def test_delete_and_list_names(self) -> None:
        await self.store.write("streams/a", {})
        await self.store.write("streams/b", {})
        self.assertEqual(await self.store.list_names("streams"), ["streams/a", "streams/b"])

        self.assertTrue(await self.store.delete("streams/a"))
        self.assertFalse(await self.store.delete("streams/a"))
        self.assertEqual(await self.store.list_names("streams"), ["streams/b"])
        self.assertEqual(await self.store.list_names("nothing-here"), [])

    def test_names_cannot_escape_base_dir(self) -> None:
        with self.assertRaises(ValueError):
            self.store.path_for("../outside")


if __name__ == "__main__":
    unittest.main()
