from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

logger = logging.getLogger(__name__)

Validator = Callable[[Any], bool]


class JsonDocumentStore:
    """Named JSON documents under one directory.

    No transactions and no locking: the last successful ``write`` wins, across
    coroutines and across processes sharing ``base_dir``.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir.resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        target = (self.base_dir / f"{name}.json").resolve()
        # Safety barrier: documents can only live within base_dir.
        if target == self.base_dir or self.base_dir not in target.parents:
            raise ValueError(f"Document name escapes storage directory: {name!r}")
        return target

    async def read(self, name: str, default: Any, validate: Validator | None = None) -> Any:
        return await asyncio.to_thread(self._read_sync, name, default, validate)

    async def write(self, name: str, data: Any) -> None:
        await asyncio.to_thread(self._write_sync, name, data)

    async def delete(self, name: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, name)

    async def list_names(self, directory: str) -> list[str]:
        """Document names stored under ``directory`` (one level deep)."""
        return await asyncio.to_thread(self._list_sync, directory)

    def _read_sync(self, name: str, default: Any, validate: Validator | None) -> Any:
        path = self.path_for(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default

        if not raw.strip():
            logger.warning("Empty document %s, using default", name)
            return default

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._quarantine(path, f"unparseable JSON ({exc})")
            return default

        if validate is not None and not validate(payload):
            self._quarantine(path, "schema validation failed")
            return default
        return payload

    def _write_sync(self, name: str, data: Any) -> None:
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Unique temp file per write so concurrent writers never share one.
        temp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        try:
            temp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(temp_path, path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            logger.error("Failed to write document %s", name, exc_info=True)
            raise

    def _delete_sync(self, name: str) -> bool:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _list_sync(self, directory: str) -> list[str]:
        folder = (self.base_dir / directory).resolve()
        if self.base_dir not in folder.parents or not folder.is_dir():
            return []
        return sorted(f"{directory}/{p.stem}" for p in folder.glob("*.json") if p.is_file())

    def _quarantine(self, path: Path, reason: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        try:
            os.replace(path, target)
        except OSError:
            logger.error("Document %s is corrupt (%s) and could not be moved aside", path.name, reason)
            return
        logger.error("Document %s is corrupt (%s); moved to %s, using default", path.name, reason, target.name)
