"""Streaming progress of challenge evaluations, keyed by challenge id.

The evaluation executor writes here while the AI reply streams in, so the
challenge page can show the verdict and feedback before the job finishes and
can recover them after a reload.
"""

from __future__ import annotations

import logging
from typing import Any

from .document_store import JsonDocumentStore
from .models import utcnow

logger = logging.getLogger(__name__)

STORAGE_KEY = "evaluations"
SCHEMA_VERSION = 1

EVALUATION_STATUSES = frozenset({"pending", "streaming", "completed", "failed"})


def _validate_schema(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("evaluations"), dict)


def _empty_schema() -> dict[str, Any]:
    return {"evaluations": {}, "version": SCHEMA_VERSION}


class EvaluationStore:
    def __init__(self, store: JsonDocumentStore):
        self.store = store

    async def _load(self) -> dict[str, Any]:
        return await self.store.read(STORAGE_KEY, _empty_schema(), _validate_schema)

    async def get_progress(self, challenge_id: str) -> dict[str, Any] | None:
        schema = await self._load()
        return schema["evaluations"].get(challenge_id)

    async def update_progress(self, challenge_id: str, **changes: Any) -> dict[str, Any]:
        """Merge ``changes`` (camelCase keys) into the challenge's progress record.

        A ``pending`` update starts a fresh record, dropping the previous attempt's result.
        """
        status = changes.get("status")
        if status is not None and status not in EVALUATION_STATUSES:
            raise ValueError(f"Unknown evaluation status: {status}")

        schema = await self._load()
        existing = (None if status == "pending" else schema["evaluations"].get(challenge_id)) or {
            "challengeId": challenge_id,
            "status": "pending",
            "streamingFeedback": "",
        }
        progress = {**existing, **{k: v for k, v in changes.items() if v is not None}}
        progress["challengeId"] = challenge_id
        progress["updatedAt"] = utcnow().isoformat()
        schema["evaluations"][challenge_id] = progress
        schema["version"] = SCHEMA_VERSION
        await self.store.write(STORAGE_KEY, schema)
        return progress

    async def clear_progress(self, challenge_id: str) -> bool:
        schema = await self._load()
        if schema["evaluations"].pop(challenge_id, None) is None:
            return False
        await self.store.write(STORAGE_KEY, schema)
        logger.debug("Cleared evaluation progress for %s", challenge_id)
        return True
