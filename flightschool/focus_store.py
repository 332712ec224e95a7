from __future__ import annotations

import logging
from datetime import date
from typing import Any

from .document_store import JsonDocumentStore
from .state_machine import (
    CHALLENGE_STATE_MACHINE,
    GOAL_STATE_MACHINE,
    TOPIC_STATE_MACHINE,
    InvalidTransitionError,
    StatefulItem,
    StateMachine,
)

logger = logging.getLogger(__name__)

STORAGE_KEY = "focus-storage"
MAX_HISTORY_ENTRIES = 30


def today_key() -> str:
    return date.today().isoformat()


def _validate_schema(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("history"), dict)


def _empty_record() -> dict[str, list]:
    return {"challenges": [], "goals": [], "learningTopics": []}


class FocusStore:
    """Daily focus history: challenges, goals and topic sets per date key.

    Every item is stored as a serialized ``StatefulItem``. Transitions requested
    here come from completion handlers that may fire late or out of order, so an
    invalid transition is logged and skipped instead of raised.
    """

    def __init__(self, store: JsonDocumentStore):
        self.store = store

    async def _load(self) -> dict[str, Any]:
        return await self.store.read(STORAGE_KEY, {"history": {}}, _validate_schema)

    async def _save(self, schema: dict[str, Any]) -> None:
        history = schema["history"]
        if len(history) > MAX_HISTORY_ENTRIES:
            keep = sorted(history, reverse=True)[:MAX_HISTORY_ENTRIES]
            schema["history"] = {key: history[key] for key in sorted(keep)}
        await self.store.write(STORAGE_KEY, schema)

    async def get_history(self) -> dict[str, Any]:
        schema = await self._load()
        return schema["history"]

    async def get_record(self, date_key: str) -> dict[str, Any] | None:
        history = await self.get_history()
        return history.get(date_key)

    async def save_focus(self, focus: dict[str, Any], date_key: str | None = None) -> None:
        """Append the day's challenge, goal and topic set when they differ from the latest ones."""
        date_key = date_key or today_key()
        schema = await self._load()
        record = schema["history"].setdefault(date_key, _empty_record())

        challenge = focus.get("challenge")
        if challenge is not None and (not record["challenges"] or record["challenges"][-1]["data"] != challenge):
            record["challenges"].append(CHALLENGE_STATE_MACHINE.create(challenge).to_dict())

        goal = focus.get("goal")
        if goal is not None and (not record["goals"] or record["goals"][-1]["data"] != goal):
            record["goals"].append(GOAL_STATE_MACHINE.create(goal).to_dict())

        topics = focus.get("learningTopics")
        if topics is not None:
            latest = [item["data"] for item in record["learningTopics"][-1]] if record["learningTopics"] else None
            if latest != topics:
                record["learningTopics"].append([TOPIC_STATE_MACHINE.create(topic).to_dict() for topic in topics])

        await self._save(schema)

    def _apply(
        self,
        machine: StateMachine,
        items: list[dict[str, Any]],
        index: int,
        new_state: str,
        source: str | None,
        context: dict[str, Any],
    ) -> bool:
        try:
            updated = machine.transition(StatefulItem.from_dict(items[index]), new_state, source)
        except (InvalidTransitionError, ValueError) as exc:
            logger.error("Invalid %s state transition: %s %s", machine.item_type, exc, context)
            return False
        items[index] = updated.to_dict()
        return True

    async def _transition_flat(
        self,
        machine: StateMachine,
        collection: str,
        date_key: str,
        item_id: str,
        new_state: str,
        source: str | None,
    ) -> bool:
        schema = await self._load()
        record = schema["history"].get(date_key)
        context = {"date_key": date_key, "item_id": item_id, "new_state": new_state, "source": source}
        if record is None:
            logger.warning("Attempted to transition %s for non-existent date %s", machine.item_type, context)
            return False

        items = record[collection]
        index = next((i for i, item in enumerate(items) if item["data"].get("id") == item_id), -1)
        if index == -1:
            logger.warning("%s not found in record %s", machine.item_type.capitalize(), context)
            return False

        if not self._apply(machine, items, index, new_state, source, context):
            return False
        await self._save(schema)
        logger.debug("%s state transitioned %s", machine.item_type.capitalize(), context)
        return True

    async def transition_challenge(self, date_key: str, challenge_id: str, new_state: str, source: str | None = None) -> bool:
        return await self._transition_flat(CHALLENGE_STATE_MACHINE, "challenges", date_key, challenge_id, new_state, source)

    async def transition_goal(self, date_key: str, goal_id: str, new_state: str, source: str | None = None) -> bool:
        return await self._transition_flat(GOAL_STATE_MACHINE, "goals", date_key, goal_id, new_state, source)

    async def transition_topic(self, date_key: str, topic_id: str, new_state: str, source: str | None = None) -> bool:
        schema = await self._load()
        record = schema["history"].get(date_key)
        context = {"date_key": date_key, "item_id": topic_id, "new_state": new_state, "source": source}
        if record is None:
            logger.warning("Attempted to transition topic for non-existent date %s", context)
            return False

        # Newest topic set first: a topic id can appear in several historical sets.
        for topic_set in reversed(record["learningTopics"]):
            index = next((i for i, item in enumerate(topic_set) if item["data"].get("id") == topic_id), -1)
            if index == -1:
                continue
            if not self._apply(TOPIC_STATE_MACHINE, topic_set, index, new_state, source, context):
                return False
            await self._save(schema)
            logger.debug("Topic state transitioned %s", context)
            return True

        logger.warning("Topic not found in record %s", context)
        return False

    async def mark_topic_explored(self, date_key: str, topic_id: str, source: str | None = None) -> bool:
        return await self.transition_topic(date_key, topic_id, "explored", source)

    async def get_topic_position(self, date_key: str, topic_id: str) -> int | None:
        record = await self.get_record(date_key)
        if not record or not record["learningTopics"]:
            return None
        for index, item in enumerate(record["learningTopics"][-1]):
            if item["data"].get("id") == topic_id:
                return index
        return None

    async def add_challenge(self, date_key: str, challenge: dict[str, Any]) -> None:
        schema = await self._load()
        record = schema["history"].setdefault(date_key, _empty_record())
        record["challenges"].append(CHALLENGE_STATE_MACHINE.create(challenge).to_dict())
        await self._save(schema)

    async def add_goal(self, date_key: str, goal: dict[str, Any]) -> None:
        schema = await self._load()
        record = schema["history"].setdefault(date_key, _empty_record())
        record["goals"].append(GOAL_STATE_MACHINE.create(goal).to_dict())
        await self._save(schema)

    async def add_topic(self, date_key: str, topic: dict[str, Any], position: int | None = None) -> None:
        """Add a topic to the latest topic set; ``position`` keeps it in the replaced topic's slot."""
        schema = await self._load()
        record = schema["history"].setdefault(date_key, _empty_record())
        if not record["learningTopics"]:
            record["learningTopics"].append([])
        topic_set = record["learningTopics"][-1]
        stateful = TOPIC_STATE_MACHINE.create(topic).to_dict()
        if position is None or position >= len(topic_set):
            topic_set.append(stateful)
        else:
            topic_set.insert(max(position, 0), stateful)
        await self._save(schema)
