from __future__ import annotations

import logging
from typing import Any

from .focus_store import FocusStore, today_key
from .operations import ActiveOperationsManager

logger = logging.getLogger(__name__)

REPLACED_SOURCE = "dashboard"


def register_focus_handlers(manager: ActiveOperationsManager, focus: FocusStore) -> None:
    """Persist regenerated focus items even when nothing is waiting on the job.

    The replaced item is marked ``skipped`` (it stays in history) and the
    generated one is added beside it; a regenerated topic takes the slot of the
    topic it replaces.
    """

    async def on_topic(result: Any, target_id: str) -> None:
        topic = result.get("learningTopic") if isinstance(result, dict) else None
        if not topic:
            logger.warning("Topic regeneration for %s finished without a topic", target_id)
            return
        date_key = today_key()
        position = await focus.get_topic_position(date_key, target_id)
        await focus.transition_topic(date_key, target_id, "skipped", REPLACED_SOURCE)
        await focus.add_topic(date_key, topic, position)

    async def on_challenge(result: Any, target_id: str) -> None:
        challenge = result.get("challenge") if isinstance(result, dict) else None
        if not challenge:
            logger.warning("Challenge regeneration for %s finished without a challenge", target_id)
            return
        date_key = today_key()
        await focus.transition_challenge(date_key, target_id, "skipped", REPLACED_SOURCE)
        await focus.add_challenge(date_key, challenge)

    async def on_goal(result: Any, target_id: str) -> None:
        goal = result.get("goal") if isinstance(result, dict) else None
        if not goal:
            logger.warning("Goal regeneration for %s finished without a goal", target_id)
            return
        date_key = today_key()
        await focus.transition_goal(date_key, target_id, "skipped", REPLACED_SOURCE)
        await focus.add_goal(date_key, goal)

    manager.register_completion_handler("topic-regeneration", on_topic)
    manager.register_completion_handler("challenge-regeneration", on_challenge)
    manager.register_completion_handler("goal-regeneration", on_goal)
