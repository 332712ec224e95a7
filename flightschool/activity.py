from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ActivityEvent:
    type: str
    label: str
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    job_id: str | None = None
    status: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "timestamp": self.timestamp,
            "jobId": self.job_id,
            "status": self.status,
            "details": self.details,
        }


ActivitySubscriber = Callable[[ActivityEvent], None]


class ActivityLog:
    """Bounded in-memory log of AI activity, fanned out to push-stream subscribers."""

    def __init__(self, max_events: int = 100):
        self._events: deque[ActivityEvent] = deque(maxlen=max(max_events, 1))
        self._subscribers: set[ActivitySubscriber] = set()

    def record(self, event_type: str, label: str, **kwargs: Any) -> ActivityEvent:
        event = ActivityEvent(type=event_type, label=label, **kwargs)
        self._events.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.warning("Activity subscriber failed", exc_info=True)
        return event

    def subscribe(self, callback: ActivitySubscriber) -> Callable[[], None]:
        self._subscribers.add(callback)

        def unsubscribe() -> None:
            self._subscribers.discard(callback)

        return unsubscribe

    def get_events(self) -> list[ActivityEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()
