"""Generic state machine for items that carry an append-only transition history.

A ``StatefulItem`` pairs a domain value with every state it has been in. The
current state is the last history entry; transitions return a new item and
never touch the original. Each domain (challenge, goal, topic) supplies its own
table of allowed moves, and anything outside the table raises
``InvalidTransitionError``, including leaving a terminal state and
re-entering the current state.

Example::

    topic = TOPIC_STATE_MACHINE.create({"id": "t1", "title": "Generators"})
    topic = TOPIC_STATE_MACHINE.transition(topic, "skipped", source="dashboard")
    TOPIC_STATE_MACHINE.current_state(topic)  # "skipped"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Literal, Mapping, TypeVar

from .models import utcnow

D = TypeVar("D")
S = TypeVar("S", bound=str)

ChallengeState = Literal["not-started", "in-progress", "completed", "skipped"]
GoalState = Literal["not-started", "in-progress", "completed", "skipped"]
TopicState = Literal["not-explored", "explored", "skipped"]


class InvalidTransitionError(ValueError):
    def __init__(self, item_type: str, current: str, requested: str, allowed: Iterable[str]):
        self.item_type = item_type
        self.current = current
        self.requested = requested
        self.allowed = tuple(allowed)
        valid = ", ".join(self.allowed) or "none (terminal state)"
        super().__init__(
            f"Invalid {item_type} state transition: {current} -> {requested}. Valid transitions: {valid}"
        )


@dataclass(frozen=True)
class StateTransition(Generic[S]):
    state: S
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    source: str | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"state": self.state, "timestamp": self.timestamp}
        if self.source is not None:
            payload["source"] = self.source
        if self.note is not None:
            payload["note"] = self.note
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StateTransition":
        return cls(
            state=payload["state"],
            timestamp=payload["timestamp"],
            source=payload.get("source"),
            note=payload.get("note"),
        )


@dataclass(frozen=True)
class StatefulItem(Generic[D, S]):
    data: D
    state_history: tuple[StateTransition[S], ...]

    @property
    def current_state(self) -> S:
        return get_current_state(self.state_history)

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "stateHistory": [entry.to_dict() for entry in self.state_history]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StatefulItem":
        history = tuple(StateTransition.from_dict(entry) for entry in payload.get("stateHistory") or [])
        return cls(data=payload["data"], state_history=history)


def get_current_state(state_history: Iterable[StateTransition[S]]) -> S:
    history = tuple(state_history)
    if not history:
        raise ValueError("State history is empty")
    return history[-1].state


def validate_transition(
    current_state: str,
    new_state: str,
    valid_transitions: Mapping[str, Iterable[str]],
    item_type: str,
) -> None:
    allowed = tuple(valid_transitions.get(current_state, ()))
    if new_state not in allowed:
        raise InvalidTransitionError(item_type, current_state, new_state, allowed)


class StateMachine(Generic[S]):
    def __init__(self, item_type: str, transitions: Mapping[str, Iterable[str]], initial_state: S):
        self.item_type = item_type
        self.transitions = {state: tuple(targets) for state, targets in transitions.items()}
        if initial_state not in self.transitions:
            raise ValueError(f"Unknown initial {item_type} state: {initial_state}")
        self.initial_state = initial_state

    @property
    def states(self) -> tuple[str, ...]:
        return tuple(self.transitions)

    def is_terminal(self, state: str) -> bool:
        return not self.transitions.get(state)

    def can_transition(self, current_state: str, new_state: str) -> bool:
        return new_state in self.transitions.get(current_state, ())

    def create(self, data: D, initial_state: S | None = None) -> StatefulItem[D, S]:
        state = initial_state or self.initial_state
        if state not in self.transitions:
            raise ValueError(f"Unknown {self.item_type} state: {state}")
        return StatefulItem(data=data, state_history=(StateTransition(state=state, source="system"),))

    def current_state(self, item: StatefulItem[D, S]) -> S:
        return get_current_state(item.state_history)

    def transition(
        self,
        item: StatefulItem[D, S],
        new_state: S,
        source: str | None = None,
        note: str | None = None,
    ) -> StatefulItem[D, S]:
        validate_transition(self.current_state(item), new_state, self.transitions, self.item_type)
        entry = StateTransition(state=new_state, source=source, note=note)
        return StatefulItem(data=item.data, state_history=item.state_history + (entry,))


CHALLENGE_STATE_MACHINE: StateMachine[ChallengeState] = StateMachine(
    "challenge",
    {
        "not-started": ("in-progress", "skipped"),
        "in-progress": ("completed", "skipped"),
        "completed": (),
        "skipped": (),
    },
    initial_state="not-started",
)

GOAL_STATE_MACHINE: StateMachine[GoalState] = StateMachine(
    "goal",
    {
        "not-started": ("in-progress", "completed", "skipped"),
        "in-progress": ("completed", "skipped"),
        "completed": (),
        "skipped": (),
    },
    initial_state="not-started",
)

TOPIC_STATE_MACHINE: StateMachine[TopicState] = StateMachine(
    "topic",
    {
        "not-explored": ("explored", "skipped"),
        "explored": (),
        "skipped": (),
    },
    initial_state="not-explored",
)
